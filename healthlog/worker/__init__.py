from healthlog.worker.runner import JobWorker
from healthlog.worker.tasks import run_chat, run_task, run_weekly_report

__all__ = [
    "JobWorker",
    "run_task",
    "run_chat",
    "run_weekly_report",
]
