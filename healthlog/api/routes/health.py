from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError

from healthlog.api.deps import get_app_settings, get_job_store
from healthlog.core.config import Settings
from healthlog.jobs.store import JobStore

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health(settings: Settings = Depends(get_app_settings), store: JobStore = Depends(get_job_store)) -> dict[str, object]:
    queue: dict[str, object] = {"enabled": settings.async_jobs_enabled, "available": False}
    if store.connect().ping():
        queue["available"] = True
        try:
            metrics = store.get_metrics()
        except SQLAlchemyError:
            queue["available"] = False
        else:
            queue["counts"] = {
                "waiting": metrics.waiting,
                "active": metrics.active,
                "completed": metrics.completed,
                "failed": metrics.failed,
            }
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "queue": queue,
        "timestamp": datetime.now(tz=timezone.utc),
    }
