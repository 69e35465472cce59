from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from healthlog.jobs.store import JobStore

NOT_FOUND = "not-found"


@dataclass(slots=True)
class JobStatusReport:
    job_id: str
    status: str
    progress: int = 0
    attempts: int = 0
    result: dict[str, Any] | None = None
    failure_reason: str | None = None
    user_id: str | None = None
    kind: str | None = None

    @property
    def found(self) -> bool:
        return self.status != NOT_FOUND


class StatusReporter:
    """Read-only view of a job for polling clients.

    Unknown, expired and foreign job ids all come back as ``not-found``;
    results stay readable until cleanup removes the job.
    """

    def __init__(self, store: JobStore):
        self._store = store

    def get_status(self, job_id: str, *, user_id: str | None = None) -> JobStatusReport:
        snapshot = self._store.get_status(job_id)
        if snapshot is None or (user_id is not None and snapshot.user_id != user_id):
            return JobStatusReport(job_id=job_id, status=NOT_FOUND)

        return JobStatusReport(
            job_id=snapshot.id,
            status=snapshot.state.value,
            progress=snapshot.progress,
            attempts=snapshot.attempts,
            result=snapshot.result,
            failure_reason=snapshot.failure_reason,
            user_id=snapshot.user_id,
            kind=snapshot.kind.value,
        )


def job_status_to_dict(report: JobStatusReport) -> dict[str, Any]:
    if not report.found:
        return {"id": report.job_id, "status": NOT_FOUND}
    return {
        "id": report.job_id,
        "status": report.status,
        "progress": report.progress,
        "result": report.result,
        "failure_reason": report.failure_reason,
        "attempts": report.attempts,
        "data": {"user_id": report.user_id, "type": report.kind},
    }
