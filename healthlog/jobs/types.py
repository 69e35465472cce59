from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from healthlog.db.models import TERMINAL_JOB_STATES, JobKind, JobState


class DedupPolicy(str, Enum):
    """What ``JobStore.enqueue`` does when the job id is already taken by a live job."""

    REJECT = "reject"
    REUSE = "reuse"
    OVERWRITE = "overwrite"


@dataclass(slots=True)
class JobSnapshot:
    id: str
    kind: JobKind
    user_id: str
    state: JobState
    payload: dict[str, Any]
    progress: int
    attempts: int
    max_attempts: int
    backoff_base_ms: int
    stalled_count: int
    result: dict[str, Any] | None
    failure_reason: str | None
    worker_id: str | None
    lease_token: str | None
    lease_expires_at: datetime | None
    available_at: datetime
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES


@dataclass(slots=True)
class JobQueueMetrics:
    generated_at: datetime
    waiting: int
    active: int
    completed: int
    failed: int
