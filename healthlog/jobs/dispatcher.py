from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from healthlog.core.config import Settings
from healthlog.db.models import JobKind
from healthlog.jobs.store import JobStore
from healthlog.worker.tasks import ChatCaller, EntryReader, run_task, run_to_completion

logger = logging.getLogger(__name__)

_JOB_ID_PREFIXES = {
    JobKind.CHAT: "chat",
    JobKind.WEEKLY_REPORT: "report",
}


class DispatchMode(str, Enum):
    ASYNC = "async"
    SYNC = "sync"


@dataclass(frozen=True)
class DispatchResult:
    mode: DispatchMode
    job_id: str | None = None
    result: dict[str, Any] | None = None


def build_job_id(kind: JobKind, user_id: str, *, dedup_key: str | None = None, now_ms: int | None = None) -> str:
    prefix = _JOB_ID_PREFIXES[kind]
    if dedup_key:
        return f"{prefix}-{user_id}-{dedup_key}"
    stamp = int(time.time() * 1000) if now_ms is None else now_ms
    return f"{prefix}-{user_id}-{stamp}"


class Dispatcher:
    """Chooses between queued and inline execution for one submission.

    The queue is used only when async jobs are enabled and the backend answers
    a ping right now; an enqueue that fails on the backend falls back to the
    inline path instead of surfacing the error. No retries happen here: the
    inline path calls the LLM once, the queued path retries in the worker.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore | None,
        llm: ChatCaller,
        entries: EntryReader,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings
        self._store = store
        self._llm = llm
        self._entries = entries
        self._clock = clock

    def queue_available(self) -> bool:
        if not self._settings.async_jobs_enabled or self._store is None:
            return False
        return self._store.connect().ping()

    def submit(
        self,
        kind: JobKind,
        user_id: str,
        payload: dict[str, Any] | None = None,
        *,
        dedup_key: str | None = None,
    ) -> DispatchResult:
        body = dict(payload or {})
        if self._store is not None and self.queue_available():
            job_id = build_job_id(kind, user_id, dedup_key=dedup_key, now_ms=int(self._clock() * 1000))
            try:
                snapshot = self._store.enqueue(kind, body, user_id=user_id, job_id=job_id)
            except SQLAlchemyError as exc:
                logger.warning("Queue unavailable, falling back to sync kind=%s user_id=%s error=%s", kind.value, user_id, exc)
            else:
                logger.info("Job dispatched async job_id=%s kind=%s user_id=%s", snapshot.id, kind.value, user_id)
                return DispatchResult(mode=DispatchMode.ASYNC, job_id=snapshot.id)

        return self.run_inline(kind, user_id, body)

    def run_inline(self, kind: JobKind, user_id: str, payload: dict[str, Any]) -> DispatchResult:
        logger.info("Processing synchronously kind=%s user_id=%s", kind.value, user_id)
        run = run_task(kind, user_id, payload, self._llm, self._entries, retry=False)
        result = run_to_completion(run)
        return DispatchResult(mode=DispatchMode.SYNC, result=result)
