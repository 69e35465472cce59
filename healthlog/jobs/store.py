from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Collection
from uuid import uuid4

from sqlalchemy import Engine, delete, func, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from healthlog.core.config import Settings
from healthlog.db.init_db import initialize_database
from healthlog.db.models import TERMINAL_JOB_STATES, Job, JobKind, JobState
from healthlog.db.session import build_session_factory, create_db_engine
from healthlog.jobs.retry import RetryPolicy
from healthlog.jobs.types import DedupPolicy, JobQueueMetrics, JobSnapshot

logger = logging.getLogger(__name__)

STALLED_LIMIT_REASON = "job stalled more than allowable limit"
_CLEANUP_CHUNK_SIZE = 500


class JobConflictError(RuntimeError):
    pass


class JobLeaseLostError(JobConflictError):
    pass


class JobNotFoundError(RuntimeError):
    pass


class JobStoreNotConnectedError(RuntimeError):
    pass


class JobStore:
    """Durable job table with lease-based ownership.

    The store is constructed explicitly and owns its engine: ``connect()``
    builds the engine without touching the backend, ``ping()`` performs the
    round-trip, ``close()`` disposes the pool. All state transitions happen in
    a single transaction each, so the API process and any number of worker
    processes can share the same backend.
    """

    def __init__(self, settings: Settings, database_url: str | None = None):
        self._settings = settings
        self._database_url = database_url or settings.effective_queue_database_url
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def __enter__(self) -> "JobStore":
        return self.connect()

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    @property
    def database_url(self) -> str:
        return self._database_url

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    def connect(self) -> "JobStore":
        if self._engine is None:
            self._engine = create_db_engine(self._database_url)
            self._session_factory = build_session_factory(self._engine)
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None
        self._schema_ready = False

    def ensure_schema(self) -> None:
        engine = self._require_engine()
        with self._schema_lock:
            if self._schema_ready:
                return
            initialize_database(engine)
            self._schema_ready = True

    def ping(self) -> bool:
        if self._engine is None:
            return False
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            self.ensure_schema()
        except SQLAlchemyError as exc:
            logger.warning("Job store backend unavailable url=%s error=%s", self._engine.url, exc)
            # next check opens fresh connections
            self._engine.dispose()
            return False
        return True

    def default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=int(self._settings.job_max_attempts),
            base_ms=int(self._settings.job_backoff_base_ms),
        )

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise JobStoreNotConnectedError("Job store is not connected")
        return self._engine

    def _session(self) -> Session:
        if self._session_factory is None:
            raise JobStoreNotConnectedError("Job store is not connected")
        return self._session_factory()

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _lease_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.job_lock_duration_seconds)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _as_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _get_or_raise(self, session: Session, job_id: str) -> Job:
        job = session.get(Job, job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def _ensure_owner(self, job: Job, worker_id: str | None, lease_token: str | None = None) -> None:
        if worker_id is None and lease_token is None:
            return
        if job.state != JobState.ACTIVE:
            raise JobLeaseLostError(f"Job {job.id} is no longer active")
        if worker_id is not None and job.worker_id != worker_id:
            raise JobLeaseLostError(f"Worker {worker_id} no longer owns job {job.id}")
        if lease_token is not None and job.lease_token != lease_token:
            raise JobLeaseLostError(f"Lease on job {job.id} was superseded")

    def enqueue(
        self,
        kind: JobKind,
        payload: dict[str, Any] | None = None,
        *,
        user_id: str,
        job_id: str | None = None,
        policy: DedupPolicy | str | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> JobSnapshot:
        effective_policy = DedupPolicy(policy or self._settings.job_dedup_policy)
        retry = retry_policy or self.default_retry_policy()
        resolved_id = job_id or f"{kind.value}-{uuid4()}"
        now = self._now()

        with self._session() as session:
            existing = session.get(Job, resolved_id)
            if existing is not None:
                resolved = self._resolve_collision(session, existing, effective_policy, payload or {}, now)
                if resolved is not None:
                    return resolved

            job = Job(
                id=resolved_id,
                kind=kind,
                user_id=user_id,
                state=JobState.WAITING,
                payload=payload or {},
                progress=0,
                attempts=0,
                max_attempts=retry.max_attempts,
                backoff_base_ms=retry.base_ms,
                stalled_count=0,
                available_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                winner = session.get(Job, resolved_id)
                if winner is None or winner.state in TERMINAL_JOB_STATES:
                    raise JobConflictError(f"Concurrent submission for job {resolved_id}") from exc
                resolved = self._resolve_collision(session, winner, effective_policy, payload or {}, now)
                if resolved is None:
                    raise JobConflictError(f"Concurrent submission for job {resolved_id}") from exc
                return resolved
            session.refresh(job)
            logger.info("Job enqueued job_id=%s kind=%s user_id=%s", job.id, kind.value, user_id)
            return self._to_snapshot(job)

    def _resolve_collision(
        self,
        session: Session,
        existing: Job,
        policy: DedupPolicy,
        payload: dict[str, Any],
        now: datetime,
    ) -> JobSnapshot | None:
        if existing.state in TERMINAL_JOB_STATES:
            session.delete(existing)
            session.flush()
            return None

        if policy == DedupPolicy.REJECT:
            raise JobConflictError(f"Job {existing.id} is already {existing.state.value}")

        if policy == DedupPolicy.REUSE:
            logger.info("Duplicate submission reuses job_id=%s state=%s", existing.id, existing.state.value)
            return self._to_snapshot(existing)

        if existing.state == JobState.ACTIVE:
            raise JobConflictError(f"Job {existing.id} is active and cannot be overwritten")
        existing.payload = payload
        existing.progress = 0
        existing.attempts = 0
        existing.stalled_count = 0
        existing.available_at = now
        existing.updated_at = now
        session.commit()
        session.refresh(existing)
        logger.info("Duplicate submission overwrote waiting job_id=%s", existing.id)
        return self._to_snapshot(existing)

    def get_status(self, job_id: str) -> JobSnapshot | None:
        with self._session() as session:
            job = session.get(Job, job_id)
            if job is None:
                return None
            return self._to_snapshot(job)

    def claim_next(self, worker_id: str, *, exclude: Collection[str] = ()) -> JobSnapshot | None:
        normalized_worker_id = worker_id.strip()
        if not normalized_worker_id:
            raise ValueError("worker_id cannot be blank")

        with self._session() as session:
            now = self._now()
            candidate_query = select(Job.id).where(Job.state == JobState.WAITING, Job.available_at <= now)
            if exclude:
                candidate_query = candidate_query.where(Job.id.not_in(list(exclude)))
            candidate = (
                candidate_query
                .order_by(Job.created_at.asc(), Job.id.asc())
                .limit(1)
                .scalar_subquery()
            )
            claimed_id = session.execute(
                update(Job)
                .where(Job.id == candidate, Job.state == JobState.WAITING)
                .values(
                    state=JobState.ACTIVE,
                    worker_id=normalized_worker_id,
                    lease_token=uuid4().hex,
                    lease_expires_at=now + self._lease_delta(),
                    updated_at=now,
                )
                .returning(Job.id)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
            if claimed_id is None:
                session.rollback()
                return None

            job = self._get_or_raise(session, claimed_id)
            if job.started_at is None:
                job.started_at = now
            session.commit()
            session.refresh(job)
            logger.info("Job claimed job_id=%s worker_id=%s", job.id, normalized_worker_id)
            return self._to_snapshot(job)

    def extend_lease(self, job_id: str, worker_id: str, *, lease_token: str | None = None) -> JobSnapshot:
        with self._session() as session:
            job = self._get_or_raise(session, job_id)
            self._ensure_owner(job, worker_id, lease_token)
            now = self._now()
            lease_expires_at = self._coerce_utc(job.lease_expires_at)
            if lease_expires_at is None or lease_expires_at <= now:
                self._mark_stalled(job, now)
                session.commit()
                raise JobLeaseLostError(f"Lease expired for job {job_id}")
            job.lease_expires_at = now + self._lease_delta()
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def update_progress(
        self,
        job_id: str,
        percent: int,
        *,
        worker_id: str | None = None,
        lease_token: str | None = None,
    ) -> JobSnapshot:
        if percent < 0 or percent > 100:
            raise ValueError("Progress must be in [0, 100]")

        with self._session() as session:
            job = self._get_or_raise(session, job_id)
            if job.state in TERMINAL_JOB_STATES:
                return self._to_snapshot(job)
            self._ensure_owner(job, worker_id, lease_token)
            next_progress = max(job.progress, int(percent))
            if next_progress != job.progress:
                job.progress = next_progress
                job.updated_at = self._now()
                session.commit()
                session.refresh(job)
            return self._to_snapshot(job)

    def complete(
        self,
        job_id: str,
        result: dict[str, Any],
        *,
        worker_id: str | None = None,
        lease_token: str | None = None,
    ) -> JobSnapshot:
        with self._session() as session:
            job = self._get_or_raise(session, job_id)
            if job.state in TERMINAL_JOB_STATES:
                return self._to_snapshot(job)
            self._ensure_owner(job, worker_id, lease_token)
            now = self._now()
            job.state = JobState.COMPLETED
            job.progress = 100
            job.attempts += 1
            job.result = result
            job.failure_reason = None
            job.lease_expires_at = None
            job.lease_token = None
            job.finished_at = now
            job.updated_at = now
            session.commit()
            session.refresh(job)
            logger.info("Job completed job_id=%s attempts=%s", job.id, job.attempts)
            return self._to_snapshot(job)

    def fail(
        self,
        job_id: str,
        reason: str,
        *,
        worker_id: str | None = None,
        lease_token: str | None = None,
        retryable: bool = True,
    ) -> JobSnapshot:
        with self._session() as session:
            job = self._get_or_raise(session, job_id)
            if job.state in TERMINAL_JOB_STATES:
                return self._to_snapshot(job)
            self._ensure_owner(job, worker_id, lease_token)
            now = self._now()
            policy = RetryPolicy(max_attempts=job.max_attempts, base_ms=job.backoff_base_ms)
            job.attempts += 1
            job.lease_expires_at = None
            job.worker_id = None
            job.lease_token = None
            job.updated_at = now
            if retryable and policy.has_attempts_left(job.attempts):
                job.state = JobState.WAITING
                job.available_at = now + policy.delay(job.attempts)
                logger.warning(
                    "Job attempt failed, retry scheduled job_id=%s attempt=%s delay_ms=%s error=%s",
                    job.id,
                    job.attempts,
                    policy.delay_ms(job.attempts),
                    reason,
                )
            else:
                job.state = JobState.FAILED
                job.failure_reason = reason
                job.finished_at = now
                logger.error(
                    "Job failed permanently job_id=%s attempts=%s retryable=%s error=%s",
                    job.id,
                    job.attempts,
                    retryable,
                    reason,
                )
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def _mark_stalled(self, job: Job, now: datetime) -> None:
        job.stalled_count += 1
        job.worker_id = None
        job.lease_expires_at = None
        job.lease_token = None
        job.updated_at = now
        if job.stalled_count > self._settings.job_max_stalled_count:
            job.state = JobState.FAILED
            job.failure_reason = STALLED_LIMIT_REASON
            job.finished_at = now
            logger.error("Job failed after stalling job_id=%s stalled_count=%s", job.id, job.stalled_count)
        else:
            job.state = JobState.WAITING
            job.available_at = now
            logger.warning("Job stalled, requeued job_id=%s stalled_count=%s", job.id, job.stalled_count)

    def recover_stalled(self) -> int:
        with self._session() as session:
            now = self._now()
            stalled_jobs = list(
                session.scalars(
                    select(Job).where(
                        Job.state == JobState.ACTIVE,
                        or_(Job.lease_expires_at.is_(None), Job.lease_expires_at <= now),
                    )
                ).all()
            )
            for job in stalled_jobs:
                self._mark_stalled(job, now)
            if stalled_jobs:
                session.commit()
            return len(stalled_jobs)

    def cleanup(self, max_age_seconds: int | None = None, max_count: int | None = None) -> int:
        age = self._settings.job_cleanup_max_age_seconds if max_age_seconds is None else max_age_seconds
        limit = self._settings.job_cleanup_batch_size if max_count is None else max_count
        if age < 0:
            raise ValueError("max_age_seconds must be >= 0")
        if limit <= 0:
            return 0

        cutoff = self._now() - timedelta(seconds=age)
        with self._session() as session:
            expired_ids = list(
                session.scalars(
                    select(Job.id)
                    .where(Job.state.in_(list(TERMINAL_JOB_STATES)), Job.finished_at <= cutoff)
                    .order_by(Job.finished_at.asc(), Job.id.asc())
                    .limit(limit)
                ).all()
            )
            for start in range(0, len(expired_ids), _CLEANUP_CHUNK_SIZE):
                chunk = expired_ids[start : start + _CLEANUP_CHUNK_SIZE]
                session.execute(delete(Job).where(Job.id.in_(chunk)))
            session.commit()

        if expired_ids:
            logger.info("Cleaned up old jobs removed=%s", len(expired_ids))
        return len(expired_ids)

    def get_metrics(self) -> JobQueueMetrics:
        now = self._now()
        with self._session() as session:
            counts = dict(session.execute(select(Job.state, func.count()).group_by(Job.state)).all())

        return JobQueueMetrics(
            generated_at=now,
            waiting=int(counts.get(JobState.WAITING, 0)),
            active=int(counts.get(JobState.ACTIVE, 0)),
            completed=int(counts.get(JobState.COMPLETED, 0)),
            failed=int(counts.get(JobState.FAILED, 0)),
        )

    def _to_snapshot(self, job: Job) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            kind=job.kind,
            user_id=job.user_id,
            state=job.state,
            payload=job.payload,
            progress=job.progress,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            backoff_base_ms=job.backoff_base_ms,
            stalled_count=job.stalled_count,
            result=job.result,
            failure_reason=job.failure_reason,
            worker_id=job.worker_id,
            lease_token=job.lease_token,
            lease_expires_at=self._coerce_utc(job.lease_expires_at),
            available_at=self._as_utc(job.available_at),
            created_at=self._as_utc(job.created_at),
            updated_at=self._as_utc(job.updated_at),
            started_at=self._coerce_utc(job.started_at),
            finished_at=self._coerce_utc(job.finished_at),
        )
