from __future__ import annotations

import logging
import os
import socket
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from healthlog.ai.client import UpstreamError
from healthlog.core.config import Settings
from healthlog.jobs.store import JobLeaseLostError, JobNotFoundError, JobStore
from healthlog.jobs.types import JobSnapshot
from healthlog.worker.tasks import ChatCaller, EntryReader, run_task

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


class JobWorker:
    """Drains the job store with a bounded pool of executor threads.

    The scheduling loop (``run_once``) runs on the caller's thread: it sweeps
    stalled jobs, renews the leases of in-flight jobs, claims jobs oldest-first
    until the pool is full, and periodically removes old terminal jobs. Job
    bodies run on the pool threads via ``process``.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        llm: ChatCaller,
        entries: EntryReader,
        *,
        worker_id: str | None = None,
        concurrency: int | None = None,
    ):
        self._settings = settings
        self._store = store
        self._llm = llm
        self._entries = entries
        self._worker_id = (worker_id or default_worker_id()).strip()
        self._concurrency = int(concurrency or settings.worker_concurrency)
        if self._concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self._executor: ThreadPoolExecutor | None = None
        self._in_flight: dict[str, Future[JobSnapshot | None]] = {}
        self._lease_tokens: dict[str, str | None] = {}
        self._stop = threading.Event()
        self._last_stall_sweep: float | None = None
        self._last_cleanup: float | None = None

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def start(self) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix="healthlog-job")
            logger.info("Worker started worker_id=%s concurrency=%s", self._worker_id, self._concurrency)

    def stop(self) -> None:
        self._stop.set()

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait_for_jobs)
            self._executor = None
        self._reap()
        logger.info("Worker stopped worker_id=%s", self._worker_id)

    def process(self, job: JobSnapshot) -> JobSnapshot | None:
        """Execute one claimed job and record its outcome.

        Returns the job's snapshot after the outcome was written, or ``None``
        when the lease was lost and another owner took over the job.
        """
        logger.info("Processing job job_id=%s kind=%s attempt=%s", job.id, job.kind.value, job.attempts + 1)
        run = run_task(job.kind, job.user_id, job.payload, self._llm, self._entries, retry=True)
        try:
            while True:
                try:
                    percent = next(run)
                except StopIteration as stop:
                    result = stop.value
                    break
                self._store.update_progress(
                    job.id, percent, worker_id=self._worker_id, lease_token=job.lease_token
                )
            return self._store.complete(job.id, result, worker_id=self._worker_id, lease_token=job.lease_token)
        except JobLeaseLostError:
            run.close()
            logger.warning("Lease lost, abandoning job job_id=%s worker_id=%s", job.id, self._worker_id)
            return None
        except UpstreamError as exc:
            return self._record_failure(job, str(exc), retryable=exc.retryable)
        except SQLAlchemyError as exc:
            logger.warning("Job hit a storage error job_id=%s error=%s", job.id, exc)
            return self._record_failure(job, str(exc), retryable=True)
        except Exception as exc:
            logger.exception("Job processing failed job_id=%s kind=%s", job.id, job.kind.value)
            return self._record_failure(job, str(exc) or exc.__class__.__name__, retryable=False)

    def _record_failure(self, job: JobSnapshot, reason: str, *, retryable: bool) -> JobSnapshot | None:
        try:
            return self._store.fail(
                job.id, reason, worker_id=self._worker_id, lease_token=job.lease_token, retryable=retryable
            )
        except JobLeaseLostError:
            logger.warning("Lease lost before failure could be recorded job_id=%s", job.id)
            return None

    def _reap(self) -> None:
        for job_id, future in list(self._in_flight.items()):
            if not future.done():
                continue
            del self._in_flight[job_id]
            self._lease_tokens.pop(job_id, None)
            exc = future.exception()
            if exc is not None:
                logger.error("Job execution crashed job_id=%s error=%s", job_id, exc)

    def _renew_leases(self) -> None:
        for job_id in list(self._in_flight):
            try:
                self._store.extend_lease(job_id, self._worker_id, lease_token=self._lease_tokens.get(job_id))
            except (JobLeaseLostError, JobNotFoundError) as exc:
                logger.warning("Could not renew lease job_id=%s error=%s", job_id, exc)

    def _due(self, last_run: float | None, interval_seconds: float, now: float) -> bool:
        return last_run is None or now - last_run >= interval_seconds

    def run_once(self) -> int:
        """One scheduling pass. Returns the number of jobs claimed."""
        self.start()
        assert self._executor is not None
        self._reap()

        now = time.monotonic()
        if self._due(self._last_stall_sweep, self._settings.job_stalled_interval_seconds, now):
            self._store.recover_stalled()
            self._last_stall_sweep = now

        self._renew_leases()

        claimed = 0
        while len(self._in_flight) < self._concurrency and not self._stop.is_set():
            job = self._store.claim_next(self._worker_id, exclude=list(self._in_flight))
            if job is None:
                break
            self._lease_tokens[job.id] = job.lease_token
            self._in_flight[job.id] = self._executor.submit(self.process, job)
            claimed += 1

        if self._due(self._last_cleanup, self._settings.job_cleanup_interval_seconds, now):
            self._store.cleanup(
                self._settings.job_cleanup_max_age_seconds,
                self._settings.job_cleanup_batch_size,
            )
            self._last_cleanup = now

        return claimed

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop.is_set():
                try:
                    self.run_once()
                except Exception:
                    logger.exception("Worker scheduling pass failed worker_id=%s", self._worker_id)
                self._stop.wait(self._settings.worker_poll_seconds)
        finally:
            self.shutdown(wait_for_jobs=True)

    def drain(self, timeout: float | None = 30.0) -> None:
        """Process until the store holds no waiting or active jobs.

        Jobs that are waiting out a retry backoff are picked up once they
        become due. Raises ``TimeoutError`` when ``timeout`` elapses first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        pause = min(float(self._settings.worker_poll_seconds), 0.05)
        self.start()
        while not self._stop.is_set():
            self.run_once()
            if self._in_flight:
                wait(list(self._in_flight.values()), timeout=pause, return_when=FIRST_COMPLETED)
                continue
            metrics = self._store.get_metrics()
            if metrics.waiting == 0 and metrics.active == 0:
                return
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError("Job queue did not drain in time")
            time.sleep(pause)
