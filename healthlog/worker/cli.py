from __future__ import annotations

import argparse
import logging
import signal
from types import FrameType

from healthlog.ai.client import LlmClient
from healthlog.core.config import get_settings
from healthlog.core.logging import configure_logging
from healthlog.db.init_db import initialize_database
from healthlog.db.session import build_session_factory, create_db_engine
from healthlog.entries.service import EntryService
from healthlog.jobs.store import JobStore
from healthlog.worker.runner import JobWorker

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Process queued chat and weekly-report jobs")
    parser.add_argument("--worker-id", default=None, help="Stable worker identity used for job leases")
    parser.add_argument("--concurrency", type=int, default=None, help="Maximum jobs processed in parallel")
    parser.add_argument("--once", action="store_true", help="Drain the queue and exit instead of polling forever")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    engine = create_db_engine(settings.effective_database_url)
    initialize_database(engine)
    entries = EntryService(build_session_factory(engine))
    llm = LlmClient(settings)
    store = JobStore(settings).connect()
    store.ensure_schema()

    worker = JobWorker(settings, store, llm, entries, worker_id=args.worker_id, concurrency=args.concurrency)

    def _handle_signal(signum: int, _frame: FrameType | None) -> None:
        logger.info("Received signal %s, stopping after in-flight jobs worker_id=%s", signum, worker.worker_id)
        worker.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        if args.once:
            worker.drain(timeout=None)
            worker.shutdown(wait_for_jobs=True)
        else:
            worker.run_forever()
    finally:
        store.close()
        llm.close()
        engine.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
