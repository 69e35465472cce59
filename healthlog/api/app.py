from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from healthlog.ai.client import LlmClient
from healthlog.api.rate_limit import SlidingWindowRateLimiter
from healthlog.api.routes.ai import router as ai_router
from healthlog.api.routes.entries import router as entries_router
from healthlog.api.routes.health import router as health_router
from healthlog.core.config import get_settings
from healthlog.core.logging import configure_logging
from healthlog.db.init_db import initialize_database
from healthlog.db.session import build_session_factory, create_db_engine
from healthlog.jobs.store import JobStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)

    engine = create_db_engine(settings.effective_database_url)
    initialize_database(engine)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.job_store = JobStore(settings).connect()
    app.state.llm_client = LlmClient(settings)
    app.state.ai_rate_limiter = SlidingWindowRateLimiter(
        max_requests=settings.ai_rate_limit_max_requests,
        window_seconds=settings.ai_rate_limit_window_seconds,
    )
    try:
        yield
    finally:
        app.state.llm_client.close()
        app.state.job_store.close()
        engine.dispose()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(entries_router, prefix="/api/v1")
    app.include_router(ai_router, prefix="/api/v1")
    return app
