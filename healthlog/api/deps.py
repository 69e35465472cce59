from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from healthlog.ai.client import LlmClient
from healthlog.api.rate_limit import RateLimitExceededError, SlidingWindowRateLimiter
from healthlog.core.config import Settings
from healthlog.entries.service import EntryService
from healthlog.jobs.dispatcher import Dispatcher
from healthlog.jobs.status import StatusReporter
from healthlog.jobs.store import JobStore


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_current_user_id(x_user_id: str | None = Header(default=None, max_length=128)) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller identity")
    return user_id


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_llm_client(request: Request) -> LlmClient:
    return request.app.state.llm_client


def get_entry_service(request: Request) -> EntryService:
    return EntryService(request.app.state.session_factory)


def get_dispatcher(
    settings: Settings = Depends(get_app_settings),
    store: JobStore = Depends(get_job_store),
    llm: LlmClient = Depends(get_llm_client),
    entries: EntryService = Depends(get_entry_service),
) -> Dispatcher:
    return Dispatcher(settings, store, llm, entries)


def get_status_reporter(store: JobStore = Depends(get_job_store)) -> StatusReporter:
    return StatusReporter(store)


def enforce_ai_rate_limit(request: Request, user_id: str = Depends(get_current_user_id)) -> None:
    limiter: SlidingWindowRateLimiter = request.app.state.ai_rate_limiter
    try:
        limiter.hit(user_id)
    except RateLimitExceededError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(exc),
            headers={"Retry-After": str(exc.retry_after_seconds)},
        ) from exc
