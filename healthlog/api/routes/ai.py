from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from healthlog.ai.client import UpstreamError
from healthlog.api.deps import (
    enforce_ai_rate_limit,
    get_app_settings,
    get_current_user_id,
    get_dispatcher,
    get_job_store,
    get_status_reporter,
)
from healthlog.api.schemas.ai import ChatRequest, JobStatusResponse, SubmissionResponse, WeeklyReportRequest
from healthlog.core.config import Settings
from healthlog.core.sanitize import InputValidationError, sanitize_message
from healthlog.db.models import JobKind
from healthlog.jobs.dispatcher import DispatchMode, DispatchResult, Dispatcher
from healthlog.jobs.status import StatusReporter, job_status_to_dict
from healthlog.jobs.store import JobConflictError, JobStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai", tags=["ai"])


def _submission_response(dispatched: DispatchResult) -> SubmissionResponse:
    if dispatched.mode is DispatchMode.ASYNC:
        return SubmissionResponse(
            mode=dispatched.mode.value,
            job_id=dispatched.job_id,
            check_status_url=f"/api/v1/ai/job-status/{dispatched.job_id}",
        )
    return SubmissionResponse(mode=dispatched.mode.value, result=dispatched.result)


def _submit(
    dispatcher: Dispatcher,
    kind: JobKind,
    user_id: str,
    payload: dict[str, object],
    dedup_key: str | None,
) -> SubmissionResponse:
    try:
        dispatched = dispatcher.submit(kind, user_id, payload, dedup_key=dedup_key)
    except JobConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except UpstreamError as exc:
        logger.error("AI request failed kind=%s user_id=%s error=%s", kind.value, user_id, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"AI request failed: {exc}") from exc
    return _submission_response(dispatched)


@router.post("/chat", response_model=SubmissionResponse, dependencies=[Depends(enforce_ai_rate_limit)])
def submit_chat(
    request: ChatRequest,
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_app_settings),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> SubmissionResponse:
    try:
        message = sanitize_message(request.message, max_length=settings.chat_message_max_length)
    except InputValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _submit(dispatcher, JobKind.CHAT, user_id, {"message": message}, request.dedup_key)


@router.post("/weekly-report", response_model=SubmissionResponse, dependencies=[Depends(enforce_ai_rate_limit)])
def submit_weekly_report(
    request: WeeklyReportRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> SubmissionResponse:
    dedup_key = request.dedup_key if request is not None else None
    return _submit(dispatcher, JobKind.WEEKLY_REPORT, user_id, {"user_id": user_id}, dedup_key)


@router.get("/job-status/{job_id}", response_model=JobStatusResponse)
def get_job_status(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    store: JobStore = Depends(get_job_store),
    reporter: StatusReporter = Depends(get_status_reporter),
) -> JobStatusResponse:
    if not store.connect().ping():
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job queue is not available")
    try:
        report = reporter.get_status(job_id, user_id=user_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job queue is not available") from exc
    if not report.found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job not found: {job_id}")
    return JobStatusResponse.model_validate(job_status_to_dict(report))
