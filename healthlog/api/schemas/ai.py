from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEDUP_KEY_PATTERN = r"^[A-Za-z0-9_.:-]+$"


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message: str = Field(min_length=1, max_length=10000)
    dedup_key: str | None = Field(default=None, min_length=1, max_length=64, pattern=DEDUP_KEY_PATTERN)


class WeeklyReportRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    dedup_key: str | None = Field(default=None, min_length=1, max_length=64, pattern=DEDUP_KEY_PATTERN)


class SubmissionResponse(BaseModel):
    mode: str
    job_id: str | None = None
    check_status_url: str | None = None
    result: dict[str, Any] | None = None


class JobOwnerResponse(BaseModel):
    user_id: str | None
    type: str | None


class JobStatusResponse(BaseModel):
    id: str
    status: str
    progress: int = 0
    result: dict[str, Any] | None = None
    failure_reason: str | None = None
    attempts: int = 0
    data: JobOwnerResponse | None = None
