from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_DEDUP_POLICIES = {"reject", "reuse", "overwrite"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HEALTHLOG_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "HealthLog"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None

    queue_database_url: str | None = None
    async_jobs_enabled: bool = False
    job_max_attempts: PositiveInt = 3
    job_backoff_base_ms: PositiveInt = 2000
    job_dedup_policy: str = "reuse"
    job_lock_duration_seconds: PositiveInt = 30
    job_stalled_interval_seconds: PositiveInt = 30
    job_max_stalled_count: int = Field(default=2, ge=0)
    job_cleanup_max_age_seconds: PositiveInt = 24 * 60 * 60
    job_cleanup_batch_size: PositiveInt = 10000
    job_cleanup_interval_seconds: PositiveInt = 3600

    worker_concurrency: PositiveInt = 5
    worker_poll_seconds: PositiveFloat = 1.0

    llm_api_url: str = "https://api.groq.com/openai/v1/chat/completions"
    llm_api_key: str | None = None
    llm_model: str = "llama-3.1-8b-instant"
    llm_max_tokens: PositiveInt = 1000
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_timeout_seconds: PositiveFloat = 30.0
    llm_max_attempts: PositiveInt = 3
    llm_backoff_base_ms: PositiveInt = 1000

    ai_rate_limit_max_requests: PositiveInt = 10
    ai_rate_limit_window_seconds: PositiveInt = 15 * 60
    chat_message_max_length: PositiveInt = 2000

    @field_validator("state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        normalized_policy = self.job_dedup_policy.lower().strip()
        if normalized_policy not in SUPPORTED_DEDUP_POLICIES:
            raise ValueError(f"job_dedup_policy must be one of {sorted(SUPPORTED_DEDUP_POLICIES)}")
        self.job_dedup_policy = normalized_policy

        if self.worker_poll_seconds > self.job_lock_duration_seconds:
            raise ValueError("worker_poll_seconds must not exceed job_lock_duration_seconds")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "healthlog.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    @property
    def effective_queue_database_url(self) -> str:
        return self.queue_database_url or self.effective_database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
