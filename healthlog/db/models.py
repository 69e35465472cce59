from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class JobKind(str, Enum):
    CHAT = "chat"
    WEEKLY_REPORT = "weekly-report"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class MealType(str, Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    SNACK = "snack"


class Mood(str, Enum):
    POOR = "poor"
    FAIR = "fair"
    NEUTRAL = "neutral"
    GOOD = "good"
    EXCELLENT = "excellent"


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[JobKind] = mapped_column(
        SAEnum(JobKind, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    state: Mapped[JobState] = mapped_column(
        SAEnum(JobState, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobState.WAITING,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)

    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff_base_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=2000)
    stalled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    result: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_jobs_state_available", "state", "available_at", "created_at"),
        Index("ix_jobs_active_lease", "state", "lease_expires_at"),
        Index("ix_jobs_state_finished", "state", "finished_at"),
        Index("ix_jobs_user_kind", "user_id", "kind"),
    )


class Entry(Base):
    __tablename__ = "entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)

    calories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sleep: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    workouts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    food_intake: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    heart_rate: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    symptoms: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    mood: Mapped[Mood] = mapped_column(
        SAEnum(Mood, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=Mood.NEUTRAL,
    )
    water_intake: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "entry_date", name="uq_entries_user_id_entry_date"),
        Index("ix_entries_user_date", "user_id", "entry_date"),
    )


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
