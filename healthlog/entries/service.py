from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from healthlog.core.sanitize import sanitize_food
from healthlog.db.models import Entry, MealType, Mood
from healthlog.entries.types import DailySummary, EntrySnapshot, FoodItem

logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = {
    "entry_date",
    "calories",
    "sleep",
    "workouts",
    "food_intake",
    "heart_rate",
    "steps",
    "symptoms",
    "mood",
    "water_intake",
}


class EntryNotFoundError(RuntimeError):
    pass


class EntryConflictError(RuntimeError):
    pass


class EntryService:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _normalize_food(self, raw_items: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for raw in raw_items or []:
            meal = MealType(str(raw["meal"]).strip().lower())
            items.append(
                {
                    "meal": meal.value,
                    "food": sanitize_food(raw["food"]),
                    "calories": int(raw["calories"]),
                }
            )
        return items

    def _apply(self, entry: Entry, values: dict[str, Any]) -> None:
        unknown = set(values) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown entry fields: {sorted(unknown)}")
        for key, value in values.items():
            if value is None and key != "food_intake":
                continue
            if key == "food_intake":
                entry.food_intake = self._normalize_food(value)
            elif key == "mood":
                entry.mood = Mood(value)
            elif key == "symptoms":
                entry.symptoms = [str(item).strip() for item in value if str(item).strip()]
            else:
                setattr(entry, key, value)

    def create_entry(self, user_id: str, entry_date: date, values: dict[str, Any] | None = None) -> EntrySnapshot:
        with self._session_factory() as session:
            now = self._now()
            entry = Entry(
                user_id=user_id,
                entry_date=entry_date,
                calories=0,
                sleep=0.0,
                workouts=False,
                food_intake=[],
                heart_rate=0,
                steps=0,
                symptoms=[],
                mood=Mood.NEUTRAL,
                water_intake=0.0,
                created_at=now,
                updated_at=now,
            )
            self._apply(entry, dict(values or {}))
            session.add(entry)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise EntryConflictError(f"Entry already exists for {entry_date.isoformat()}") from exc
            session.refresh(entry)
            logger.info("Entry created user_id=%s entry_id=%s", user_id, entry.id)
            return self._to_snapshot(entry)

    def update_entry(self, user_id: str, entry_id: int, changes: dict[str, Any]) -> EntrySnapshot:
        with self._session_factory() as session:
            entry = session.scalar(select(Entry).where(Entry.id == entry_id, Entry.user_id == user_id))
            if entry is None:
                raise EntryNotFoundError(f"Entry not found: {entry_id}")
            self._apply(entry, changes)
            entry.updated_at = self._now()
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise EntryConflictError("Entry already exists for this date") from exc
            session.refresh(entry)
            logger.info("Entry updated user_id=%s entry_id=%s", user_id, entry_id)
            return self._to_snapshot(entry)

    def delete_entry(self, user_id: str, entry_id: int) -> None:
        with self._session_factory() as session:
            entry = session.scalar(select(Entry).where(Entry.id == entry_id, Entry.user_id == user_id))
            if entry is None:
                raise EntryNotFoundError(f"Entry not found: {entry_id}")
            session.delete(entry)
            session.commit()
            logger.info("Entry deleted user_id=%s entry_id=%s", user_id, entry_id)

    def list_recent(self, user_id: str, *, limit: int = 30) -> list[EntrySnapshot]:
        bounded_limit = max(1, min(limit, 365))
        with self._session_factory() as session:
            rows = session.scalars(
                select(Entry)
                .where(Entry.user_id == user_id)
                .order_by(Entry.entry_date.desc())
                .limit(bounded_limit)
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def list_since(self, user_id: str, since: date) -> list[EntrySnapshot]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(Entry)
                .where(Entry.user_id == user_id, Entry.entry_date >= since)
                .order_by(Entry.entry_date.asc())
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def get_daily_summary(self, user_id: str, day: date) -> DailySummary:
        with self._session_factory() as session:
            entry = session.scalar(select(Entry).where(Entry.user_id == user_id, Entry.entry_date == day))
            if entry is None:
                return DailySummary(day=day)
            return DailySummary(
                day=day,
                calories=entry.calories,
                sleep=entry.sleep,
                workouts=1 if entry.workouts else 0,
                heart_rate=entry.heart_rate,
                steps=entry.steps,
                symptoms=list(entry.symptoms),
                mood=entry.mood.value,
                water_intake=entry.water_intake,
                food_intake=list(entry.food_intake),
            )

    def _to_snapshot(self, entry: Entry) -> EntrySnapshot:
        return EntrySnapshot(
            id=entry.id,
            user_id=entry.user_id,
            entry_date=entry.entry_date,
            calories=entry.calories,
            sleep=entry.sleep,
            workouts=entry.workouts,
            food_intake=[
                FoodItem(meal=str(item["meal"]), food=str(item["food"]), calories=int(item["calories"]))
                for item in entry.food_intake
            ],
            heart_rate=entry.heart_rate,
            steps=entry.steps,
            symptoms=list(entry.symptoms),
            mood=entry.mood,
            water_intake=entry.water_intake,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
        )


def entry_snapshot_to_dict(snapshot: EntrySnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "user_id": snapshot.user_id,
        "entry_date": snapshot.entry_date,
        "calories": snapshot.calories,
        "sleep": snapshot.sleep,
        "workouts": snapshot.workouts,
        "food_intake": [
            {"meal": item.meal, "food": item.food, "calories": item.calories} for item in snapshot.food_intake
        ],
        "heart_rate": snapshot.heart_rate,
        "steps": snapshot.steps,
        "symptoms": snapshot.symptoms,
        "mood": snapshot.mood.value,
        "water_intake": snapshot.water_intake,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
    }
