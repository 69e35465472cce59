from __future__ import annotations

import os
from datetime import date
from pathlib import Path

from healthlog.core.config import get_settings
from healthlog.db.init_db import initialize_database
from healthlog.db.models import Mood
from healthlog.db.session import build_session_factory, create_db_engine
from healthlog.entries.service import EntryConflictError, EntryNotFoundError, EntryService


def make_service(tmp_path: Path) -> EntryService:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    for key in [name for name in os.environ if name.startswith("HEALTHLOG_")]:
        del os.environ[key]
    os.environ["HEALTHLOG_STATE_ROOT"] = state_root.as_posix()
    get_settings.cache_clear()
    engine = create_db_engine(get_settings().effective_database_url)
    initialize_database(engine)
    return EntryService(build_session_factory(engine))


def test_create_entry_normalizes_food_and_defaults(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    entry = service.create_entry(
        "u1",
        date(2026, 10, 18),
        {
            "calories": 2100,
            "food_intake": [{"meal": "Lunch", "food": "<b>salad</b>", "calories": 350}],
            "mood": "good",
        },
    )

    assert entry.calories == 2100
    assert entry.sleep == 0.0
    assert entry.mood == Mood.GOOD
    assert entry.food_intake[0].meal == "lunch"
    assert entry.food_intake[0].food == "salad"


def test_one_entry_per_user_and_day(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    service.create_entry("u1", date(2026, 10, 18))
    service.create_entry("u2", date(2026, 10, 18))
    try:
        service.create_entry("u1", date(2026, 10, 18))
    except EntryConflictError:
        pass
    else:
        raise AssertionError("expected EntryConflictError")


def test_update_and_delete_are_scoped_to_owner(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    entry = service.create_entry("u1", date(2026, 10, 18), {"steps": 1000})

    updated = service.update_entry("u1", entry.id, {"steps": 8000, "workouts": True})
    assert updated.steps == 8000
    assert updated.workouts is True

    for call in (
        lambda: service.update_entry("u2", entry.id, {"steps": 1}),
        lambda: service.delete_entry("u2", entry.id),
    ):
        try:
            call()
        except EntryNotFoundError:
            continue
        raise AssertionError("expected EntryNotFoundError")

    service.delete_entry("u1", entry.id)
    assert service.list_recent("u1") == []


def test_unknown_fields_are_rejected(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    try:
        service.create_entry("u1", date(2026, 10, 18), {"blood_type": "A"})
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError")


def test_list_queries_order_and_window(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    for day in (10, 14, 12, 16):
        service.create_entry("u1", date(2026, 10, day), {"calories": day * 100})

    recent = service.list_recent("u1", limit=2)
    assert [item.entry_date.day for item in recent] == [16, 14]

    window = service.list_since("u1", date(2026, 10, 12))
    assert [item.entry_date.day for item in window] == [12, 14, 16]


def test_daily_summary_defaults_when_missing(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    empty = service.get_daily_summary("u1", date(2026, 10, 18))
    assert empty.calories == 0
    assert empty.mood == "neutral"

    service.create_entry("u1", date(2026, 10, 18), {"calories": 1800, "workouts": True, "mood": "excellent"})
    summary = service.get_daily_summary("u1", date(2026, 10, 18))
    assert summary.calories == 1800
    assert summary.workouts == 1
    assert summary.mood == "excellent"
