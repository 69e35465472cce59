from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from healthlog.db.models import Mood


@dataclass(slots=True)
class FoodItem:
    meal: str
    food: str
    calories: int


@dataclass(slots=True)
class EntrySnapshot:
    id: int
    user_id: str
    entry_date: date
    calories: int
    sleep: float
    workouts: bool
    food_intake: list[FoodItem]
    heart_rate: int
    steps: int
    symptoms: list[str]
    mood: Mood
    water_intake: float
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class DailySummary:
    day: date
    calories: int = 0
    sleep: float = 0.0
    workouts: int = 0
    heart_rate: int = 0
    steps: int = 0
    symptoms: list[str] = field(default_factory=list)
    mood: str = Mood.NEUTRAL.value
    water_intake: float = 0.0
    food_intake: list[dict[str, Any]] = field(default_factory=list)
