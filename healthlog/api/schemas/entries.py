from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from healthlog.db.models import MealType, Mood


class FoodItemPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    meal: MealType
    food: str = Field(min_length=1, max_length=200)
    calories: int = Field(ge=0, le=10000)


class CreateEntryRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entry_date: date
    calories: int | None = Field(default=None, ge=0, le=20000)
    sleep: float | None = Field(default=None, ge=0.0, le=24.0)
    workouts: bool | None = None
    food_intake: list[FoodItemPayload] | None = Field(default=None, max_length=100)
    heart_rate: int | None = Field(default=None, ge=0, le=300)
    steps: int | None = Field(default=None, ge=0, le=200000)
    symptoms: list[str] | None = Field(default=None, max_length=50)
    mood: Mood | None = None
    water_intake: float | None = Field(default=None, ge=0.0, le=20.0)


class UpdateEntryRequest(CreateEntryRequest):
    entry_date: date | None = None


class FoodItemResponse(BaseModel):
    meal: str
    food: str
    calories: int


class EntryResponse(BaseModel):
    id: int
    user_id: str
    entry_date: date
    calories: int
    sleep: float
    workouts: bool
    food_intake: list[FoodItemResponse]
    heart_rate: int
    steps: int
    symptoms: list[str]
    mood: str
    water_intake: float
    created_at: datetime
    updated_at: datetime


class EntryListResponse(BaseModel):
    items: list[EntryResponse]


class DailySummaryResponse(BaseModel):
    day: date
    calories: int
    sleep: float
    workouts: int
    heart_rate: int
    steps: int
    symptoms: list[str]
    mood: str
    water_intake: float
    food_intake: list[FoodItemResponse]
