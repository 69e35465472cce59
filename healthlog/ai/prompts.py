from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from healthlog.ai.client import ChatMessage
from healthlog.entries.types import EntrySnapshot

CHAT_SYSTEM_PROMPT = "You are a friendly health assistant. Provide helpful health tips without medical advice."
REPORT_SYSTEM_PROMPT = "You are a friendly health assistant providing motivational weekly summaries."

REPORT_WINDOW_DAYS = 7
MAX_FOOD_LINES = 20
NO_DATA_MESSAGE = "No health data found for the past week"


@dataclass(frozen=True)
class WeeklySummary:
    total_days: int
    total_calories: int
    total_sleep: float
    workout_days: int
    avg_calories: int
    avg_sleep: float
    food_lines: tuple[str, ...]

    def as_dict(self) -> dict[str, float | int]:
        return {
            "avgCalories": self.avg_calories,
            "avgSleep": self.avg_sleep,
            "workoutDays": self.workout_days,
            "totalDays": self.total_days,
        }


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def summarize_week(entries: Sequence[EntrySnapshot]) -> WeeklySummary:
    if not entries:
        raise ValueError("summarize_week needs at least one entry")

    total_calories = 0
    total_sleep = 0.0
    workout_days = 0
    food_lines: list[str] = []
    for entry in entries:
        total_calories += entry.calories or 0
        total_sleep += entry.sleep or 0.0
        if entry.workouts:
            workout_days += 1
        for item in entry.food_intake:
            food_lines.append(f"{item.meal}: {item.food} ({item.calories} kcal)")

    count = len(entries)
    return WeeklySummary(
        total_days=count,
        total_calories=total_calories,
        total_sleep=total_sleep,
        workout_days=workout_days,
        avg_calories=_round_half_up(total_calories / count),
        avg_sleep=round(total_sleep / count, 1),
        food_lines=tuple(food_lines[:MAX_FOOD_LINES]),
    )


def build_chat_messages(message: str) -> list[ChatMessage]:
    return [
        {"role": "system", "content": CHAT_SYSTEM_PROMPT},
        {"role": "user", "content": message},
    ]


def build_weekly_report_prompt(summary: WeeklySummary) -> str:
    food = "\n".join(summary.food_lines)
    return (
        f"Weekly health summary ({summary.total_days} days of data):\n"
        "\n"
        f"- Average daily calories: {summary.avg_calories} kcal\n"
        f"- Average sleep: {summary.avg_sleep:.1f} hours\n"
        f"- Workout days: {summary.workout_days} / {REPORT_WINDOW_DAYS}\n"
        "- Food intake:\n"
        f"{food}\n"
        "\n"
        "Write a concise, encouraging weekly health report (150-200 words).\n"
        "Include:\n"
        "1. Positive habits observed\n"
        "2. Areas for improvement\n"
        "3. One practical lifestyle suggestion\n"
        "Avoid medical advice.\n"
    )


def build_weekly_report_messages(summary: WeeklySummary) -> list[ChatMessage]:
    return [
        {"role": "system", "content": REPORT_SYSTEM_PROMPT},
        {"role": "user", "content": build_weekly_report_prompt(summary)},
    ]
