"""Task bodies shared by the worker and the synchronous fallback path.

Each task is a generator: it yields progress percentages at its milestones and
returns the result payload. The caller decides what to do with the progress
(the worker persists it, the inline path discards it).
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Generator, Protocol, Sequence, assert_never

from healthlog.ai.client import ChatMessage
from healthlog.ai.prompts import (
    NO_DATA_MESSAGE,
    REPORT_WINDOW_DAYS,
    build_chat_messages,
    build_weekly_report_messages,
    summarize_week,
)
from healthlog.db.models import JobKind
from healthlog.entries.types import EntrySnapshot

logger = logging.getLogger(__name__)

TaskRun = Generator[int, None, dict[str, Any]]


class ChatCaller(Protocol):
    def call(
        self,
        messages: Sequence[ChatMessage],
        temperature: float | None = None,
        *,
        retry: bool = True,
    ) -> str: ...


class EntryReader(Protocol):
    def list_since(self, user_id: str, since: date) -> list[EntrySnapshot]: ...


def _processed_at() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def report_window_start(today: date | None = None) -> date:
    anchor = today or date.today()
    return anchor - timedelta(days=REPORT_WINDOW_DAYS - 1)


def run_chat(payload: dict[str, Any], llm: ChatCaller, *, retry: bool) -> TaskRun:
    message = str(payload["message"])
    yield 25
    reply = llm.call(build_chat_messages(message), retry=retry)
    yield 100
    return {"success": True, "reply": reply, "processedAt": _processed_at()}


def run_weekly_report(
    user_id: str,
    llm: ChatCaller,
    entries: EntryReader,
    *,
    retry: bool,
    today: date | None = None,
) -> TaskRun:
    yield 10
    rows = entries.list_since(user_id, report_window_start(today))
    yield 30

    if not rows:
        logger.info("No entries found for weekly report user_id=%s", user_id)
        return {"success": False, "error": NO_DATA_MESSAGE}

    summary = summarize_week(rows)
    yield 60
    report = llm.call(build_weekly_report_messages(summary), retry=retry)
    yield 100
    return {
        "success": True,
        "report": report,
        "summary": summary.as_dict(),
        "processedAt": _processed_at(),
    }


def run_task(
    kind: JobKind,
    user_id: str,
    payload: dict[str, Any],
    llm: ChatCaller,
    entries: EntryReader,
    *,
    retry: bool,
    today: date | None = None,
) -> TaskRun:
    kind = JobKind(kind)
    if kind is JobKind.CHAT:
        return run_chat(payload, llm, retry=retry)
    if kind is JobKind.WEEKLY_REPORT:
        return run_weekly_report(user_id, llm, entries, retry=retry, today=today)
    assert_never(kind)


def run_to_completion(run: TaskRun) -> dict[str, Any]:
    while True:
        try:
            next(run)
        except StopIteration as stop:
            return stop.value
