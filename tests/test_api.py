from __future__ import annotations

import os
from datetime import date
from pathlib import Path
from typing import Any, Sequence

from fastapi.testclient import TestClient

from healthlog.ai.client import UpstreamError
from healthlog.api.app import create_app
from healthlog.api.deps import get_llm_client
from healthlog.core.config import get_settings
from healthlog.entries.service import EntryService
from healthlog.worker.runner import JobWorker


class FakeLlm:
    def __init__(self, reply: str = "stay hydrated", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def call(self, messages: Sequence[dict[str, str]], temperature: float | None = None, *, retry: bool = True) -> str:
        self.calls.append({"messages": list(messages), "retry": retry})
        if self.error is not None:
            raise self.error
        return self.reply


def make_client(tmp_path: Path, llm: FakeLlm, **overrides: object) -> TestClient:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    for key in [name for name in os.environ if name.startswith("HEALTHLOG_")]:
        del os.environ[key]
    os.environ["HEALTHLOG_STATE_ROOT"] = state_root.as_posix()
    os.environ["HEALTHLOG_JOB_BACKOFF_BASE_MS"] = "1"
    os.environ["HEALTHLOG_WORKER_POLL_SECONDS"] = "0.05"
    for key, value in overrides.items():
        os.environ[f"HEALTHLOG_{key.upper()}"] = str(value)
    get_settings.cache_clear()

    app = create_app()
    app.dependency_overrides[get_llm_client] = lambda: llm
    return TestClient(app)


def user(user_id: str = "u1") -> dict[str, str]:
    return {"X-User-Id": user_id}


def drain_queue(client: TestClient, llm: FakeLlm) -> None:
    state = client.app.state
    worker = JobWorker(state.settings, state.job_store, llm, EntryService(state.session_factory), worker_id="worker-api-test")
    worker.drain(timeout=10)
    worker.shutdown()


def test_health_reports_queue_state(tmp_path: Path) -> None:
    with make_client(tmp_path, FakeLlm(), async_jobs_enabled="true") as client:
        response = client.get("/api/v1/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["queue"]["enabled"] is True
    assert payload["queue"]["available"] is True
    assert payload["queue"]["counts"] == {"waiting": 0, "active": 0, "completed": 0, "failed": 0}


def test_requests_without_identity_are_rejected(tmp_path: Path) -> None:
    with make_client(tmp_path, FakeLlm()) as client:
        assert client.get("/api/v1/entries").status_code == 401
        assert client.post("/api/v1/ai/chat", json={"message": "hi"}).status_code == 401


def test_entry_crud_round(tmp_path: Path) -> None:
    with make_client(tmp_path, FakeLlm()) as client:
        created = client.post(
            "/api/v1/entries",
            headers=user(),
            json={
                "entry_date": "2026-10-18",
                "calories": 1900,
                "sleep": 7.5,
                "food_intake": [{"meal": "breakfast", "food": "oats", "calories": 300}],
                "mood": "good",
            },
        )
        assert created.status_code == 201
        entry_id = created.json()["id"]
        assert created.json()["food_intake"] == [{"meal": "breakfast", "food": "oats", "calories": 300}]

        duplicate = client.post("/api/v1/entries", headers=user(), json={"entry_date": "2026-10-18"})
        assert duplicate.status_code == 409

        updated = client.put(f"/api/v1/entries/{entry_id}", headers=user(), json={"steps": 9000, "mood": "excellent"})
        assert updated.status_code == 200
        assert updated.json()["steps"] == 9000
        assert updated.json()["mood"] == "excellent"
        assert updated.json()["calories"] == 1900

        assert client.put(f"/api/v1/entries/{entry_id}", headers=user("u2"), json={"steps": 1}).status_code == 404

        summary = client.get("/api/v1/entries/dashboard/summary", headers=user(), params={"day": "2026-10-18"})
        assert summary.status_code == 200
        assert summary.json()["calories"] == 1900

        listing = client.get("/api/v1/entries", headers=user())
        assert [item["id"] for item in listing.json()["items"]] == [entry_id]

        assert client.delete(f"/api/v1/entries/{entry_id}", headers=user()).status_code == 204
        assert client.delete(f"/api/v1/entries/{entry_id}", headers=user()).status_code == 404


def test_invalid_entry_payload_is_unprocessable(tmp_path: Path) -> None:
    with make_client(tmp_path, FakeLlm()) as client:
        response = client.post("/api/v1/entries", headers=user(), json={"entry_date": "2026-10-18", "sleep": 30})
    assert response.status_code == 422


def test_chat_runs_inline_when_async_disabled(tmp_path: Path) -> None:
    llm = FakeLlm("eat your greens")
    with make_client(tmp_path, llm) as client:
        response = client.post("/api/v1/ai/chat", headers=user(), json={"message": " <b>any tips?</b> "})
    assert response.status_code == 200
    payload = response.json()
    assert payload["mode"] == "sync"
    assert payload["job_id"] is None
    assert payload["result"]["reply"] == "eat your greens"
    assert llm.calls[0]["retry"] is False
    assert llm.calls[0]["messages"][1]["content"] == "any tips?"


def test_chat_rejects_empty_sanitized_message(tmp_path: Path) -> None:
    llm = FakeLlm()
    with make_client(tmp_path, llm) as client:
        response = client.post("/api/v1/ai/chat", headers=user(), json={"message": "<i></i>"})
    assert response.status_code == 422
    assert llm.calls == []


def test_inline_upstream_failure_maps_to_server_error(tmp_path: Path) -> None:
    llm = FakeLlm(error=UpstreamError("LLM upstream error with status 503", status_code=503))
    with make_client(tmp_path, llm) as client:
        response = client.post("/api/v1/ai/chat", headers=user(), json={"message": "hi"})
    assert response.status_code == 500
    assert "503" in response.json()["detail"]


def test_async_chat_lifecycle_through_status_polling(tmp_path: Path) -> None:
    llm = FakeLlm("queued reply")
    with make_client(tmp_path, llm, async_jobs_enabled="true") as client:
        submitted = client.post("/api/v1/ai/chat", headers=user(), json={"message": "hi"})
        assert submitted.status_code == 200
        payload = submitted.json()
        assert payload["mode"] == "async"
        job_id = payload["job_id"]
        assert job_id.startswith("chat-u1-")
        assert payload["check_status_url"] == f"/api/v1/ai/job-status/{job_id}"
        assert llm.calls == []

        waiting = client.get(f"/api/v1/ai/job-status/{job_id}", headers=user())
        assert waiting.status_code == 200
        assert waiting.json()["status"] == "waiting"

        drain_queue(client, llm)

        done = client.get(f"/api/v1/ai/job-status/{job_id}", headers=user())
        assert done.status_code == 200
        body = done.json()
        assert body["status"] == "completed"
        assert body["progress"] == 100
        assert body["attempts"] == 1
        assert body["result"]["reply"] == "queued reply"
        assert body["data"] == {"user_id": "u1", "type": "chat"}
        assert llm.calls[0]["retry"] is True

        assert client.get(f"/api/v1/ai/job-status/{job_id}", headers=user("u2")).status_code == 404
        assert client.get("/api/v1/ai/job-status/chat-u1-0", headers=user()).status_code == 404


def test_weekly_report_dedup_key_returns_same_job(tmp_path: Path) -> None:
    with make_client(tmp_path, FakeLlm(), async_jobs_enabled="true") as client:
        first = client.post("/api/v1/ai/weekly-report", headers=user(), json={"dedup_key": "2026-10-18"})
        second = client.post("/api/v1/ai/weekly-report", headers=user(), json={"dedup_key": "2026-10-18"})
        health = client.get("/api/v1/health")

    assert first.json()["job_id"] == second.json()["job_id"] == "report-u1-2026-10-18"
    assert health.json()["queue"]["counts"]["waiting"] == 1


def test_weekly_report_reject_policy_conflict(tmp_path: Path) -> None:
    with make_client(tmp_path, FakeLlm(), async_jobs_enabled="true", job_dedup_policy="reject") as client:
        assert client.post("/api/v1/ai/weekly-report", headers=user(), json={"dedup_key": "k1"}).status_code == 200
        assert client.post("/api/v1/ai/weekly-report", headers=user(), json={"dedup_key": "k1"}).status_code == 409


def test_weekly_report_inline_uses_stored_entries(tmp_path: Path) -> None:
    llm = FakeLlm("solid week")
    with make_client(tmp_path, llm) as client:
        empty = client.post("/api/v1/ai/weekly-report", headers=user())
        assert empty.status_code == 200
        assert empty.json()["result"]["success"] is False
        assert llm.calls == []

        client.post("/api/v1/entries", headers=user(), json={"entry_date": date.today().isoformat(), "calories": 2000, "sleep": 7})
        report = client.post("/api/v1/ai/weekly-report", headers=user())

    result = report.json()["result"]
    assert result["success"] is True
    assert result["report"] == "solid week"
    assert result["summary"]["avgCalories"] == 2000
    assert result["summary"]["totalDays"] == 1


def test_unreachable_queue_falls_back_and_blocks_polling(tmp_path: Path) -> None:
    llm = FakeLlm("fallback reply")
    with make_client(
        tmp_path,
        llm,
        async_jobs_enabled="true",
        queue_database_url="sqlite:////nonexistent-healthlog-dir/queue.sqlite3",
    ) as client:
        submitted = client.post("/api/v1/ai/chat", headers=user(), json={"message": "hi"})
        polled = client.get("/api/v1/ai/job-status/chat-u1-1", headers=user())
        health = client.get("/api/v1/health")

    assert submitted.status_code == 200
    assert submitted.json()["mode"] == "sync"
    assert submitted.json()["result"]["reply"] == "fallback reply"
    assert polled.status_code == 503
    assert health.json()["queue"]["available"] is False


def test_ai_submissions_are_rate_limited_per_caller(tmp_path: Path) -> None:
    with make_client(tmp_path, FakeLlm(), ai_rate_limit_max_requests=2) as client:
        codes = [client.post("/api/v1/ai/chat", headers=user(), json={"message": "hi"}).status_code for _ in range(3)]
        other = client.post("/api/v1/ai/chat", headers=user("u2"), json={"message": "hi"})
        limited = client.post("/api/v1/ai/weekly-report", headers=user())

    assert codes == [200, 200, 429]
    assert other.status_code == 200
    assert limited.status_code == 429
    assert "Retry-After" in limited.headers
