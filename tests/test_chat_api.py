"""Tests for the chat, conversation and metrics endpoints."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from fastapi.testclient import TestClient

from assistant.app import app
from assistant.config import Settings
from assistant.dependencies import get_runtime
from assistant.errors import ProviderFailure
from assistant.runtime import Runtime
from assistant.services.provider import FakeProvider
from assistant.services.session_store import InMemorySessionStore


def _runtime(provider=None):
    settings = Settings(
        database_url="sqlite://",
        llm_provider="fake",
        cache_sweep_interval_s=0,
        provider_timeout_s=5,
    )
    return Runtime(settings, provider=provider or FakeProvider(canned="4"), store=InMemorySessionStore())


def _client(runtime):
    app.dependency_overrides[get_runtime] = lambda: runtime
    return TestClient(app)


def test_chat_starts_conversation_then_hits_cache():
    runtime = _runtime()
    try:
        client = _client(runtime)
        first = client.post("/api/chat", json={"message": "2+2?"})
        assert first.status_code == 200
        body = first.json()
        assert body["response"] == "4"
        assert body["cached"] is False
        assert body["persisted"] is True
        assert body["conversation_id"]
        assert body["trace_id"]

        second = client.post("/api/chat", json={"message": "2+2?", "conversation_id": body["conversation_id"]})
        assert second.status_code == 200
        assert second.json()["cached"] is True
        assert len(runtime.get_provider().calls) == 1

        history = client.get(f"/api/conversations/{body['conversation_id']}")
        assert history.status_code == 200
        turns = history.json()["turns"]
        assert [t["prompt"] for t in turns] == ["2+2?", "2+2?"]
        assert turns[0]["trace_id"] == body["trace_id"]
    finally:
        app.dependency_overrides.clear()
        runtime.close()


def test_create_conversation():
    runtime = _runtime()
    try:
        client = _client(runtime)
        resp = client.post("/api/conversations")
        assert resp.status_code == 200
        cid = resp.json()["conversation_id"]
        assert client.get(f"/api/conversations/{cid}").json() == {"conversation_id": cid, "turns": []}
    finally:
        app.dependency_overrides.clear()
        runtime.close()


def test_unknown_conversation_is_404():
    runtime = _runtime()
    try:
        client = _client(runtime)
        resp = client.get("/api/conversations/does-not-exist")
        assert resp.status_code == 404
        assert resp.json()["error"] == "session_not_found"

        resp = client.post("/api/chat", json={"message": "hi", "conversation_id": "does-not-exist"})
        assert resp.status_code == 404
    finally:
        app.dependency_overrides.clear()
        runtime.close()


def test_invalid_messages_rejected():
    runtime = _runtime()
    try:
        client = _client(runtime)
        assert client.post("/api/chat", json={"message": ""}).status_code == 422
        assert client.post("/api/chat", json={"message": "x" * 5001}).status_code == 422

        resp = client.post("/api/chat", json={"message": "   "})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"
        assert runtime.get_provider().calls == []
    finally:
        app.dependency_overrides.clear()
        runtime.close()


def test_provider_failure_is_502_with_structured_body():
    provider = FakeProvider(errors=[ProviderFailure(kind="bad_request", message="model rejected input")])
    runtime = _runtime(provider)
    try:
        client = _client(runtime)
        resp = client.post("/api/chat", json={"message": "2+2?"})
        assert resp.status_code == 502
        body = resp.json()
        assert body["error"] == "bad_request"
        assert body["message"] == "model rejected input"
        assert "Traceback" not in resp.text
    finally:
        app.dependency_overrides.clear()
        runtime.close()


def test_metrics_report_cache_activity():
    runtime = _runtime()
    try:
        client = _client(runtime)
        cid = client.post("/api/conversations").json()["conversation_id"]
        client.post("/api/chat", json={"message": "2+2?", "conversation_id": cid})
        client.post("/api/chat", json={"message": "2+2?", "conversation_id": cid})

        snapshot = client.get("/api/metrics").json()
        assert snapshot["counters"]["cache.miss"] == 1
        assert snapshot["counters"]["cache.hit"] == 1
        assert snapshot["cache"]["size"] == 1
        assert snapshot["cache"]["in_flight"] == 0
    finally:
        app.dependency_overrides.clear()
        runtime.close()


def test_provider_status():
    runtime = _runtime()
    try:
        client = _client(runtime)
        resp = client.get("/api/provider/status")
        assert resp.status_code == 200
        assert resp.json() == {"provider": "fake", "model": "fake-model", "ok": True, "message": "Fake OK"}
    finally:
        app.dependency_overrides.clear()
        runtime.close()


def test_chat_reports_masked_entities_for_cloud_model(monkeypatch):
    monkeypatch.delenv("ANONYMIZE", raising=False)
    provider = FakeProvider(location="cloud", responder=lambda messages: "Reminder set for [EMAIL_1]")
    runtime = _runtime(provider)
    try:
        client = _client(runtime)
        resp = client.post("/api/chat", json={"message": "Remind jane@example.com at 9"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["response"] == "Reminder set for jane@example.com"
        assert body["route"] == "cloud"
        assert body["anonymized_entities"] == {"EMAIL": 1}
        assert "jane@example.com" not in provider.calls[0][-1]["content"]
    finally:
        app.dependency_overrides.clear()
        runtime.close()
