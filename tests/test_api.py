from __future__ import annotations

import random

import pytest

from fastapi.testclient import TestClient

from pickleai.api.routes import create_app
from pickleai.assistant import PickleAssistant
from pickleai.config import Config
from pickleai.embeddings.backends import HashEmbedder
from pickleai.exceptions import UpstreamError
from pickleai.identity import Identity, StaticTokenIdentityProvider
from pickleai.storage.kv_store import MemoryKVStore

AUTH = {"Authorization": "Bearer good-token"}
REPLY = "Stay low, keep your paddle up, and reset with a soft dink."


class _FakeChat:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0

    async def send_to_model(self, messages, system_prompt):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return REPLY

    async def close(self) -> None:
        return None


def _client(chat: _FakeChat | None = None) -> TestClient:
    cfg = Config()
    cfg.chat.retry_backoff = 0.0
    assistant = PickleAssistant(
        cfg,
        kv=MemoryKVStore(),
        embedder=HashEmbedder(dims=64),
        chat=chat or _FakeChat(),
        rng=random.Random(1),
    )
    identity = StaticTokenIdentityProvider({"good-token": Identity("user-1", "player@example.com")})
    return TestClient(create_app(cfg, assistant=assistant, identity=identity))


def test_health_needs_no_auth():
    with _client() as client:
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


def test_chat_requires_authorization():
    with _client() as client:
        resp = client.post("/api/v1/chat", json={"message": "hi"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Authorization header required"}

        resp = client.post("/api/v1/chat", json={"message": "hi"}, headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid authentication"}


def test_chat_rejects_missing_or_malformed_message():
    with _client() as client:
        for body in [{}, {"message": ""}, {"message": 42}, ["message"]]:
            resp = client.post("/api/v1/chat", json=body, headers=AUTH)
            assert resp.status_code == 400, body
            assert resp.json() == {"error": "Message is required"}

        resp = client.post(
            "/api/v1/chat",
            content=b"{not json",
            headers={**AUTH, "Content-Type": "application/json"},
        )
        assert resp.status_code == 400

        resp = client.post(
            "/api/v1/chat", json={"message": "hi", "conversationHistory": "nope"}, headers=AUTH,
        )
        assert resp.status_code == 400


def test_chat_answers_allowed_message():
    chat = _FakeChat()
    with _client(chat) as client:
        resp = client.post(
            "/api/v1/chat",
            json={
                "message": "How do I reset from the transition zone?",
                "conversationHistory": [{"role": "assistant", "content": "Hi there!"}],
                "userContext": {"experience": "intermediate"},
            },
            headers=AUTH,
        )
        assert resp.status_code == 200
        assert resp.json() == {"response": REPLY, "security": {"blocked": False}}
        assert chat.calls == 1


def test_refusal_is_a_normal_reply():
    chat = _FakeChat()
    with _client(chat) as client:
        resp = client.post(
            "/api/v1/chat", json={"message": "Give me the leaderboard hack"}, headers=AUTH,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["security"]["blocked"] is True
        assert body["security"]["reason"] == "Topic not allowed"
        assert "rateLimited" not in body["security"]

        resp = client.post("/api/v1/chat", json={"message": "Any dink drills?"}, headers=AUTH)
        body = resp.json()
        assert body["security"]["rateLimited"] is True
        assert 0 < body["security"]["cooldownRemaining"] <= 60
        assert chat.calls == 0


def test_upstream_failure_maps_to_500_with_generic_details():
    chat = _FakeChat(error=UpstreamError("provider said: invalid key sk-123", retryable=False))
    with _client(chat) as client:
        resp = client.post("/api/v1/chat", json={"message": "Rules for the kitchen?"}, headers=AUTH)
        assert resp.status_code == 500
        assert resp.json() == {
            "error": "Internal server error",
            "details": "The AI service is unavailable",
        }


def test_activity_analytics_export_and_delete():
    with _client() as client:
        resp = client.post(
            "/api/v1/activity",
            json={"type": "match", "action": "won 11-9", "duration": 1500, "metadata": {"competitive": True}},
            headers=AUTH,
        )
        assert resp.status_code == 200
        assert resp.json()["type"] == "match"
        assert resp.json()["engagement_score"] == pytest.approx(0.9)

        analytics = client.get("/api/v1/analytics/me", headers=AUTH).json()
        assert analytics["analytics"]["total_activities"] == 1
        assert analytics["analytics"]["top_activity"] == "match"

        exported = client.get("/api/v1/context/export", headers=AUTH).json()
        assert exported["activities"][0]["action"] == "won 11-9"

        resp = client.delete("/api/v1/context", headers=AUTH)
        assert resp.json() == {"status": "cleared", "user_id": "user-1"}
        exported = client.get("/api/v1/context/export", headers=AUTH).json()
        assert exported["activities"] == []
        assert exported["context"]["contexts"] == []


def test_invalid_activity_type_is_rejected():
    with _client() as client:
        resp = client.post("/api/v1/activity", json={"type": "nap", "action": "zzz"}, headers=AUTH)
        assert resp.status_code == 422


def test_usage_endpoint():
    with _client() as client:
        client.post("/api/v1/chat", json={"message": "Best shoes for hard courts?"}, headers=AUTH)
        usage = client.get("/api/v1/usage", headers=AUTH).json()
        assert usage["total_requests"] == 1
        assert usage["request_count"] == {"chat": 1}


def test_content_summary_refuses_internal_targets():
    with _client() as client:
        for url in ("http://169.254.169.254/latest/meta-data/", "http://127.0.0.1:8000/admin", "file:///etc/passwd"):
            resp = client.post("/api/v1/content/summary", json={"url": url}, headers=AUTH)
            assert resp.status_code == 400, url
            assert "not allowed" in resp.json()["error"]
