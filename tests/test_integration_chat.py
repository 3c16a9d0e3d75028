"""Integration tests for the streaming chat endpoint."""

import json
from unittest.mock import patch

import openai
import pytest
from fastapi.testclient import TestClient

from chatrelay import app as app_module
from chatrelay.service.rate_limit import Capability, RateLimitPolicy
from chatrelay.service.runtime import get_runtime

PASSWORD = "TestPassword123"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def signed_in(client):
    response = client.post(
        "/api/auth/signup",
        json={"email": "chat@example.com", "password": PASSWORD},
        headers={"X-Forwarded-For": "198.51.100.10"},
    )
    assert response.status_code == 201
    return response.json()["user"]


def _events(body):
    return [chunk for chunk in body.split("\n\n") if chunk]


def _chat_history(user_id):
    store = get_runtime().store
    sessions = [s for s in store.list_chat_sessions(limit=100) if s.user_id == user_id]
    messages = [m for m in store.list_chat_messages(limit=100) if m.user_id == user_id]
    return sessions, messages


class TestChatStreaming:
    def test_stream_persists_one_session_and_two_messages(
        self, client, signed_in, fake_openai, fake_stream
    ):
        get_runtime().gateway.client = fake_openai(fake_stream(["Hel", "lo", "!"]))

        response = client.post("/api/chat", json={"message": "Hi"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"
        assert response.headers["x-ratelimit-limit"] == "60"
        assert response.headers["x-ratelimit-remaining"] == "59"
        events = _events(response.text)
        assert events[-1] == "data: [DONE]"
        contents = [json.loads(e[len("data: "):])["content"] for e in events[:-1]]
        assert contents == ["Hel", "lo", "!"]

        sessions, messages = _chat_history(signed_in["id"])
        assert len(sessions) == 1
        assert sessions[0].title == "Hi"
        by_role = {m.role: m for m in messages}
        assert len(messages) == 2
        assert by_role["user"].content == "Hi"
        assert by_role["assistant"].content == "Hello!"
        assert all(m.session_id == sessions[0].id for m in messages)
        assert all(m.type == "text" for m in messages)

    def test_each_request_opens_new_session(self, client, signed_in, fake_openai, fake_stream):
        runtime = get_runtime()
        for _ in range(2):
            runtime.gateway.client = fake_openai(fake_stream(["ok"]))
            assert client.post("/api/chat", json={"message": "Again"}).status_code == 200

        sessions, messages = _chat_history(signed_in["id"])
        assert len(sessions) == 2
        assert len(messages) == 4

    def test_long_message_title_is_truncated(self, client, signed_in, fake_openai, fake_stream):
        get_runtime().gateway.client = fake_openai(fake_stream(["ok"]))
        message = "x" * 80

        client.post("/api/chat", json={"message": message})

        sessions, _ = _chat_history(signed_in["id"])
        assert sessions[0].title == "x" * 50 + "..."

    def test_mid_stream_failure_sends_error_and_skips_reply(
        self, client, signed_in, fake_openai, fake_stream, upstream_error
    ):
        upstream = fake_stream(["par"], fail_with=upstream_error(openai.InternalServerError, 500))
        get_runtime().gateway.client = fake_openai(upstream)

        response = client.post("/api/chat", json={"message": "Hi"})

        events = _events(response.text)
        assert response.status_code == 200
        assert events[-1] == 'data: {"error": "Failed to process request"}'
        assert "data: [DONE]" not in events
        _, messages = _chat_history(signed_in["id"])
        assert [m.role for m in messages] == ["user"]

    def test_history_failure_does_not_block_stream(
        self, client, signed_in, fake_openai, fake_stream
    ):
        get_runtime().gateway.client = fake_openai(fake_stream(["ok"]))
        store = get_runtime().store

        with patch.object(store, "append_chat_message", side_effect=RuntimeError("db down")):
            response = client.post("/api/chat", json={"message": "Hi"})

        assert response.status_code == 200
        assert _events(response.text)[-1] == "data: [DONE]"

    def test_session_create_failure_is_fatal(self, client, signed_in, fake_openai, fake_stream):
        upstream = fake_stream(["ok"])
        get_runtime().gateway.client = fake_openai(upstream)
        store = get_runtime().store

        with patch.object(store, "create_chat_session", side_effect=RuntimeError("db down")):
            response = client.post("/api/chat", json={"message": "Hi"})

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to process request"}
        assert upstream.closed


class TestChatAdmission:
    def test_requires_session(self, client):
        response = client.post("/api/chat", json={"message": "Hi"})

        assert response.status_code == 401
        assert response.json()["error"] == "Authentication required to access this resource"

    def test_auth_checked_before_validation(self, client):
        response = client.post("/api/chat", json={"message": ""})

        assert response.status_code == 401

    def test_validation_failure(self, client, signed_in, fake_openai, fake_stream):
        client_mock = fake_openai(fake_stream(["never"]))
        get_runtime().gateway.client = client_mock

        response = client.post("/api/chat", json={"message": ""})

        assert response.status_code == 400
        assert response.json() == {
            "error": "Validation failed",
            "details": ["message: Message cannot be empty"],
        }
        client_mock.chat.completions.create.assert_not_called()

    def test_non_json_body(self, client, signed_in):
        response = client.post(
            "/api/chat", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Validation failed", "details": ["Validation failed"]}

    def test_rate_limited_after_ceiling(self, client, signed_in, fake_openai, fake_stream):
        runtime = get_runtime()

        runtime.rate_limiter.policies[Capability.CHAT] = RateLimitPolicy(2, 60)
        for _ in range(2):
            runtime.gateway.client = fake_openai(fake_stream(["ok"]))
            assert client.post("/api/chat", json={"message": "Hi"}).status_code == 200

        response = client.post("/api/chat", json={"message": "Hi"})

        assert response.status_code == 429
        assert response.json()["error"] == "Rate limit exceeded"
        assert int(response.headers["retry-after"]) >= 1
        assert response.headers["x-ratelimit-remaining"] == "0"

    def test_quota_error_maps_to_402(self, client, signed_in, fake_openai, upstream_error):
        get_runtime().gateway.client = fake_openai(
            chat_error=upstream_error(openai.RateLimitError, 429, "insufficient_quota")
        )

        response = client.post("/api/chat", json={"message": "Hi"})

        assert response.status_code == 402
        assert response.json() == {"error": "API quota exceeded. Please check your OpenAI account."}
        sessions, _ = _chat_history(signed_in["id"])
        assert sessions == []

    def test_missing_api_key(self, client, signed_in):
        response = client.post("/api/chat", json={"message": "Hi"})

        assert response.status_code == 500
        assert response.json() == {"error": "OpenAI API key not configured"}
