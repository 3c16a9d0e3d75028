"""Tests for log redaction, request context and public error sanitizing."""

import structlog

from chatrelay.logging import (
    _redact,
    bind_request_context,
    current_request_id,
    sanitize_error_message,
)


def test_redacts_credentials_and_addresses():
    event = _redact(
        None,
        "info",
        {
            "event": "signin_failed",
            "password": "Hunter2Hunter2",
            "to_email": "alice@example.com",
            "headers": {"authorization": "Bearer abcdef123", "accept": "*/*"},
            "attempts": 3,
        },
    )

    assert event["event"] == "signin_failed"
    assert event["password"] == "Hu***r2"
    assert event["to_email"] == "al***@example.com"
    assert event["headers"] == {"authorization": "Be***23", "accept": "*/*"}
    assert event["attempts"] == 3


def test_request_context_is_replaced_per_request():
    first = bind_request_context("req-1", path="/api/chat")
    second = bind_request_context(None, path="/healthz")

    assert first == "req-1"
    assert second != "req-1"
    assert current_request_id() == second
    assert structlog.contextvars.get_contextvars()["path"] == "/healthz"
    structlog.contextvars.clear_contextvars()


def test_sanitize_strips_connection_details():
    message = sanitize_error_message(
        "could not connect to postgresql://app:pw@db:5432/chat; password=hunter2"
    )

    assert "hunter2" not in message
    assert "db:5432" not in message
    assert "[redacted]" in message


def test_sanitize_truncates_and_handles_empty():
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 900)) == 500
