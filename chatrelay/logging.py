from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Mapping, Optional

import structlog

REQUEST_ID_KEY = "request_id"

_SENSITIVE_KEYS = ("password", "secret", "token", "api_key", "authorization", "cookie")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def bind_request_context(request_id: Optional[str] = None, **fields: Any) -> str:
    """Start a fresh log context for one request and return its request id."""
    rid = (request_id or "").strip()[:128] or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**{REQUEST_ID_KEY: rid}, **fields)
    return rid


def current_request_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get(REQUEST_ID_KEY)


def _mask(value: str) -> str:
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:2]}***@{domain}"
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _scrub(key: str, value: Any) -> Any:
    lowered = key.lower()
    if isinstance(value, Mapping):
        return {k: _scrub(str(k), v) for k, v in value.items()}
    if not isinstance(value, str):
        return value
    if any(marker in lowered for marker in _SENSITIVE_KEYS):
        return _mask(value)
    if lowered == "email" or lowered.endswith("_email"):
        return _mask(value)
    return value


def _redact(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials and addresses, including inside nested mappings."""
    for key in list(event_dict):
        if key == "event":
            continue
        event_dict[key] = _scrub(key, event_dict[key])
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    dev_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Every entry carries the bound request context, level and an ISO
    timestamp. Dev mode renders colored console lines, otherwise each entry
    is one JSON object with the traceback flattened into it.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    dev_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Never echo these back to a caller
_LEAK_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b\s+.{0,80}",
        r"(?i)(postgres(?:ql)?|redis)://\S+",
        r"(?i)(password|secret|token|api.?key)\s*[:=]\s*\S+",
        r"(?i)\bsk-[a-z0-9_\-]{8,}",
        r"(?:/(?:home|root|var|etc|usr|opt|tmp|srv)/|[a-z]:\\)\S+",
        r"(?i)traceback \(most recent call last\)",
    )
]

MAX_PUBLIC_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip queries, connection strings, credentials and paths from ``error``."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _LEAK_PATTERNS:
        error = pattern.sub(replacement, error)
    if len(error) > MAX_PUBLIC_ERROR_LENGTH:
        error = error[: MAX_PUBLIC_ERROR_LENGTH - 3] + "..."
    return error
