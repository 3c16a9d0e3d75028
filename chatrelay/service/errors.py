from __future__ import annotations

from typing import Mapping, Optional, Sequence, Union

Details = Union[str, Sequence[str], None]


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class defines an HTTP ``status_code`` and a stable ``error_code``.
    ``message`` is the public text placed in the ``error`` field of the
    response body; ``details`` is optional caller-facing context (a string or a
    list of strings). ``headers`` are copied onto the error response, which is
    how 429 responses carry their rate-limit headers.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Details = None,
        error_code: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if details is not None and not isinstance(details, str):
            details = list(details)
        self.details = details
        self.headers = dict(headers or {})


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str = "Validation failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class WeakPasswordError(ValidationError):
    """Password does not meet the strength policy (400)."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair did not match (401)."""

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailNotVerifiedError(AuthenticationError):
    """Account exists but the email address is not verified yet (401)."""

    def __init__(
        self, message: str = "Please verify your email before signing in", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class QuotaExceededError(ServiceError):
    """Upstream billing quota exhausted (402)."""
    status_code = 402
    error_code = "quota_exceeded"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate account (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class UpstreamRateLimitedError(RateLimitedError):
    """The upstream API throttled this service (429)."""
    pass


class ContentPolicyViolationError(ServiceError):
    """Upstream rejected an image prompt on policy grounds (400)."""
    status_code = 400
    error_code = "content_policy_violation"


class UpstreamError(ServiceError):
    """Generic upstream failure (500)."""
    status_code = 500
    error_code = "upstream_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "WeakPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "EmailNotVerifiedError",
    "QuotaExceededError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "UpstreamRateLimitedError",
    "ContentPolicyViolationError",
    "UpstreamError",
    "ServerError",
]
