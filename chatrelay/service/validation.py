from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_core import PydanticCustomError

from chatrelay.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

GENERIC_FAILURE = "Validation failed"

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PASSWORD_MIX = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")
_NAME_PATTERN = re.compile(r"^[a-zA-Z\s]+$")
_PROMPT_PATTERN = re.compile(r"^[a-zA-Z0-9\s.,!?\-_()]+$")

PASSWORD_MIX_MESSAGE = (
    "Password must contain at least one lowercase letter, one uppercase letter, and one number"
)

# pydantic error types rendered the way API clients expect
_PYDANTIC_MESSAGES = {
    "missing": "Required",
    "string_type": "Expected string",
    "model_type": "Expected object",
    "model_attributes_type": "Expected object",
}


def is_email(value: str) -> bool:
    local, sep, domain = value.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return False
    if not _EMAIL_LOCAL_PART.match(local):
        return False
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    return all(len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels)


def is_http_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def _enforce(value: Any, *rules: tuple[bool, str]) -> Any:
    """Raise one error carrying every broken rule, in the order given."""
    violations = [message for broken, message in rules if broken]
    if violations:
        raise PydanticCustomError(
            "constraint_violations",
            "{summary}",
            {"summary": "; ".join(violations), "violations": violations},
        )
    return value


def _check_email(value: str, *, max_length: Optional[int] = None) -> str:
    return _enforce(
        value,
        (not is_email(value), "Invalid email format"),
        (max_length is not None and len(value) > max_length, "Email too long"),
    )


def _check_new_password(value: str) -> str:
    return _enforce(
        value,
        (len(value) < 8, "Password must be at least 8 characters"),
        (len(value) > 128, "Password too long"),
        (not _PASSWORD_MIX.match(value), PASSWORD_MIX_MESSAGE),
    )


def _check_name(value: Optional[str], label: str) -> Optional[str]:
    if value is None:
        return None
    return _enforce(
        value,
        (len(value) < 1, f"{label} is required"),
        (len(value) > 50, f"{label} too long"),
        (not _NAME_PATTERN.match(value), f"{label} contains invalid characters"),
    )


class _Schema(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ChatMessageRequest(_Schema):
    message: str

    @field_validator("message")
    @classmethod
    def _check_message(cls, value: str) -> str:
        return _enforce(
            value,
            (len(value) < 1, "Message cannot be empty"),
            (len(value) > 4000, "Message too long (max 4000 characters)"),
        )


class ImagePromptRequest(_Schema):
    prompt: str

    @field_validator("prompt")
    @classmethod
    def _check_prompt(cls, value: str) -> str:
        return _enforce(
            value,
            (len(value) < 1, "Prompt cannot be empty"),
            (len(value) > 1000, "Prompt too long (max 1000 characters)"),
            (not _PROMPT_PATTERN.match(value), "Prompt contains invalid characters"),
        )


class RegistrationRequest(_Schema):
    email: str
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _check_email(value, max_length=255)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _check_new_password(value)

    @field_validator("first_name")
    @classmethod
    def _check_first_name(cls, value: Optional[str]) -> Optional[str]:
        return _check_name(value, "First name")

    @field_validator("last_name")
    @classmethod
    def _check_last_name(cls, value: Optional[str]) -> Optional[str]:
        return _check_name(value, "Last name")


class LoginRequest(_Schema):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _check_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _enforce(value, (len(value) < 1, "Password is required"))


class PasswordResetRequest(_Schema):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _check_email(value)


class PasswordResetConfirmRequest(_Schema):
    token: str
    password: str

    @field_validator("token")
    @classmethod
    def _check_token(cls, value: str) -> str:
        return _enforce(value, (len(value.strip()) < 1, "Token is required"))

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _check_new_password(value)


class PasswordUpdateRequest(_Schema):
    password: str

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _check_new_password(value)


class ProfileUpdateRequest(_Schema):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @field_validator("first_name")
    @classmethod
    def _check_first_name(cls, value: Optional[str]) -> Optional[str]:
        return _check_name(value, "First name")

    @field_validator("last_name")
    @classmethod
    def _check_last_name(cls, value: Optional[str]) -> Optional[str]:
        return _check_name(value, "Last name")

    @field_validator("avatar_url")
    @classmethod
    def _check_avatar_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _enforce(value, (not is_http_url(value), "Invalid avatar URL format"))


class EmailVerificationRequest(_Schema):
    token: str

    @field_validator("token")
    @classmethod
    def _check_token(cls, value: str) -> str:
        return _enforce(value, (len(value.strip()) < 1, "Token is required"))


class ImageDownloadRequest(_Schema):
    image_url: str = Field(alias="imageUrl")

    @field_validator("image_url")
    @classmethod
    def _check_image_url(cls, value: str) -> str:
        return _enforce(
            value,
            (len(value) < 1, "Image URL is required"),
            (bool(value) and not is_http_url(value), "Invalid image URL format"),
        )


SCHEMAS: Dict[str, Type[BaseModel]] = {
    "chat_message": ChatMessageRequest,
    "image_prompt": ImagePromptRequest,
    "registration": RegistrationRequest,
    "login": LoginRequest,
    "password_reset": PasswordResetRequest,
    "password_reset_confirm": PasswordResetConfirmRequest,
    "password_update": PasswordUpdateRequest,
    "profile_update": ProfileUpdateRequest,
    "email_verification": EmailVerificationRequest,
    "image_download": ImageDownloadRequest,
}


@dataclass
class ValidationResult(Generic[T]):
    """Either ``data`` (success) or a non-empty ``errors`` list, never both."""

    success: bool
    data: Optional[T] = None
    errors: List[str] = field(default_factory=list)

    @classmethod
    def ok(cls, data: T) -> "ValidationResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, errors: List[str]) -> "ValidationResult[T]":
        return cls(success=False, errors=list(errors) or [GENERIC_FAILURE])

    def as_dict(self) -> Dict[str, Any]:
        """Supplied, declared fields only, keyed as the client sent them."""
        if self.data is None:
            return {}
        return self.data.model_dump(by_alias=True, exclude_unset=True)


def format_errors(exc: ValidationError) -> List[str]:
    """Flatten a pydantic error into ``"<field path>: <reason>"`` strings."""
    messages: List[str] = []
    for error in exc.errors():
        path = ".".join(str(part) for part in error.get("loc", ()))
        ctx = error.get("ctx") or {}
        if error.get("type") == "constraint_violations":
            reasons = list(ctx.get("violations") or [error.get("msg", GENERIC_FAILURE)])
        else:
            reasons = [_PYDANTIC_MESSAGES.get(error.get("type", ""), error.get("msg", GENERIC_FAILURE))]
        for reason in reasons:
            messages.append(f"{path}: {reason}" if path else reason)
    return messages


def validate(schema_name: str, raw_input: Any) -> ValidationResult:
    """Validate an untyped payload against the named schema.

    Every violated constraint is reported, ordered by field declaration.
    Unknown fields are dropped. Anything other than a pydantic validation
    failure collapses to a single generic error.
    """
    schema = SCHEMAS[schema_name]
    try:
        return ValidationResult.ok(schema.model_validate(raw_input))
    except ValidationError as exc:
        return ValidationResult.fail(format_errors(exc))
    except Exception as exc:
        logger.warning(
            "validation_unexpected_error",
            schema=schema_name,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return ValidationResult.fail([GENERIC_FAILURE])
