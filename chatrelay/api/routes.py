from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

import httpx
from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import StreamingResponse

from chatrelay.api.error_handling import error_response
from chatrelay.api.schemas import (
    AuthResponse,
    ConnectionTestResponse,
    ConnectivityResponse,
    DatastoreProbe,
    ImageResponse,
    MessageResponse,
    ProfileResponse,
    SessionOut,
    UserOut,
)
from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.service.auth import Identity
from chatrelay.service.conversations import derive_title
from chatrelay.service.errors import (
    AuthenticationError,
    BadRequestError,
    ServerError,
    ValidationError,
)
from chatrelay.service.gateway import CHAT_FAILURE, IMAGE_FAILURE
from chatrelay.service.rate_limit import Capability, RateLimitDecision
from chatrelay.service.runtime import Runtime, get_runtime
from chatrelay.service.streaming import relay_completion
from chatrelay.service.validation import GENERIC_FAILURE, validate
from chatrelay.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

DOWNLOAD_FAILURE = "Failed to download image"
DOWNLOAD_TIMEOUT_SECONDS = 30.0
PLACEHOLDER_DEFAULT = 400
PLACEHOLDER_MAX = 2000

_PLACEHOLDER_SVG = """
    <svg width="{width}" height="{height}" xmlns="http://www.w3.org/2000/svg">
      <rect width="100%" height="100%" fill="#f3f4f6"/>
      <text x="50%" y="50%" text-anchor="middle" dy=".3em" font-family="Arial, sans-serif" font-size="16" fill="#6b7280">
        Generated Image Placeholder
      </text>
      <text x="50%" y="60%" text-anchor="middle" dy=".3em" font-family="Arial, sans-serif" font-size="12" fill="#9ca3af">
        {width}x{height}
      </text>
    </svg>
  """


def client_address(request: Request) -> str:
    """Caller address used as the rate-limit identity before sign-in."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        logger.warning("request_body_not_json", path=request.url.path, error=str(exc))
        raise ValidationError(details=[GENERIC_FAILURE]) from exc


def _validated(schema_name: str, payload: Any):
    result = validate(schema_name, payload)
    if not result.success:
        raise ValidationError(details=result.errors)
    return result


def _apply_headers(response: Response, headers: Mapping[str, str]) -> None:
    for key, value in headers.items():
        response.headers[key] = value


def _apply_rate_limit_headers(response: Response, decision: RateLimitDecision) -> None:
    _apply_headers(response, decision.headers())


def _set_session_cookie(
    response: Response, session_id: str, expires_at: datetime, settings: Settings
) -> None:
    # Sessions carry naive UTC timestamps
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        settings.session_cookie_name,
        session_id,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _refresh_cookie(response: Response, identity: Identity, settings: Settings) -> None:
    if identity.refreshed:
        _set_session_cookie(response, identity.session_id, identity.expires_at, settings)


def _user_out(user: User) -> UserOut:
    return UserOut(**user.public_dict())


def _session_out(session: Optional[Session]) -> Optional[SessionOut]:
    if session is None:
        return None
    return SessionOut(id=session.id, expires_at=session.expires_at)


async def get_identity(
    request: Request, authorization: Optional[str] = Header(None)
) -> Identity:
    """Resolve the caller from the session cookie or a bearer token; 401 otherwise."""
    runtime = get_runtime()
    token = request.cookies.get(runtime.settings.session_cookie_name)
    if not token and authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    identity = await runtime.auth.current_identity(token)
    if identity is None:
        raise AuthenticationError("Authentication required to access this resource")
    request.state.identity = identity
    return identity


def _open_conversation(runtime: Runtime, text: str, identity: Identity, *, failure: str) -> str:
    try:
        return runtime.conversations.create_session(derive_title(text), identity.user_id)
    except Exception as exc:
        logger.error(
            "chat_session_create_failed",
            user_id=identity.user_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise ServerError(failure) from exc


@router.post("/auth/signup", response_model=AuthResponse, status_code=201, tags=["auth"])
async def signup(request: Request, response: Response):
    runtime = get_runtime()
    address = client_address(request)
    decision = await runtime.rate_limiter.enforce(Capability.AUTH, address)
    body = _validated("registration", await _json_body(request)).data
    user, session = await runtime.auth.sign_up(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        user_agent=request.headers.get("user-agent"),
        ip_addr=address,
    )
    _apply_rate_limit_headers(response, decision)
    if session is None:
        message = "User created successfully. Please check your email to verify your account."
    else:
        message = "User created successfully"
        _set_session_cookie(response, session.id, session.expires_at, runtime.settings)
    return AuthResponse(message=message, user=_user_out(user), session=_session_out(session))


@router.post("/auth/signin", response_model=AuthResponse, tags=["auth"])
async def signin(request: Request, response: Response):
    runtime = get_runtime()
    address = client_address(request)
    decision = await runtime.rate_limiter.enforce(Capability.AUTH, address)
    body = _validated("login", await _json_body(request)).data
    user, session = await runtime.auth.sign_in(
        body.email,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_addr=address,
    )
    _apply_rate_limit_headers(response, decision)
    _set_session_cookie(response, session.id, session.expires_at, runtime.settings)
    return AuthResponse(
        message="Login successful", user=_user_out(user), session=_session_out(session)
    )


@router.post("/auth/signout", response_model=MessageResponse, tags=["auth"])
async def signout(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    runtime = get_runtime()
    decision = await runtime.rate_limiter.enforce(Capability.AUTH, client_address(request))
    token = request.cookies.get(runtime.settings.session_cookie_name)
    if not token and authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    await runtime.auth.sign_out(token)
    _apply_rate_limit_headers(response, decision)
    _clear_session_cookie(response, runtime.settings)
    return MessageResponse(message="Logout successful")


@router.post("/auth/reset-password", response_model=MessageResponse, tags=["auth"])
async def request_password_reset(request: Request, response: Response):
    """Send a reset link; the reply is the same whether or not the address exists."""
    runtime = get_runtime()
    decision = await runtime.rate_limiter.enforce(Capability.AUTH, client_address(request))
    body = _validated("password_reset", await _json_body(request)).data
    await runtime.auth.initiate_password_reset(body.email)
    _apply_rate_limit_headers(response, decision)
    return MessageResponse(message="Password reset email sent. Please check your inbox.")


@router.post("/auth/reset-password/confirm", response_model=MessageResponse, tags=["auth"])
async def confirm_password_reset(request: Request, response: Response):
    runtime = get_runtime()
    decision = await runtime.rate_limiter.enforce(Capability.AUTH, client_address(request))
    body = _validated("password_reset_confirm", await _json_body(request)).data
    if not await runtime.auth.complete_password_reset(body.token, body.password):
        raise BadRequestError("Invalid or expired reset token")
    _apply_rate_limit_headers(response, decision)
    return MessageResponse(message="Password has been reset. Please sign in again.")


@router.post("/auth/verify-email", response_model=MessageResponse, tags=["auth"])
async def verify_email(request: Request, response: Response):
    runtime = get_runtime()
    decision = await runtime.rate_limiter.enforce(Capability.AUTH, client_address(request))
    body = _validated("email_verification", await _json_body(request)).data
    if not await runtime.auth.complete_email_verification(body.token):
        raise BadRequestError("Invalid or expired verification token")
    _apply_rate_limit_headers(response, decision)
    return MessageResponse(message="Email verified successfully")


@router.post("/auth/update-password", response_model=MessageResponse, tags=["auth"])
async def update_password(
    request: Request, response: Response, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    decision = await runtime.rate_limiter.enforce(Capability.AUTH, identity.user_id)
    body = _validated("password_update", await _json_body(request)).data
    await runtime.auth.update_password(identity.user_id, body.password)
    _apply_rate_limit_headers(response, decision)
    _refresh_cookie(response, identity, runtime.settings)
    return MessageResponse(message="Password updated successfully")


@router.post("/auth/profile", response_model=ProfileResponse, tags=["auth"])
async def update_profile(
    request: Request, response: Response, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    decision = await runtime.rate_limiter.enforce(Capability.AUTH, identity.user_id)
    fields = _validated("profile_update", await _json_body(request)).as_dict()
    user = await runtime.auth.update_profile(identity.user_id, **fields)
    _apply_rate_limit_headers(response, decision)
    _refresh_cookie(response, identity, runtime.settings)
    return ProfileResponse(message="Profile updated successfully", user=_user_out(user))


@router.post("/chat", tags=["chat"])
async def chat(request: Request, identity: Identity = Depends(get_identity)):
    """Stream a completion as server-sent events.

    Each fragment is sent as ``data: {"content": ...}`` and the stream ends
    with ``data: [DONE]``. The user turn is stored before streaming starts;
    the assistant turn is stored once the upstream has been fully drained.
    """
    runtime = get_runtime()
    decision = await runtime.rate_limiter.enforce(Capability.CHAT, identity.user_id)
    body = _validated("chat_message", await _json_body(request)).data
    fragments = await runtime.gateway.stream_completion(body.message)
    try:
        session_id = _open_conversation(runtime, body.message, identity, failure=CHAT_FAILURE)
    except ServerError:
        await fragments.aclose()
        raise
    conversations = runtime.conversations
    conversations.append_message(session_id, "user", body.message, "text", identity.user_id)

    def persist_reply(text: str) -> None:
        conversations.append_message(session_id, "assistant", text, "text", identity.user_id)

    response = StreamingResponse(
        relay_completion(
            fragments,
            on_complete=persist_reply,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
    _apply_rate_limit_headers(response, decision)
    _refresh_cookie(response, identity, runtime.settings)
    return response


@router.post("/image", response_model=ImageResponse, tags=["image"])
async def generate_image(
    request: Request, response: Response, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    decision = await runtime.rate_limiter.enforce(Capability.IMAGE, identity.user_id)
    body = _validated("image_prompt", await _json_body(request)).data
    image = await runtime.gateway.generate_image(body.prompt)
    session_id = _open_conversation(runtime, body.prompt, identity, failure=IMAGE_FAILURE)
    runtime.conversations.append_message(
        session_id, "user", body.prompt, "text", identity.user_id
    )
    runtime.conversations.append_message(
        session_id, "assistant", image.url, "image", identity.user_id
    )
    _apply_rate_limit_headers(response, decision)
    _refresh_cookie(response, identity, runtime.settings)
    return ImageResponse(
        image_url=image.url, prompt=image.prompt, enhanced_prompt=image.enhanced_prompt
    )


@router.post("/download-image", tags=["image"])
async def download_image(request: Request):
    """Fetch a generated image and hand it back as an attachment."""
    runtime = get_runtime()
    payload = await _json_body(request)
    if not isinstance(payload, dict) or not payload.get("imageUrl"):
        raise BadRequestError("Image URL is required")
    image_url = _validated("image_download", payload).data.image_url
    allowed_hosts = {h.lower() for h in runtime.settings.download_allowed_hosts}
    host = (urlparse(image_url).hostname or "").lower()
    if allowed_hosts and host not in allowed_hosts:
        logger.warning("image_download_host_rejected", host=host)
        raise BadRequestError("Image host not allowed")
    try:
        async with httpx.AsyncClient(
            timeout=DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True
        ) as client:
            upstream = await client.get(image_url)
            upstream.raise_for_status()
    except httpx.HTTPError as exc:
        logger.error(
            "image_download_failed", host=host, error_type=type(exc).__name__, error=str(exc)
        )
        raise ServerError(DOWNLOAD_FAILURE) from exc
    content = upstream.content
    content_type = upstream.headers.get("content-type", "")
    if not content_type.startswith("image/"):
        content_type = "image/png"
    filename = f"generated-image-{int(time.time() * 1000)}.png"
    return Response(
        content=content,
        media_type=content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(len(content)),
            "Cache-Control": "no-cache",
        },
    )


@router.get("/test-connection", response_model=ConnectionTestResponse, tags=["diagnostics"])
async def test_connection():
    """Probe the chat history tables with a read and a throwaway insert/delete."""
    runtime = get_runtime()
    ok, report = runtime.conversations.probe_report()
    if not ok:
        return error_response(500, "Database connection failed", report.get("details"))
    return ConnectionTestResponse(
        message="Database connection successful",
        timestamp=datetime.now(timezone.utc),
        database=DatastoreProbe(**report),
        tables={"chat_sessions": "Connected", "chat_messages": "Connected"},
    )


@router.get("/test-openai", response_model=ConnectivityResponse, tags=["diagnostics"])
async def test_openai():
    return get_runtime().gateway.connectivity()


def _placeholder_dimension(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value == 0:
        value = PLACEHOLDER_DEFAULT
    return min(max(value, 1), PLACEHOLDER_MAX)


@router.get("/placeholder/{width}/{height}", tags=["diagnostics"])
async def placeholder(width: str, height: str):
    safe_width = _placeholder_dimension(width)
    safe_height = _placeholder_dimension(height)
    return Response(
        content=_PLACEHOLDER_SVG.format(width=safe_width, height=safe_height),
        media_type="image/svg+xml",
        headers={"Cache-Control": "public, max-age=31536000"},
    )
