from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import openai
from openai import AsyncOpenAI

from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.service.errors import (
    ContentPolicyViolationError,
    QuotaExceededError,
    ServiceError,
    UpstreamError,
    UpstreamRateLimitedError,
)

logger = get_logger(__name__)

API_KEY_MISSING = "OpenAI API key not configured"
CHAT_FAILURE = "Failed to process request"
IMAGE_FAILURE = "Failed to generate image"

IMAGE_PROMPT_TEMPLATE = (
    "Create a highly realistic, photorealistic image: {prompt}. \n"
    "    Use professional photography style with excellent lighting, sharp details, and natural colors. \n"
    "    Make it look like a high-quality photograph, not a drawing or illustration.\n"
    "    Focus on the specific details mentioned in the prompt and ensure all elements are clearly visible and well-composed."
)


def enhance_image_prompt(prompt: str) -> str:
    """Wrap a user prompt in the fixed photorealism template sent upstream."""
    return IMAGE_PROMPT_TEMPLATE.format(prompt=prompt)


def _error_code(exc: BaseException) -> Optional[str]:
    code = getattr(exc, "code", None)
    if code:
        return str(code)
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        nested = body.get("error") if isinstance(body.get("error"), dict) else body
        value = nested.get("code") or nested.get("type")
        return str(value) if value else None
    return None


def classify_upstream_error(exc: BaseException, *, image: bool = False) -> ServiceError:
    """Map an openai SDK exception onto the service error taxonomy.

    Only the exception class, HTTP status and error code are inspected.
    """
    if isinstance(exc, ServiceError):
        return exc
    code = _error_code(exc)
    status = getattr(exc, "status_code", None)
    if isinstance(exc, openai.RateLimitError) or status == 429:
        if code == "insufficient_quota":
            return QuotaExceededError("API quota exceeded. Please check your OpenAI account.")
        return UpstreamRateLimitedError("Rate limit exceeded. Please try again later.")
    if image and code == "content_policy_violation":
        return ContentPolicyViolationError(
            "Content policy violation. Please modify your prompt."
        )
    return UpstreamError(IMAGE_FAILURE if image else CHAT_FAILURE)


def _delta_text(chunk: Any) -> str:
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return ""
    delta = getattr(choices[0], "delta", None)
    return getattr(delta, "content", None) or ""


@dataclass(frozen=True)
class GeneratedImage:
    url: str
    prompt: str
    enhanced_prompt: str


class CompletionStream:
    """Non-empty text fragments of one upstream completion.

    Finite and not restartable. ``aclose`` cancels the upstream response;
    it is idempotent and also runs when the upstream is exhausted or fails.
    """

    def __init__(self, upstream: Any) -> None:
        self._upstream = upstream
        self._iterator: Optional[AsyncIterator[Any]] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "CompletionStream":
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        if self._iterator is None:
            self._iterator = self._upstream.__aiter__()
        while True:
            try:
                chunk = await self._iterator.__anext__()
            except StopAsyncIteration:
                await self.aclose()
                raise
            except openai.OpenAIError as exc:
                await self.aclose()
                logger.error(
                    "upstream_stream_failed", error_type=type(exc).__name__, error=str(exc)
                )
                raise classify_upstream_error(exc) from exc
            text = _delta_text(chunk)
            if text:
                return text

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        closer = getattr(self._upstream, "close", None) or getattr(self._upstream, "aclose", None)
        if closer is None:
            return
        result = closer()
        if inspect.isawaitable(result):
            await result


class UpstreamGateway:
    """Single-attempt calls to the completion and image-generation API."""

    def __init__(self, settings: Settings, *, client: Optional[AsyncOpenAI] = None) -> None:
        self.settings = settings
        if client is None and settings.openai_api_key:
            client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                max_retries=0,
            )
        self.client = client

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    def _require_client(self) -> AsyncOpenAI:
        if self.client is None:
            logger.error("upstream_api_key_missing")
            raise UpstreamError(API_KEY_MISSING)
        return self.client

    async def stream_completion(self, message: str) -> CompletionStream:
        """Open a streaming completion; failures surface before any fragment."""
        client = self._require_client()
        try:
            upstream = await client.chat.completions.create(
                model=self.settings.chat_model,
                messages=[
                    {"role": "system", "content": self.settings.chat_system_prompt},
                    {"role": "user", "content": message},
                ],
                max_tokens=self.settings.chat_max_tokens,
                temperature=self.settings.chat_temperature,
                stream=True,
            )
        except openai.OpenAIError as exc:
            logger.error(
                "upstream_chat_failed",
                error_type=type(exc).__name__,
                status_code=getattr(exc, "status_code", None),
                code=_error_code(exc),
                error=str(exc),
            )
            raise classify_upstream_error(exc) from exc
        return CompletionStream(upstream)

    async def generate_image(self, prompt: str) -> GeneratedImage:
        client = self._require_client()
        enhanced = enhance_image_prompt(prompt)
        try:
            response = await client.images.generate(
                model=self.settings.image_model,
                prompt=enhanced,
                n=1,
                size=self.settings.image_size,
                quality=self.settings.image_quality,
                style=self.settings.image_style,
            )
        except openai.OpenAIError as exc:
            logger.error(
                "upstream_image_failed",
                error_type=type(exc).__name__,
                status_code=getattr(exc, "status_code", None),
                code=_error_code(exc),
                error=str(exc),
            )
            raise classify_upstream_error(exc, image=True) from exc
        data = getattr(response, "data", None) or []
        url = getattr(data[0], "url", None) if data else None
        if not url:
            logger.error("upstream_image_missing_url")
            raise UpstreamError(IMAGE_FAILURE)
        return GeneratedImage(url=url, prompt=prompt, enhanced_prompt=enhanced)

    def connectivity(self) -> dict:
        key = self.settings.openai_api_key or ""
        return {
            "hasApiKey": bool(key),
            "apiKeyLength": len(key),
            "message": (
                f"OpenAI API key is configured ({len(key)} characters)"
                if key
                else "OpenAI API key is not configured"
            ),
            "environment": self.settings.environment,
        }

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
