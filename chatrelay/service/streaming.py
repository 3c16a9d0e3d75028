from __future__ import annotations

import json
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

from chatrelay.logging import get_logger
from chatrelay.service.errors import ServiceError
from chatrelay.service.gateway import CHAT_FAILURE, CompletionStream

logger = get_logger(__name__)

DONE_EVENT = "data: [DONE]\n\n"

DisconnectProbe = Callable[[], Awaitable[bool]]


def sse_event(payload: Any) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def relay_completion(
    fragments: CompletionStream,
    *,
    on_complete: Callable[[str], Any],
    is_disconnected: Optional[DisconnectProbe] = None,
) -> AsyncIterator[str]:
    """Forward fragments as server-sent events and persist the full text once.

    Every fragment is recorded and forwarded in the same step, so what
    ``on_complete`` receives is exactly the concatenation of the forwarded
    ``content`` fields. ``on_complete`` runs only after the upstream is
    drained and only for non-empty text; the ``[DONE]`` event follows it.
    A client disconnect ends the relay without persisting anything. An
    upstream failure mid-stream is reported as an ``error`` event with no
    ``[DONE]``.
    """
    parts: List[str] = []
    try:
        async for fragment in fragments:
            if is_disconnected is not None and await is_disconnected():
                logger.info("chat_stream_client_disconnected", fragments=len(parts))
                return
            parts.append(fragment)
            yield sse_event({"content": fragment})
    except ServiceError as exc:
        logger.error(
            "chat_stream_interrupted",
            fragments=len(parts),
            error_code=exc.error_code,
            error=exc.message,
        )
        yield sse_event({"error": exc.message})
        return
    except Exception as exc:
        logger.exception(
            "chat_stream_failed",
            fragments=len(parts),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        yield sse_event({"error": CHAT_FAILURE})
        return
    finally:
        await fragments.aclose()

    text = "".join(parts)
    if text:
        on_complete(text)
    logger.info("chat_stream_completed", fragments=len(parts), characters=len(text))
    yield DONE_EVENT
