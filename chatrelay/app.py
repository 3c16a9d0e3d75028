from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from chatrelay.api.cors import CorsNegotiator
from chatrelay.api.error_handling import INTERNAL_ERROR, error_response, register_exception_handlers
from chatrelay.api.routes import router
from chatrelay.api.schemas import HealthResponse
from chatrelay.config import Settings
from chatrelay.logging import bind_request_context, get_logger
from chatrelay.service import runtime as runtime_module

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its clients on shutdown."""
    runtime_module.get_runtime()
    logger.info("app_started", version=__version__, environment=_settings.environment)

    yield

    current = runtime_module.runtime
    if current is None:
        return
    try:
        await current.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="ChatRelay", version=__version__, lifespan=lifespan)

cors = CorsNegotiator.from_settings(_settings)


# Innermost middleware; must stay registered first.
@app.middleware("http")
async def catch_unhandled(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception as exc:
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response(500, INTERNAL_ERROR)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    return response


@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    """Tag logs and the response with ``X-Request-ID``.

    The client's header is reused when present, otherwise a new UUID is made.
    """
    request_id = bind_request_context(
        request.headers.get("X-Request-ID"), method=request.method, path=request.url.path
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def negotiate_cors(request: Request, call_next):
    preflight = cors.preflight(request)
    if preflight is not None:
        return preflight
    response = await call_next(request)
    return cors.decorate(response, request)


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", version=__version__)
