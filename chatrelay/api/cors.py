from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from fastapi import Request, Response

from chatrelay.config import Settings

DEFAULT_ORIGINS = ("http://localhost:3000", "http://localhost:3001")
ALLOWED_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
# Content type plus the two identity-propagation headers
ALLOWED_HEADERS = "Content-Type, Authorization, X-User-Id, X-User-Email"
MAX_AGE_SECONDS = 86400


class CorsNegotiator:
    """Allow-list CORS with a fallback origin.

    A request whose ``Origin`` is allow-listed gets it echoed back; any other
    request is answered with the first configured origin. Browsers then reject
    the response for unlisted origins while same-origin tooling keeps working.
    """

    def __init__(self, allowed_origins: Iterable[str]) -> None:
        origins: List[str] = []
        for origin in allowed_origins:
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        if not origins:
            origins = list(DEFAULT_ORIGINS)
        self.allowed_origins = origins

    @classmethod
    def from_settings(cls, settings: Settings) -> "CorsNegotiator":
        return cls([settings.app_base_url, *DEFAULT_ORIGINS, *settings.cors_allow_origins])

    @property
    def fallback_origin(self) -> str:
        return self.allowed_origins[0]

    def resolve_origin(self, origin: Optional[str]) -> str:
        if origin and origin in self.allowed_origins:
            return origin
        return self.fallback_origin

    def headers_for(self, origin: Optional[str]) -> Dict[str, str]:
        return {
            "Access-Control-Allow-Origin": self.resolve_origin(origin),
            "Access-Control-Allow-Methods": ALLOWED_METHODS,
            "Access-Control-Allow-Headers": ALLOWED_HEADERS,
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Max-Age": str(MAX_AGE_SECONDS),
            "Vary": "Origin",
        }

    def preflight(self, request: Request) -> Optional[Response]:
        """Answer ``OPTIONS`` with 200 and no body; ``None`` for other methods."""
        if request.method.upper() != "OPTIONS":
            return None
        return Response(status_code=200, headers=self.headers_for(request.headers.get("origin")))

    def decorate(self, response: Response, request: Request) -> Response:
        for key, value in self.headers_for(request.headers.get("origin")).items():
            response.headers[key] = value
        return response
