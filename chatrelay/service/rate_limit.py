from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Protocol

from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.service.errors import RateLimitedError

logger = get_logger(__name__)

Clock = Callable[[], float]


class Capability(str, Enum):
    """Rate-limited actions exposed over the API."""

    CHAT = "chat"
    IMAGE = "image"
    AUTH = "auth"


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: int = 60

    @property
    def enabled(self) -> bool:
        return self.limit > 0


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


@dataclass(frozen=True)
class WindowState:
    """Outcome of one counter-store hit."""

    allowed: bool
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(1, math.ceil(self.reset_at - now))

    def headers(self, now: Optional[float] = None) -> Dict[str, str]:
        if self.limit <= 0:
            return {}
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after(now))
        return headers


class CounterStore(Protocol):
    """Fixed-window counters shared by every check for a key.

    ``hit`` must check and increment atomically: a denied hit leaves the
    stored count and reset time untouched.
    """

    async def hit(self, key: str, limit: int, window_seconds: int) -> WindowState: ...

    async def reset(self, key: str) -> None: ...


class MemoryCounterStore:
    """Process-local counter store guarded by a lock.

    Expired windows are purged on every hit rather than by a timer.
    """

    def __init__(self, *, clock: Clock = time.time) -> None:
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now >= entry.reset_at]
        for key in expired:
            del self._entries[key]

    def hit_now(self, key: str, limit: int, window_seconds: int) -> WindowState:
        with self._lock:
            now = self._clock()
            self._purge_expired(now)
            entry = self._entries.get(key)
            if entry is None:
                entry = RateLimitEntry(count=1, reset_at=now + window_seconds)
                self._entries[key] = entry
                return WindowState(allowed=True, count=1, reset_at=entry.reset_at)
            if entry.count >= limit:
                return WindowState(allowed=False, count=entry.count, reset_at=entry.reset_at)
            entry.count += 1
            return WindowState(allowed=True, count=entry.count, reset_at=entry.reset_at)

    async def hit(self, key: str, limit: int, window_seconds: int) -> WindowState:
        return self.hit_now(key, limit, window_seconds)

    async def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)


def policies_from_settings(settings: Settings) -> Dict[Capability, RateLimitPolicy]:
    window = settings.rate_limit_window_seconds
    if window <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window, default=60)
        window = 60
    return {
        Capability.CHAT: RateLimitPolicy(settings.chat_rate_limit_per_minute, window),
        Capability.IMAGE: RateLimitPolicy(settings.image_rate_limit_per_minute, window),
        Capability.AUTH: RateLimitPolicy(settings.auth_rate_limit_per_minute, window),
    }


class RateLimiter:
    """Per-capability fixed-window limiter in front of a counter store."""

    def __init__(
        self,
        store: CounterStore,
        policies: Mapping[Capability, RateLimitPolicy],
        *,
        clock: Clock = time.time,
    ) -> None:
        self.store = store
        self.policies = dict(policies)
        self._clock = clock

    @staticmethod
    def key_for(capability: Capability, identity: str) -> str:
        return f"{capability.value}:{identity}"

    def policy_for(self, capability: Capability) -> RateLimitPolicy:
        return self.policies.get(capability, RateLimitPolicy(0))

    async def check(self, capability: Capability, identity: str) -> RateLimitDecision:
        policy = self.policy_for(capability)
        if not policy.enabled:
            return RateLimitDecision(
                allowed=True, limit=0, remaining=0, reset_at=self._clock()
            )
        state = await self.store.hit(
            self.key_for(capability, identity), policy.limit, policy.window_seconds
        )
        remaining = max(0, policy.limit - state.count) if state.allowed else 0
        return RateLimitDecision(
            allowed=state.allowed,
            limit=policy.limit,
            remaining=remaining,
            reset_at=state.reset_at,
        )

    async def enforce(self, capability: Capability, identity: str) -> RateLimitDecision:
        """Check and raise :class:`RateLimitedError` carrying the headers if denied."""
        decision = await self.check(capability, identity)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                capability=capability.value,
                identity=identity,
                limit=decision.limit,
                reset_at=decision.reset_at,
            )
            raise RateLimitedError(
                "Rate limit exceeded",
                details="Too many requests. Please try again later.",
                headers=decision.headers(self._clock()),
            )
        return decision

    async def reset(self, capability: Capability, identity: str) -> None:
        await self.store.reset(self.key_for(capability, identity))
