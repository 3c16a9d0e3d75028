from __future__ import annotations

import asyncio
import hashlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.service.email import EmailService
from chatrelay.service.errors import (
    ConflictError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
    WeakPasswordError,
)
from chatrelay.service.rate_limit import CounterStore, RateLimitDecision
from chatrelay.service.validation import validate
from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.models import Session, User
from chatrelay.storage.redis_cache import RedisCache

logger = get_logger(__name__)

RESET_TOKEN_TTL = timedelta(minutes=15)
VERIFY_TOKEN_TTL = timedelta(hours=24)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def extend_session(self, session_id: str, expires_at: datetime) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...

    def revoke_user_sessions(self, user_id: str) -> None: ...


@dataclass
class Identity:
    """The caller resolved from a session cookie for one request."""

    user_id: str
    email: str
    session_id: str
    expires_at: datetime
    refreshed: bool = False


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


class AuthService:
    """Accounts, passwords and cookie sessions for both store backends."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        counters: CounterStore,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.counters = counters
        self.email = email or EmailService.from_settings(settings)
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # In-process token fallback used when Redis is not configured
        self._state_lock = threading.Lock()
        self._tokens: Dict[str, tuple[str, datetime]] = {}

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.session_ttl_minutes)

    @staticmethod
    def normalize_email(email: str) -> str:
        return email.strip().lower()

    # tokens
    async def _put_token(self, namespace: str, value: str, ttl: timedelta) -> str:
        token = secrets.token_urlsafe(32)
        if self.cache:
            await self.cache.put_token(namespace, token, value, int(ttl.total_seconds()))
        else:
            with self._state_lock:
                self._purge_tokens()
                self._tokens[f"{namespace}:{token}"] = (value, datetime.utcnow() + ttl)
        return token

    async def _pop_token(self, namespace: str, token: str) -> Optional[str]:
        if self.cache:
            return await self.cache.pop_token(namespace, token)
        with self._state_lock:
            self._purge_tokens()
            stored = self._tokens.pop(f"{namespace}:{token}", None)
        return stored[0] if stored else None

    def _purge_tokens(self) -> None:
        now = datetime.utcnow()
        for key in [k for k, (_, expires_at) in self._tokens.items() if expires_at <= now]:
            del self._tokens[key]

    # passwords
    def _check_password_policy(self, password: str) -> None:
        result = validate("password_update", {"password": password})
        if not result.success:
            raise WeakPasswordError("Validation failed", details=result.errors)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # sessions
    def _open_session(
        self, user: User, *, user_agent: Optional[str], ip_addr: Optional[str]
    ) -> Session:
        return self.store.create_session(
            user.id,
            ttl_minutes=self.settings.session_ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    async def sign_up(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[User, Optional[Session]]:
        """Create an account; a session is issued unless verification is required."""
        self._check_password_policy(password)
        try:
            user = self.store.create_user(
                self.normalize_email(email),
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise ConflictError("User with this email already exists") from exc
            raise
        self.save_password(user.id, password)
        self.logger.info("user_signed_up", user_id=user.id)
        if self.settings.require_email_verification:
            await self.request_email_verification(user)
            return user, None
        return user, self._open_session(user, user_agent=user_agent, ip_addr=ip_addr)

    async def sign_in(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[User, Session]:
        user = self.store.get_user_by_email(self.normalize_email(email))
        if not user or not user.is_active or not self.verify_password(user.id, password):
            self.logger.info("sign_in_rejected", email_hash=_email_hash(self.normalize_email(email)))
            raise InvalidCredentialsError()
        if self.settings.require_email_verification and not user.email_verified:
            raise EmailNotVerifiedError()
        session = self._open_session(user, user_agent=user_agent, ip_addr=ip_addr)
        self.logger.info("user_signed_in", user_id=user.id, session_id=session.id)
        return user, session

    async def sign_out(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        self.store.revoke_session(session_id)
        self.logger.info("user_signed_out", session_id=session_id)

    async def current_identity(self, session_id: Optional[str]) -> Optional[Identity]:
        """Resolve a session token, sliding its expiry once half the TTL is used."""
        if not session_id:
            return None
        sess = self.store.get_session(session_id)
        if not sess:
            return None
        now = datetime.utcnow()
        if sess.is_expired(now):
            self.store.revoke_session(sess.id)
            self.logger.info("session_expired", session_id=sess.id)
            return None
        user = self.store.get_user(sess.user_id)
        if not user or not user.is_active:
            return None
        expires_at = sess.expires_at
        refreshed = False
        if expires_at - now < self.session_ttl / 2:
            expires_at = now + self.session_ttl
            self.store.extend_session(sess.id, expires_at)
            refreshed = True
        return Identity(
            user_id=user.id,
            email=user.email,
            session_id=sess.id,
            expires_at=expires_at,
            refreshed=refreshed,
        )

    # password reset
    async def initiate_password_reset(self, email: str) -> Optional[str]:
        """Send a reset link; returns the token, or None for unknown addresses."""
        normalized = self.normalize_email(email)
        cooldown = self.settings.password_reset_cooldown_seconds
        if cooldown > 0:
            state = await self.counters.hit(f"password_reset:{_email_hash(normalized)}", 1, cooldown)
            if not state.allowed:
                decision = RateLimitDecision(
                    allowed=False, limit=1, remaining=0, reset_at=state.reset_at
                )
                raise RateLimitedError(
                    "Too many password reset attempts. Please try again later.",
                    headers=decision.headers(),
                )
        user = self.store.get_user_by_email(normalized)
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=_email_hash(normalized))
            return None
        token = await self._put_token("reset", user.email, RESET_TOKEN_TTL)
        await asyncio.to_thread(self.email.send_password_reset, user.email, token)
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> bool:
        self._check_password_policy(new_password)
        email = await self._pop_token("reset", token)
        if not email:
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            return False
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.warning("password_reset_user_missing", email_hash=_email_hash(email))
            return False
        self.save_password(user.id, new_password)
        self.store.revoke_user_sessions(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)
        return True

    async def update_password(self, user_id: str, password: str) -> None:
        self._check_password_policy(password)
        if not self.store.get_user(user_id):
            raise NotFoundError("User not found")
        self.save_password(user_id, password)
        self.logger.info("password_updated", user_id=user_id)

    async def update_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        user = self.store.update_user_profile(
            user_id, first_name=first_name, last_name=last_name, avatar_url=avatar_url
        )
        if not user:
            raise NotFoundError("User not found")
        return user

    # email verification
    async def request_email_verification(self, user: User) -> str:
        token = await self._put_token("verify", user.id, VERIFY_TOKEN_TTL)
        await asyncio.to_thread(self.email.send_email_verification, user.email, token)
        self.logger.info("email_verification_requested", user_id=user.id)
        return token

    async def complete_email_verification(self, token: str) -> bool:
        user_id = await self._pop_token("verify", token)
        if not user_id:
            self.logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            return False
        if not self.store.mark_email_verified(user_id):
            self.logger.warning("email_verification_missing_user", user_id=user_id)
            return False
        self.logger.info("email_verified", user_id=user_id)
        return True
