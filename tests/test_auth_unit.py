"""Unit tests for the auth service.

Tests for:
- Password hashing and verification
- Sign-up, sign-in and sign-out
- Session resolution, expiry and sliding refresh
- Password reset and email verification flows
"""

import asyncio
import threading
import time
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from chatrelay.config import Settings
from chatrelay.service.auth import AuthService
from chatrelay.service.errors import (
    ConflictError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
    WeakPasswordError,
)
from chatrelay.service.rate_limit import MemoryCounterStore
from chatrelay.storage.memory import MemoryStore

PASSWORD = "TestPassword123"


@pytest.fixture
def settings():
    return Settings(session_ttl_minutes=60, password_reset_cooldown_seconds=60)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def email_service():
    email = MagicMock()
    email.send_password_reset.return_value = True
    email.send_email_verification.return_value = True
    return email


@pytest.fixture
def auth_service(memory_store, settings, email_service):
    return AuthService(
        memory_store,
        None,
        settings,
        counters=MemoryCounterStore(),
        email=email_service,
    )


@pytest.fixture
def test_user(memory_store, auth_service):
    user = memory_store.create_user("test@example.com")
    auth_service.save_password(user.id, PASSWORD)
    return user


class TestPasswordHashing:
    def test_hash_is_salted_argon2id(self, auth_service):
        hash1, algo = auth_service._hash_password(PASSWORD)
        hash2, _ = auth_service._hash_password(PASSWORD)

        assert algo == "argon2id"
        assert hash1 != PASSWORD
        assert hash1 != hash2

    def test_verify_password(self, auth_service, test_user):
        assert auth_service.verify_password(test_user.id, PASSWORD)
        assert not auth_service.verify_password(test_user.id, "WrongPassword1")

    def test_verify_without_record(self, auth_service, memory_store):
        user = memory_store.create_user("nopass@example.com")

        assert not auth_service.verify_password(user.id, PASSWORD)


class TestSignUp:
    async def test_sign_up_issues_session(self, auth_service, memory_store):
        user, session = await auth_service.sign_up(" New@Example.com ", PASSWORD, "Ada")

        assert user.email == "new@example.com"
        assert user.first_name == "Ada"
        assert session is not None
        assert memory_store.get_session(session.id).user_id == user.id

    async def test_weak_password_creates_nothing(self, auth_service, memory_store):
        with pytest.raises(WeakPasswordError) as excinfo:
            await auth_service.sign_up("a@b.com", "weak")

        assert any("Password must be at least 8 characters" in d for d in excinfo.value.details)
        assert memory_store.get_user_by_email("a@b.com") is None

    async def test_duplicate_email_conflicts(self, auth_service, test_user):
        with pytest.raises(ConflictError) as excinfo:
            await auth_service.sign_up("TEST@example.com", PASSWORD)

        assert excinfo.value.message == "User with this email already exists"

    async def test_verification_required_withholds_session(
        self, memory_store, email_service
    ):
        service = AuthService(
            memory_store,
            None,
            Settings(require_email_verification=True),
            counters=MemoryCounterStore(),
            email=email_service,
        )

        user, session = await service.sign_up("v@example.com", PASSWORD)

        assert session is None
        email_service.send_email_verification.assert_called_once()
        with pytest.raises(EmailNotVerifiedError):
            await service.sign_in("v@example.com", PASSWORD)

        token = email_service.send_email_verification.call_args.args[1]
        assert await service.complete_email_verification(token)
        _, signed_in = await service.sign_in("v@example.com", PASSWORD)
        assert signed_in.user_id == user.id


class TestSignIn:
    async def test_sign_in_success(self, auth_service, test_user):
        user, session = await auth_service.sign_in(
            "TEST@example.com", PASSWORD, user_agent="pytest", ip_addr="10.0.0.1"
        )

        assert user.id == test_user.id
        assert session.user_agent == "pytest"
        assert session.ip_addr == "10.0.0.1"

    async def test_wrong_password(self, auth_service, test_user):
        with pytest.raises(InvalidCredentialsError) as excinfo:
            await auth_service.sign_in("test@example.com", "WrongPassword1")

        assert excinfo.value.status_code == 401
        assert excinfo.value.message == "Invalid email or password"

    async def test_unknown_email(self, auth_service):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.sign_in("ghost@example.com", PASSWORD)

    async def test_sign_out_revokes_session(self, auth_service, test_user):
        _, session = await auth_service.sign_in("test@example.com", PASSWORD)

        await auth_service.sign_out(session.id)

        assert await auth_service.current_identity(session.id) is None

    async def test_sign_out_without_session_is_noop(self, auth_service):
        await auth_service.sign_out(None)


class TestCurrentIdentity:
    async def test_resolves_identity(self, auth_service, test_user):
        _, session = await auth_service.sign_in("test@example.com", PASSWORD)

        identity = await auth_service.current_identity(session.id)

        assert identity.user_id == test_user.id
        assert identity.email == "test@example.com"
        assert identity.session_id == session.id
        assert not identity.refreshed

    async def test_missing_or_unknown_token(self, auth_service):
        assert await auth_service.current_identity(None) is None
        assert await auth_service.current_identity("not-a-session") is None

    async def test_expired_session_is_revoked(self, auth_service, memory_store, test_user):
        _, session = await auth_service.sign_in("test@example.com", PASSWORD)
        memory_store.extend_session(session.id, datetime.utcnow() - timedelta(seconds=1))

        assert await auth_service.current_identity(session.id) is None
        assert memory_store.get_session(session.id) is None

    async def test_session_slides_after_half_ttl(self, auth_service, memory_store, test_user):
        _, session = await auth_service.sign_in("test@example.com", PASSWORD)
        memory_store.extend_session(session.id, datetime.utcnow() + timedelta(minutes=10))

        identity = await auth_service.current_identity(session.id)

        assert identity.refreshed
        assert identity.expires_at - datetime.utcnow() > timedelta(minutes=59)
        assert memory_store.get_session(session.id).expires_at == identity.expires_at


class TestPasswordReset:
    async def test_reset_round_trip(self, auth_service, memory_store, test_user, email_service):
        _, session = await auth_service.sign_in("test@example.com", PASSWORD)

        token = await auth_service.initiate_password_reset("test@example.com")
        email_service.send_password_reset.assert_called_once_with("test@example.com", token)

        assert await auth_service.complete_password_reset(token, "NewPassword456")
        assert auth_service.verify_password(test_user.id, "NewPassword456")
        assert memory_store.get_session(session.id) is None

    async def test_token_is_single_use(self, auth_service, test_user):
        token = await auth_service.initiate_password_reset("test@example.com")

        assert await auth_service.complete_password_reset(token, "NewPassword456")
        assert not await auth_service.complete_password_reset(token, "OtherPassword789")

    async def test_unknown_email_sends_nothing(self, auth_service, email_service):
        assert await auth_service.initiate_password_reset("ghost@example.com") is None
        email_service.send_password_reset.assert_not_called()

    async def test_cooldown_blocks_repeat_requests(self, auth_service, test_user):
        await auth_service.initiate_password_reset("test@example.com")

        with pytest.raises(RateLimitedError) as excinfo:
            await auth_service.initiate_password_reset("Test@Example.com")

        assert "Too many password reset attempts" in excinfo.value.message
        assert excinfo.value.headers["X-RateLimit-Limit"] == "1"
        assert excinfo.value.headers["X-RateLimit-Remaining"] == "0"
        assert int(excinfo.value.headers["Retry-After"]) >= 1

    async def test_reset_email_is_sent_off_the_event_loop(
        self, auth_service, test_user, email_service
    ):
        loop_thread = threading.get_ident()
        senders = []

        def slow_send(to, token):
            senders.append(threading.get_ident())
            time.sleep(0.3)
            return True

        email_service.send_password_reset.side_effect = slow_send
        ticks = []

        async def ticker():
            while True:
                ticks.append(time.monotonic())
                await asyncio.sleep(0.02)

        task = asyncio.create_task(ticker())
        await asyncio.sleep(0)
        await auth_service.initiate_password_reset("test@example.com")
        task.cancel()

        assert senders and senders[0] != loop_thread
        gaps = [later - earlier for earlier, later in zip(ticks, ticks[1:])]
        assert len(ticks) > 5
        assert max(gaps) < 0.2

    async def test_weak_new_password_rejected(self, auth_service, test_user):
        token = await auth_service.initiate_password_reset("test@example.com")

        with pytest.raises(WeakPasswordError):
            await auth_service.complete_password_reset(token, "short")


class TestAccountUpdates:
    async def test_update_password(self, auth_service, test_user):
        await auth_service.update_password(test_user.id, "Changed12345")

        assert auth_service.verify_password(test_user.id, "Changed12345")

    async def test_update_password_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.update_password("missing", "Changed12345")

    async def test_update_profile(self, auth_service, test_user):
        user = await auth_service.update_profile(
            test_user.id, first_name="Ada", avatar_url="https://img.example.com/a.png"
        )

        assert user.first_name == "Ada"
        assert user.avatar_url == "https://img.example.com/a.png"
        assert user.last_name is None

    async def test_verification_token_rejected_twice(self, auth_service, test_user):
        token = await auth_service.request_email_verification(test_user)

        assert await auth_service.complete_email_verification(token)
        assert not await auth_service.complete_email_verification(token)
