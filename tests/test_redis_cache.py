"""Tests for the Redis-backed counter and token store."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from chatrelay.storage.redis_cache import RedisCache


@pytest.fixture
def cache():
    # from_url does not connect until the first command
    cache = RedisCache("redis://localhost:6379/0")
    cache.client = MagicMock()
    cache._fixed_window = AsyncMock()
    return cache


def test_rate_keys_are_hashed():
    first = RedisCache._normalize_rate_key("chat:1.2.3.4")
    second = RedisCache._normalize_rate_key("chat:1.2.3.5")

    assert first.startswith("rate:")
    assert first != second
    assert "1.2.3.4" not in first


@pytest.mark.asyncio
async def test_hit_decodes_script_reply(cache):
    cache._fixed_window.return_value = [1, 3, 1_700_000_060_000]

    state = await cache.hit("chat:1.2.3.4", 20, 60)

    assert state.allowed is True
    assert state.count == 3
    assert state.reset_at == pytest.approx(1_700_000_060.0)
    kwargs = cache._fixed_window.call_args.kwargs
    assert kwargs["keys"] == [RedisCache._normalize_rate_key("chat:1.2.3.4")]
    assert kwargs["args"][:2] == [20, 60_000]


@pytest.mark.asyncio
async def test_hit_denied(cache):
    cache._fixed_window.return_value = ["0", "20", "1700000060000"]

    state = await cache.hit("chat:1.2.3.4", 20, 60)

    assert state.allowed is False
    assert state.count == 20


@pytest.mark.asyncio
async def test_put_token_sets_expiry(cache):
    cache.client.set = AsyncMock()

    await cache.put_token("pwreset", "tok", "user-1", 0)

    cache.client.set.assert_awaited_once_with("pwreset:tok", "user-1", ex=1)


@pytest.mark.asyncio
async def test_pop_token_is_single_use(cache):
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=["user-1", 1])
    cache.client.pipeline.return_value = pipe

    assert await cache.pop_token("pwreset", "tok") == "user-1"
    pipe.get.assert_called_once_with("pwreset:tok")
    pipe.delete.assert_called_once_with("pwreset:tok")
