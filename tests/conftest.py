import asyncio
import inspect
import os
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("APP_BASE_URL", "http://localhost:3000")
os.environ.pop("REDIS_URL", None)
os.environ.pop("OPENAI_API_KEY", None)

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from chatrelay.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeCompletionStream:
    """Stand-in for the openai streaming response."""

    def __init__(self, fragments, *, fail_with=None, fail_after=None):
        self.fragments = list(fragments)
        self.fail_with = fail_with
        self.fail_after = len(self.fragments) if fail_after is None else fail_after
        self.closed = False
        self.yielded = 0

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for index, text in enumerate(self.fragments):
            if self.fail_with is not None and index == self.fail_after:
                raise self.fail_with
            self.yielded += 1
            yield completion_chunk(text)
        if self.fail_with is not None and self.fail_after >= len(self.fragments):
            raise self.fail_with

    async def close(self):
        self.closed = True


def completion_chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


def openai_status_error(cls, status_code, code=None, message="upstream said no"):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(status_code, request=request)
    body = {"message": message, "code": code} if code else {"message": message}
    return cls(message, response=response, body=body)


def make_openai_client(
    stream=None,
    *,
    image_url="https://images.example.com/img.png",
    image_error=None,
    chat_error=None,
):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        side_effect=chat_error, return_value=stream if chat_error is None else None
    )
    if image_error is not None:
        client.images.generate = AsyncMock(side_effect=image_error)
    else:
        client.images.generate = AsyncMock(
            return_value=SimpleNamespace(data=[SimpleNamespace(url=image_url)])
        )
    client.close = AsyncMock()
    return client


@pytest.fixture
def fake_openai():
    return make_openai_client


@pytest.fixture
def fake_stream():
    return FakeCompletionStream


@pytest.fixture
def upstream_error():
    return openai_status_error
