import asyncio
import base64
import inspect
import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

# Set before any imports that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("AUTHPIPE_STORAGE_BACKEND", "memory")
os.environ.setdefault("AUTHPIPE_API_BASE_URL", "https://auth.test")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authpipe.config import Settings  # noqa: E402
from authpipe.service.auth import AuthClient  # noqa: E402
from authpipe.service.runtime import reset_runtime_for_tests  # noqa: E402
from authpipe.service.transport import TransportResponse  # noqa: E402
from authpipe.storage.memory import MemoryStore  # noqa: E402

BASE_URL = "https://auth.test"
START_TIME = 1_700_000_000.0


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


class FakeClock:
    """Wall clock in epoch seconds that only moves when told to."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stand-in for asyncio.sleep that records the requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@dataclass
class RecordedCall:
    url: str
    method: str
    headers: Dict[str, str]
    body: Optional[str]

    @property
    def path(self) -> str:
        return self.url[len(BASE_URL):] if self.url.startswith(BASE_URL) else self.url

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None


@dataclass
class FakeTransport:
    """Scripted transport keyed by request path.

    Each path holds a queue of responses (or exceptions to raise). The last
    queued item is sticky and answers every further call to that path.
    """

    delay: float = 0.0
    routes: Dict[str, List[Any]] = field(default_factory=dict)
    calls: List[RecordedCall] = field(default_factory=list)

    def route(self, path: str, *responses: Any) -> "FakeTransport":
        self.routes.setdefault(path, []).extend(responses)
        return self

    def calls_to(self, path: str) -> List[RecordedCall]:
        return [call for call in self.calls if call.path == path]

    async def request(self, url, *, method="GET", headers=None, body=None):
        call = RecordedCall(url=url, method=method, headers=dict(headers or {}), body=body)
        self.calls.append(call)
        if self.delay:
            await asyncio.sleep(self.delay)
        queue = self.routes.get(call.path)
        if not queue:
            raise AssertionError(f"unexpected request to {call.path}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        return item


def json_response(status: int, payload: Any = None, headers: Optional[dict] = None):
    merged = {"Content-Type": "application/json"}
    merged.update(headers or {})
    body = "" if payload is None else json.dumps(payload)
    return TransportResponse(status=status, headers=merged, body=body)


def build_jwt(exp: Optional[float], iat: Optional[float] = None, **claims: Any) -> str:
    def segment(data: dict) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    payload = dict(claims)
    if exp is not None:
        payload["exp"] = int(exp)
    if iat is not None:
        payload["iat"] = int(iat)
    return ".".join(
        [segment({"alg": "HS256", "typ": "JWT"}), segment(payload), "c2lnbmF0dXJl"]
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def storage():
    return MemoryStore()


@pytest.fixture
def settings():
    return Settings(
        api_base_url=BASE_URL,
        install_id="install-test",
        test_mode=True,
    )


@pytest.fixture
def make_jwt(clock):
    """Build an unsigned JWT whose ``exp`` is ``expires_in`` seconds from the fake clock."""

    def factory(expires_in: Optional[float] = 3600, **claims: Any) -> str:
        exp = clock.now + expires_in if expires_in is not None else None
        return build_jwt(exp, iat=clock.now, **claims)

    return factory


@pytest.fixture
def respond():
    return json_response


@pytest.fixture
def client(settings, storage, transport, clock, sleeper):
    # Zero jitter keeps backoff delays exact
    return AuthClient.build(
        settings,
        storage,
        transport,
        clock=clock,
        sleep=sleeper,
        rng=lambda low, high: 0.0,
    )


@pytest.fixture
def signed_in(client, make_jwt):
    """Coroutine factory that stores a live session on ``client``."""

    async def sign_in(user=None, expires_in=3600, refresh_token="refresh-1"):
        user = user or {"id": "u-1", "username": "ada", "email": "ada@example.com"}
        token = make_jwt(expires_in)
        await client.store_auth_data(user, token, refresh_token)
        return token

    return sign_in
