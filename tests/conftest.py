import asyncio
import inspect
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set

# Settle the environment before anything imports kalibro settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("JWT_SECRET", "access-secret-for-the-test-suite-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "refresh-secret-for-the-test-suite-only-0123456789")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from kalibro.config import Settings  # noqa: E402
from kalibro.service.auth import AuthService  # noqa: E402
from kalibro.service.runtime import reset_runtime_for_tests  # noqa: E402
from kalibro.service.tokens import TokenCodec  # noqa: E402
from kalibro.storage.accounts import MemoryAccountStore  # noqa: E402
from kalibro.storage.errors import StoreUnavailable  # noqa: E402
from kalibro.storage.kv import MemoryKeyValueStore  # noqa: E402

ACCESS_SECRET = "unit-access-secret-0123456789abcdefghijklmnop"
REFRESH_SECRET = "unit-refresh-secret-0123456789abcdefghijklmnop"
DEFAULT_PASSWORD = "Correct1Horse"


class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class SentCode:
    to_email: str
    code: str
    purpose: str
    ttl_minutes: int


class RecordingMailer:
    def __init__(self):
        self.sent: List[SentCode] = []
        self.fail = False

    def send_otp(self, to_email: str, code: str, purpose: str, ttl_minutes: int) -> bool:
        if self.fail:
            return False
        self.sent.append(SentCode(to_email, code, purpose, ttl_minutes))
        return True

    def last_code(self, to_email: Optional[str] = None) -> str:
        for sent in reversed(self.sent):
            if to_email is None or sent.to_email == to_email:
                return sent.code
        raise AssertionError(f"no code sent to {to_email}")


class OutageStore(MemoryKeyValueStore):
    """Memory store that raises StoreUnavailable while ``down`` is set.

    Operations named in ``failing`` raise even when the store is up.
    """

    def __init__(self, *, clock=time.time, down: bool = True):
        super().__init__(clock=clock)
        self.down = down
        self.failing: Set[str] = set()

    def _check(self, operation: str) -> None:
        if self.down or operation in self.failing:
            raise StoreUnavailable(operation, ConnectionError("connection refused"))

    async def get(self, key):
        self._check("get")
        return await super().get(key)

    async def set_with_ttl(self, key, value, seconds):
        self._check("set_with_ttl")
        return await super().set_with_ttl(key, value, seconds)

    async def delete(self, *keys):
        self._check("delete")
        return await super().delete(*keys)

    async def add_to_set(self, key, member):
        self._check("add_to_set")
        return await super().add_to_set(key, member)

    async def remove_from_set(self, key, member):
        self._check("remove_from_set")
        return await super().remove_from_set(key, member)

    async def members_of(self, key):
        self._check("members_of")
        return await super().members_of(key)

    async def expire(self, key, seconds):
        self._check("expire")
        return await super().expire(key, seconds)

    async def push_to_list(self, key, value, max_length):
        self._check("push_to_list")
        return await super().push_to_list(key, value, max_length)

    async def list_range(self, key, start, stop):
        self._check("list_range")
        return await super().list_range(key, start, stop)

    async def scan_keys(self, pattern):
        self._check("scan_keys")
        return await super().scan_keys(pattern)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        jwt_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_days=7,
    )


@pytest.fixture
def codec(clock):
    return TokenCodec(
        ACCESS_SECRET,
        REFRESH_SECRET,
        issuer="kalibro-library",
        access_ttl_seconds=900,
        refresh_ttl_seconds=7 * 24 * 60 * 60,
        clock=clock,
    )


@pytest.fixture
def accounts():
    return MemoryAccountStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def auth_service(accounts, kv, settings, mailer, clock):
    return AuthService(accounts, kv, settings, mailer=mailer, clock=clock)


@pytest.fixture
def make_account(accounts, auth_service):
    def _make(
        username: str = "reader",
        email: str = "reader@library.example",
        password: str = DEFAULT_PASSWORD,
        role: str = "student",
    ):
        return accounts.create_account(
            username=username,
            email=email,
            password_hash=auth_service.hash_password(password),
            role=role,
            name=username.title(),
        )

    return _make


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
