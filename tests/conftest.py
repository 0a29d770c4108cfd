import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything imports bmsauth.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("AUTH_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "false")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_TIME_COST", "1")
os.environ.setdefault("PASSWORD_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_PARALLELISM", "1")
os.environ.pop("STATE_PATH", None)
os.environ.pop("AUTH_TRANSPORT", None)
os.environ.pop("MFA_MODE", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from bmsauth.config import MfaMode, TransportKind  # noqa: E402
from bmsauth.service.auth import AuthService  # noqa: E402
from bmsauth.service.mfa import MfaEngine  # noqa: E402
from bmsauth.service.passwords import PasswordVerifier  # noqa: E402
from bmsauth.service.policy import AccessPolicy  # noqa: E402
from bmsauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from bmsauth.service.throttle import LoginThrottle  # noqa: E402
from bmsauth.service.transport import BearerTransport, SessionTransport  # noqa: E402
from bmsauth.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = os.environ["AUTH_SECRET"]

# Start exactly on a 30 second TOTP step boundary
CLOCK_START = 1_700_000_010.0


class FakeClock:
    """Callable clock returning Unix seconds that tests move by hand."""

    def __init__(self, start: float = CLOCK_START) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key=TEST_SECRET)


@pytest.fixture
def hasher():
    return PasswordVerifier(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def build_service(store, hasher, clock):
    """Factory for an AuthService over the shared store, hasher and fake clock."""

    def _build(
        *,
        transport: TransportKind = TransportKind.SESSION,
        mfa_mode: MfaMode = MfaMode.TOTP,
        mfa_roles=("system_admin",),
        honor_enrolled_mfa: bool = False,
        max_failures: int = 5,
        window_seconds: int = 900,
        mfa_max_attempts: int = 5,
    ) -> AuthService:
        if transport is TransportKind.BEARER:
            issuer = BearerTransport(TEST_SECRET, clock=clock)
        else:
            issuer = SessionTransport(store, ttl_minutes=60, clock=clock)
        return AuthService(
            store,
            hasher=hasher,
            mfa=MfaEngine(store, mode=mfa_mode, clock=clock),
            transport=issuer,
            throttle=LoginThrottle(
                max_failures=max_failures, window_seconds=window_seconds, clock=clock
            ),
            policy=AccessPolicy.build(
                mfa_roles=mfa_roles, honor_enrolled_mfa=honor_enrolled_mfa
            ),
            mfa_max_attempts=mfa_max_attempts,
            clock=clock,
        )

    return _build


@pytest.fixture
def service(build_service):
    return build_service()


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
