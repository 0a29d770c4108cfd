from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from bmsauth.config import Settings, TransportKind, get_settings, reset_settings_cache
from bmsauth.logging import get_logger
from bmsauth.service.auth import AuthService
from bmsauth.service.mfa import MfaEngine
from bmsauth.service.passwords import PasswordVerifier
from bmsauth.service.policy import AccessPolicy
from bmsauth.service.throttle import LoginThrottle
from bmsauth.service.transport import AuthTransport, BearerTransport, SessionTransport
from bmsauth.storage.memory import MemoryStore

logger = get_logger(__name__)


def build_transport(
    settings: Settings, store: MemoryStore, clock: Callable[[], float]
) -> AuthTransport:
    if settings.auth_transport is TransportKind.BEARER:
        return BearerTransport(
            settings.auth_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl_minutes=settings.token_ttl_minutes,
            clock=clock,
        )
    return SessionTransport(store, ttl_minutes=settings.session_ttl_minutes, clock=clock)


class Runtime:
    """Holds the singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            transport=self.settings.auth_transport.value,
            mfa_mode=self.settings.mfa_mode.value,
            persistent=bool(self.settings.state_path),
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryStore(
                self.settings.state_path,
                mfa_encryption_key=self.settings.mfa_encryption_key
                or self.settings.auth_secret,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = PasswordVerifier(
            time_cost=self.settings.password_time_cost,
            memory_cost=self.settings.password_memory_cost,
            parallelism=self.settings.password_parallelism,
        )
        self.policy = AccessPolicy.build(
            mfa_roles=self.settings.mfa_roles,
            honor_enrolled_mfa=self.settings.honor_enrolled_mfa,
        )
        self.mfa = MfaEngine(
            self.store,
            issuer=self.settings.mfa_issuer,
            window_steps=self.settings.mfa_window_steps,
            mode=self.settings.mfa_mode,
            out_of_band_ttl_seconds=self.settings.mfa_ticket_ttl_seconds,
            clock=clock,
        )
        self.transport = build_transport(self.settings, self.store, clock)
        self.throttle = LoginThrottle(
            max_failures=self.settings.login_max_failures,
            window_seconds=self.settings.login_window_seconds,
            clock=clock,
        )
        self.auth = AuthService(
            self.store,
            hasher=self.hasher,
            mfa=self.mfa,
            transport=self.transport,
            throttle=self.throttle,
            policy=self.policy,
            mfa_ticket_ttl_seconds=self.settings.mfa_ticket_ttl_seconds,
            mfa_max_attempts=self.settings.mfa_max_attempts,
            password_min_length=self.settings.password_min_length,
            clock=clock,
        )

        if self.settings.seed_demo_users:
            self.store.seed_demo_users(self.hasher.hash)

        logger.info("runtime_init_completed", transport=self.transport.kind.value)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check keeps two first requests from building two runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Callable[[], float] = time.time) -> Runtime:
    """Rebuild the runtime from a fresh read of the environment (TEST_MODE only)."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, clock=clock)
        return runtime
