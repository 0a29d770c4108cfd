from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from bmsauth.logging import get_logger
from bmsauth.service.errors import TooManyAttempts

logger = get_logger(__name__)


@dataclass
class _Window:
    failures: int
    started_at: float


class LoginThrottle:
    """Fixed-window failure counter keyed by identifier, client address or principal.

    Every attempt is reserved with ``acquire`` before credentials are checked
    and counts as a failure until a success clears the key. The window opens
    at the first uncleared attempt. Once ``max_failures`` are counted inside
    it, every attempt for that key is refused until the window has elapsed,
    correct credentials included.
    """

    def __init__(
        self,
        *,
        max_failures: int = 5,
        window_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}

    @staticmethod
    def keys_for(identifier: Optional[str], client_addr: Optional[str] = None) -> list[str]:
        keys = []
        if identifier:
            keys.append(f"id:{identifier}")
        if client_addr:
            keys.append(f"addr:{client_addr}")
        return keys

    def _live_window(self, key: str, now: float) -> Optional[_Window]:
        window = self._windows.get(key)
        if window and now - window.started_at >= self.window_seconds:
            self._windows.pop(key, None)
            return None
        return window

    def acquire(self, keys: Iterable[str]) -> None:
        """Reserve one attempt on every key, or raise ``TooManyAttempts``.

        The attempt is counted as a failure up front, under the lock, so
        concurrent callers cannot all slip past the limit while a slow check
        runs. Callers ``reset`` the keys when the attempt succeeds.
        """
        keys = list(keys)
        now = self._clock()
        with self._lock:
            for key in keys:
                window = self._live_window(key, now)
                if window and window.failures >= self.max_failures:
                    retry_after = int(window.started_at + self.window_seconds - now) + 1
                    logger.warning(
                        "login_throttled", key_kind=key.partition(":")[0], retry_after=retry_after
                    )
                    raise TooManyAttempts(
                        "too many failed attempts; try again later",
                        retry_after=retry_after,
                    )
            for key in keys:
                window = self._live_window(key, now)
                if window is None:
                    self._windows[key] = _Window(failures=1, started_at=now)
                else:
                    window.failures += 1

    def reset(self, keys: Iterable[str]) -> None:
        with self._lock:
            for key in keys:
                self._windows.pop(key, None)

    def failures(self, key: str) -> int:
        with self._lock:
            window = self._live_window(key, self._clock())
            return window.failures if window else 0

    def cleanup_expired(self) -> int:
        """Drop every window that has elapsed; returns how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [
                key
                for key, window in self._windows.items()
                if now - window.started_at >= self.window_seconds
            ]
            for key in stale:
                self._windows.pop(key, None)
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
