"""Process-scoped scan state: short-lived result cache and per-client rate limiter.

Both are plain objects injected into the orchestrator and router, so tests can
substitute their own instances or clocks.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from app.models.scan import ScanResult

Clock = Callable[[], float]


class ResultCache:
    """Timestamp map of recent results keyed by normalized repo reference.

    Absorbs duplicate near-simultaneous requests; it is not a general cache.
    """

    def __init__(self, ttl_s: float = 600.0, clock: Clock = time.monotonic, max_entries: int = 1024) -> None:
        self._ttl_s = ttl_s
        self._clock = clock
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, ScanResult]] = {}

    def get(self, key: str) -> Optional[ScanResult]:
        if self._ttl_s <= 0:
            return None
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, result = entry
            if now - stored_at >= self._ttl_s:
                del self._entries[key]
                return None
            return result

    def put(self, key: str, result: ScanResult) -> None:
        if self._ttl_s <= 0:
            return
        now = self._clock()
        with self._lock:
            if len(self._entries) >= self._max_entries:
                self._evict_expired(now)
            if len(self._entries) >= self._max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[oldest]
            self._entries[key] = (now, result)

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at >= self._ttl_s]
        for key in expired:
            del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RateLimiter:
    """Fixed-window request budget per client key."""

    def __init__(self, limit: int = 5, window_s: float = 60.0, clock: Clock = time.monotonic) -> None:
        self._limit = limit
        self._window_s = window_s
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    def allow(self, client_key: str) -> bool:
        now = self._clock()
        with self._lock:
            if len(self._windows) > 10_000:
                self._windows = {
                    k: v for k, v in self._windows.items() if now - v[0] < self._window_s
                }
            started, count = self._windows.get(client_key, (now, 0))
            if now - started >= self._window_s:
                started, count = now, 0
            if count >= self._limit:
                self._windows[client_key] = (started, count)
                return False
            self._windows[client_key] = (started, count + 1)
            return True

    def retry_after_s(self, client_key: str) -> int:
        now = self._clock()
        with self._lock:
            started, _ = self._windows.get(client_key, (now, 0))
        return max(1, int(self._window_s - (now - started)) + 1)
