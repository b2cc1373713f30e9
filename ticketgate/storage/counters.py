from __future__ import annotations

import math
import threading
from typing import Dict, Protocol, Tuple

SWEEP_INTERVAL_MS = 60_000


class CounterStore(Protocol):
    """Atomic window counters. Each call returns ``(success, remaining, reset_ms)``."""

    async def fixed_window(
        self, key: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]: ...

    async def sliding_window(
        self, key: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]: ...


class MemoryCounterStore:
    """Process-local counters with the same arithmetic as the Redis scripts.

    Used by the test suite and as the development fallback when Redis is
    absent. Counts are not shared between processes.
    """

    def __init__(self) -> None:
        # bucket key -> (count, expires_at_ms)
        self._buckets: Dict[str, Tuple[int, int]] = {}
        self._lock = threading.Lock()
        self._next_sweep_ms = 0

    def _read(self, key: str, now_ms: int) -> int:
        entry = self._buckets.get(key)
        if entry is None:
            return 0
        count, expires_at = entry
        if expires_at <= now_ms:
            del self._buckets[key]
            return 0
        return count

    def _sweep(self, now_ms: int) -> None:
        # Drops buckets of keys that are never read again
        if now_ms < self._next_sweep_ms:
            return
        expired = [key for key, (_, expires_at) in self._buckets.items() if expires_at <= now_ms]
        for key in expired:
            del self._buckets[key]
        self._next_sweep_ms = now_ms + SWEEP_INTERVAL_MS

    def _incr(self, key: str, now_ms: int, ttl_ms: int) -> int:
        count = self._read(key, now_ms) + 1
        expires_at = self._buckets[key][1] if count > 1 else now_ms + ttl_ms
        self._buckets[key] = (count, expires_at)
        return count

    async def fixed_window(
        self, key: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]:
        bucket = now_ms // window_ms
        with self._lock:
            self._sweep(now_ms)
            used = self._incr(f"{key}:{bucket}", now_ms, window_ms)
        return used <= limit, max(0, limit - used), (bucket + 1) * window_ms

    async def sliding_window(
        self, key: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]:
        bucket = now_ms // window_ms
        reset_ms = (bucket + 1) * window_ms
        current_key = f"{key}:{bucket}"
        with self._lock:
            self._sweep(now_ms)
            requested = self._read(current_key, now_ms)
            previous = self._read(f"{key}:{bucket - 1}", now_ms)
            percentage = 1 - ((now_ms % window_ms) / window_ms)
            weighted = math.floor(previous * percentage) + requested
            if weighted >= limit:
                return False, 0, reset_ms
            self._incr(current_key, now_ms, window_ms * 2 + 1000)
        return True, limit - (weighted + 1), reset_ms

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()
