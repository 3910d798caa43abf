from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple


class TokenStore(Protocol):
    """Key-value store for short-lived credentials.

    ``compare_and_delete`` is the exactly-once primitive: it removes the key
    only if it still holds ``expected`` and reports whether it did. Two
    concurrent callers with the same expectation see one ``True`` and one
    ``False``.
    """

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> bool: ...

    async def compare_and_delete(self, key: str, expected: str) -> bool: ...


class MemoryTokenStore:
    """In-process TokenStore for tests and single-node development."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live_value(self, key: str, now: float) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= now:
            self._entries.pop(key, None)
            return None
        return value

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = self._clock() + max(1, int(ttl_seconds))
        with self._lock:
            self._entries[key] = (value, expires_at)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key, self._clock())

    async def delete(self, key: str) -> bool:
        with self._lock:
            live = self._live_value(key, self._clock())
            self._entries.pop(key, None)
            return live is not None

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            current = self._live_value(key, self._clock())
            if current is None or current != expected:
                return False
            self._entries.pop(key, None)
            return True

    def purge_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [
                key
                for key, (_, expires_at) in self._entries.items()
                if expires_at is not None and expires_at <= now
            ]
            for key in stale:
                self._entries.pop(key, None)
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["MemoryTokenStore", "TokenStore"]
