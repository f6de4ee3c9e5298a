"""Bounded in-memory TTL cache with an injectable clock."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Optional

MISSING = object()


@dataclass
class _CacheEntry:
    value: Any
    expires_at: float


class TTLCache:
    """Key/value cache where every entry expires ``ttl`` seconds after it was set.

    ``clock`` must be monotonic; tests pass a fake one so expiry can be
    driven without sleeping. When ``max_entries`` is reached the least
    recently used entry is evicted.
    """

    def __init__(
        self,
        ttl: float,
        *,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, _CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = MISSING) -> Any:
        """Return the cached value, or ``default`` when absent or expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if entry.expires_at <= now:
                del self._entries[key]
                return default
            self._entries.move_to_end(key)
            return entry.value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + (ttl if ttl is not None else self.ttl)
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, expires_at=expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def add(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> bool:
        """Set ``key`` only if it is absent or expired. Returns True when stored."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > now:
                return False
            self._entries[key] = _CacheEntry(value=value, expires_at=now + (ttl if ttl is not None else self.ttl))
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
            return True

    def expires_in(self, key: Hashable) -> float:
        """Seconds until ``key`` expires (0 when absent)."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expires_at <= now:
                return 0.0
            return entry.expires_at - now

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
