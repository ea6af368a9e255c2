from __future__ import annotations

from dataclasses import dataclass
import threading
import time
from typing import Callable, Generic, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")

Clock = Callable[[], float]


@dataclass
class _Entry(Generic[V]):
    value: V
    created_at: float
    expires_at: float


class TTLCache(Generic[K, V]):
    """In-memory TTL cache with a hard capacity.

    Entries are kept in creation order; once the capacity is exceeded the
    oldest entries are evicted first. Every get/set is atomic under a lock so
    the cache can be shared between the guard loop and concurrent evaluations.
    """

    def __init__(
        self,
        default_ttl_seconds: float = 120,
        max_entries: int = 1000,
        clock: Clock = time.monotonic,
    ) -> None:
        self._default_ttl = max(0.001, float(default_ttl_seconds))
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._store: dict[K, _Entry[V]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                self._store.pop(key, None)
                return None
            return entry.value

    def set(self, key: K, value: V, ttl_seconds: Optional[float] = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else max(0.001, float(ttl_seconds))
        now = self._clock()
        with self._lock:
            # Re-setting a key refreshes its creation time, so it moves to the back.
            self._store.pop(key, None)
            self._store[key] = _Entry(value=value, created_at=now, expires_at=now + ttl)
            while len(self._store) > self._max_entries:
                oldest = next(iter(self._store))
                self._store.pop(oldest, None)

    def delete(self, key: K) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


class RoleCache(TTLCache[str, list]):
    """Group id -> role definitions, refetched once the TTL lapses."""

    def __init__(self, ttl_seconds: float = 300, max_entries: int = 50, clock: Clock = time.monotonic) -> None:
        super().__init__(default_ttl_seconds=ttl_seconds, max_entries=max_entries, clock=clock)
