"""Small TTL cache owned by whoever constructs it."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TtlCache(Generic[K, V]):
    """Key/value cache with a fixed TTL and an optional size bound.

    Expired entries are kept around (until evicted by size) so callers can
    fall back to the last known value with ``get_stale``.
    """

    def __init__(self, ttl_s: float, max_entries: int | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = float(ttl_s)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[K, Tuple[V, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, ts = entry
            if self._clock() - ts >= self.ttl_s:
                return None
            self._entries.move_to_end(key)
            return value

    def get_stale(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            return entry[0] if entry is not None else None

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock())
            self._entries.move_to_end(key)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)

    def invalidate(self, key: K | None = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, ts) in self._entries.items() if now - ts >= self.ttl_s]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
