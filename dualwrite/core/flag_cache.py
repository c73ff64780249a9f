from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable


@dataclass
class CacheEntry:
    value: Any
    stored_at: float

    def age(self, now: float) -> float:
        return max(0.0, now - self.stored_at)


class FlagCache:
    """
    Process-local TTL cache for flag configs.

    - Constructed once and injected into FeatureFlagStore (and through it the orchestrator).
    - get_fresh(): only entries younger than ttl_sec.
    - get_within(): entries up to an explicit age, used as the fallback when the DB is unreachable.
    - invalidate(): called by the write path before the new value is stored.
    - version()/put_if_version(): a reader that loaded before a concurrent write
      cannot overwrite the writer's entry with the older row.
    """

    def __init__(self, ttl_sec: float = 10.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_sec = float(ttl_sec)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._versions: dict[str, int] = {}

    def version(self, key: str) -> int:
        with self._lock:
            return self._versions.get(key, 0)

    def _bump(self, key: str) -> None:
        self._versions[key] = self._versions.get(key, 0) + 1

    def put_if_version(self, key: str, value: Any, version: int) -> bool:
        """Store only if nothing was put or invalidated for `key` since `version` was read."""
        with self._lock:
            if self._versions.get(key, 0) != version:
                return False
            self._entries[key] = CacheEntry(value=value, stored_at=self._clock())
            self._bump(key)
            return True

    def get_fresh(self, key: str) -> Any | None:
        return self.get_within(key, self.ttl_sec)

    def get_within(self, key: str, max_age_sec: float) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.age(self._clock()) > float(max_age_sec):
                return None
            return entry.value

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, stored_at=self._clock())
            self._bump(key)

    def invalidate(self, key: str | None = None) -> None:
        with self._lock:
            keys = list(self._entries) + list(self._versions) if key is None else [key]
            for k in set(keys):
                self._entries.pop(k, None)
                self._bump(k)

    def age_of(self, key: str) -> float | None:
        with self._lock:
            entry = self._entries.get(key)
            return None if entry is None else entry.age(self._clock())
