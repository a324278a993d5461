from __future__ import annotations

import heapq
import threading
import time
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from shopauth.logging import get_logger
from shopauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class OneTimeStore(Protocol):
    ttl_seconds: int

    def put(self, key: str, payload: dict) -> None: ...

    def pop(self, key: str) -> Optional[dict]: ...

    def close(self) -> None: ...


class MemoryOneTimeStore:
    """Key/value entries that can be read exactly once and vanish after a TTL.

    Deadlines sit in a heap drained by a single daemon reaper per store, started
    on the first ``put``. ``pop`` also checks the deadline, so a late reaper
    never lets an entry outlive its TTL.
    """

    def __init__(
        self,
        ttl_seconds: int,
        *,
        clock: Optional[Callable[[], float]] = None,
        schedule_removal: bool = True,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time
        self._schedule_removal = schedule_removal
        self._entries: Dict[str, Tuple[dict, float]] = {}
        self._deadlines: List[Tuple[float, str]] = []
        self._cond = threading.Condition()
        self._reaper: Optional[threading.Thread] = None
        self._closed = False

    def put(self, key: str, payload: dict) -> None:
        deadline = self._clock() + self.ttl_seconds
        with self._cond:
            self._entries[key] = (payload, deadline)
            heapq.heappush(self._deadlines, (deadline, key))
            if self._schedule_removal and not self._closed:
                self._ensure_reaper()
                self._cond.notify()

    def _ensure_reaper(self) -> None:
        if self._reaper is not None and self._reaper.is_alive():
            return
        self._reaper = threading.Thread(
            target=self._reap, name="one-time-store-reaper", daemon=True
        )
        self._reaper.start()

    def _reap(self) -> None:
        with self._cond:
            while not self._closed:
                self.purge_expired()
                timeout = None
                if self._deadlines:
                    timeout = max(self._deadlines[0][0] - self._clock(), 0.0)
                self._cond.wait(timeout)

    def pop(self, key: str) -> Optional[dict]:
        with self._cond:
            entry = self._entries.pop(key, None)
        if entry is None:
            return None
        payload, deadline = entry
        if deadline <= self._clock():
            return None
        return payload

    def purge_expired(self) -> int:
        removed = 0
        with self._cond:
            now = self._clock()
            while self._deadlines and self._deadlines[0][0] <= now:
                deadline, key = heapq.heappop(self._deadlines)
                entry = self._entries.get(key)
                # A key re-put since this deadline was queued carries a later one
                if entry is not None and entry[1] == deadline:
                    del self._entries[key]
                    removed += 1
        if removed:
            logger.debug("one_time_entries_expired", removed=removed)
        return removed

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        if self._reaper is not None:
            self._reaper.join(timeout=1.0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries)


class RedisOneTimeStore:
    """One-time entries in Redis; ``GETDEL`` makes consumption atomic across instances."""

    def __init__(self, cache: RedisCache, *, prefix: str, ttl_seconds: int) -> None:
        self.cache = cache
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def put(self, key: str, payload: dict) -> None:
        self.cache.put_one_time(f"{self.prefix}{key}", payload, self.ttl_seconds)

    def pop(self, key: str) -> Optional[dict]:
        return self.cache.pop_one_time(f"{self.prefix}{key}")

    def close(self) -> None:
        """Key expiry happens in Redis; the connection belongs to the cache."""

    def __len__(self) -> int:
        return self.cache.count_keys(self.prefix)
