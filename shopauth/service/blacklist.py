from __future__ import annotations

import hashlib
import threading
import time
from typing import Callable, Dict, Optional, Protocol

from shopauth.logging import get_logger
from shopauth.service.tokens import ms_floor
from shopauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def token_digest(token: str) -> str:
    """Blacklist key for a token; raw tokens are never kept."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class Blacklist(Protocol):
    def revoke(self, token: str, ttl_seconds: int) -> None: ...

    def is_revoked(self, token: str) -> bool: ...

    def remove(self, token: str) -> bool: ...

    def revoke_all_for_user(self, user_id: str) -> float: ...

    def is_user_revoked(self, user_id: str, issued_at: float) -> bool: ...

    def sweep_expired(self) -> int: ...

    def stats(self) -> dict: ...


class TokenBlacklist:
    """In-process blacklist of individual tokens plus per-user revocation markers.

    Entries map a token digest to its absolute expiry and are dropped once the
    token itself could no longer verify. Size is bounded: when full, expired
    entries go first, then the entry closest to expiry.
    """

    def __init__(
        self,
        *,
        max_size: int = 10000,
        marker_ttl_seconds: int = 3600,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.max_size = max_size
        # A marker only matters while tokens issued before it can still verify
        self.marker_ttl_seconds = marker_ttl_seconds
        self._clock = clock or time.time
        self._entries: Dict[str, float] = {}
        self._user_markers: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def revoke(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        digest = token_digest(token)
        with self._lock:
            now = self._clock()
            if digest not in self._entries and len(self._entries) >= self.max_size:
                self._make_room(now)
            self._entries[digest] = now + ttl_seconds
        logger.debug("token_blacklisted", ttl_seconds=ttl_seconds)

    def _make_room(self, now: float) -> None:
        # Caller holds the lock
        self._purge_expired(now)
        if len(self._entries) >= self.max_size:
            victim = min(self._entries, key=self._entries.__getitem__)
            del self._entries[victim]
            logger.warning("blacklist_evicted_entry", max_size=self.max_size)

    def _purge_expired(self, now: float) -> int:
        expired = [digest for digest, exp in self._entries.items() if exp <= now]
        for digest in expired:
            del self._entries[digest]
        return len(expired)

    def is_revoked(self, token: str) -> bool:
        digest = token_digest(token)
        with self._lock:
            expires_at = self._entries.get(digest)
            if expires_at is None:
                self._misses += 1
                return False
            if expires_at <= self._clock():
                del self._entries[digest]
                self._misses += 1
                return False
            self._hits += 1
            return True

    def remove(self, token: str) -> bool:
        with self._lock:
            return self._entries.pop(token_digest(token), None) is not None

    def revoke_all_for_user(self, user_id: str) -> float:
        with self._lock:
            marker = ms_floor(self._clock())
            self._user_markers[user_id] = marker
        logger.info("user_tokens_revoked", user_id=user_id)
        return marker

    def user_revoked_at(self, user_id: str) -> Optional[float]:
        with self._lock:
            return self._user_markers.get(user_id)

    def is_user_revoked(self, user_id: str, issued_at: float) -> bool:
        """True for tokens issued at or before the user's marker.

        Markers and ``iat`` are both whole milliseconds, so a token minted in
        the revoking millisecond counts as revoked.
        """
        marker = self.user_revoked_at(user_id)
        return marker is not None and marker >= issued_at

    def sweep_expired(self) -> int:
        with self._lock:
            now = self._clock()
            removed = self._purge_expired(now)
            stale = [
                uid
                for uid, marker in self._user_markers.items()
                if marker + self.marker_ttl_seconds <= now
            ]
            for uid in stale:
                del self._user_markers[uid]
            remaining = len(self._entries)
        logger.info(
            "blacklist_swept", removed=removed, markers_dropped=len(stale), remaining=remaining
        )
        return removed

    def stats(self) -> dict:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "backend": "memory",
                "current_size": len(self._entries),
                "max_size": self.max_size,
                "marker_count": len(self._user_markers),
                "hit_count": self._hits,
                "miss_count": self._misses,
                "hit_rate": (self._hits / lookups) if lookups else 0.0,
                "miss_rate": (self._misses / lookups) if lookups else 0.0,
            }


class RedisTokenBlacklist:
    """Blacklist shared between instances; Redis key expiry does the sweeping."""

    def __init__(
        self,
        cache: RedisCache,
        *,
        marker_ttl_seconds: int = 3600,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cache = cache
        self.marker_ttl_seconds = marker_ttl_seconds
        self._clock = clock or time.time

    def revoke(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        self.cache.blacklist_token(token_digest(token), ttl_seconds)

    def is_revoked(self, token: str) -> bool:
        return self.cache.is_token_blacklisted(token_digest(token))

    def remove(self, token: str) -> bool:
        return self.cache.remove_blacklisted(token_digest(token))

    def revoke_all_for_user(self, user_id: str) -> float:
        marker = ms_floor(self._clock())
        self.cache.set_user_marker(user_id, marker, self.marker_ttl_seconds)
        logger.info("user_tokens_revoked", user_id=user_id)
        return marker

    def user_revoked_at(self, user_id: str) -> Optional[float]:
        return self.cache.get_user_marker(user_id)

    def is_user_revoked(self, user_id: str, issued_at: float) -> bool:
        marker = self.user_revoked_at(user_id)
        return marker is not None and marker >= issued_at

    def sweep_expired(self) -> int:
        return 0

    def stats(self) -> dict:
        return {
            "backend": "redis",
            "current_size": self.cache.count_keys(RedisCache.BLACKLIST_PREFIX),
            "marker_count": self.cache.count_keys(RedisCache.USER_MARKER_PREFIX),
        }
