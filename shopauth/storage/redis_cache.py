from __future__ import annotations

import json
from typing import Optional

from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the blacklist, revocation markers and one-time entries.

    Uses the synchronous client; callers on the event loop go through
    ``asyncio.to_thread`` like every other blocking store call.
    """

    BLACKLIST_PREFIX = "auth:blacklist:"
    USER_MARKER_PREFIX = "auth:user_revoked:"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        self.client.ping()

    def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        self.client.close()

    # blacklist entries, keyed by token digest
    def blacklist_token(self, digest: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.set(f"{self.BLACKLIST_PREFIX}{digest}", "1", ex=ttl_seconds)

    def is_token_blacklisted(self, digest: str) -> bool:
        return bool(self.client.exists(f"{self.BLACKLIST_PREFIX}{digest}"))

    def remove_blacklisted(self, digest: str) -> bool:
        return bool(self.client.delete(f"{self.BLACKLIST_PREFIX}{digest}"))

    def count_keys(self, prefix: str) -> int:
        return sum(1 for _ in self.client.scan_iter(match=f"{prefix}*", count=500))

    # per-user revocation markers
    def set_user_marker(self, user_id: str, revoked_at: float, ttl_seconds: int) -> None:
        self.client.set(
            f"{self.USER_MARKER_PREFIX}{user_id}", repr(revoked_at), ex=max(1, ttl_seconds)
        )

    def get_user_marker(self, user_id: str) -> Optional[float]:
        raw = self.client.get(f"{self.USER_MARKER_PREFIX}{user_id}")
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            return None

    # one-time entries
    def put_one_time(self, key: str, payload: dict, ttl_seconds: int) -> None:
        self.client.set(key, json.dumps(payload), ex=max(1, ttl_seconds))

    def pop_one_time(self, key: str) -> Optional[dict]:
        """Atomically get and delete an entry so it can be consumed once."""
        cached = self.client.getdel(key)
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted data - already deleted
            return None
