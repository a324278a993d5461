from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from shopauth.config import get_settings, reset_settings_cache
from shopauth.logging import get_logger
from shopauth.service.auth import AuthService
from shopauth.service.blacklist import RedisTokenBlacklist, TokenBlacklist
from shopauth.service.maintenance import MaintenanceSweeper
from shopauth.service.oauth_bridge import CODE_TTL_SECONDS, OAuth2HandshakeBridge
from shopauth.service.oauth_providers import STATE_TTL_SECONDS, OAuthProviderClient
from shopauth.service.one_time_store import (
    MemoryOneTimeStore,
    OneTimeStore,
    RedisOneTimeStore,
)
from shopauth.service.security_events import SecurityEventLog
from shopauth.service.tokens import TokenCodec
from shopauth.storage.memory import MemoryStore
from shopauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except Exception:
        # If parsing fails, return masked placeholder
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        try:
            self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; unset it to use "
                        "in-process blacklist and one-time code stores."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    mode="TEST_MODE",
                )

        access_ttl = self.settings.access_token_ttl_seconds
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl_seconds=access_ttl,
        )
        if self.cache is not None:
            self.blacklist = RedisTokenBlacklist(self.cache, marker_ttl_seconds=access_ttl)
            self.code_store: OneTimeStore = RedisOneTimeStore(
                self.cache, prefix="oauth2:code:", ttl_seconds=CODE_TTL_SECONDS
            )
            self.state_store: OneTimeStore = RedisOneTimeStore(
                self.cache, prefix="oauth2:state:", ttl_seconds=STATE_TTL_SECONDS
            )
        else:
            self.blacklist = TokenBlacklist(
                max_size=self.settings.blacklist_max_size, marker_ttl_seconds=access_ttl
            )
            self.code_store = MemoryOneTimeStore(CODE_TTL_SECONDS)
            self.state_store = MemoryOneTimeStore(STATE_TTL_SECONDS)

        self.events = SecurityEventLog(
            self.store,
            max_failed_attempts=self.settings.max_failed_attempts,
            lockout_minutes=self.settings.lockout_duration_minutes,
        )
        self.auth = AuthService(
            self.store,
            self.store,
            self.codec,
            self.blacklist,
            self.events,
            self.settings,
        )
        self.oauth_bridge = OAuth2HandshakeBridge(
            self.code_store, frontend_url=self.settings.frontend_url
        )
        self.oauth = OAuthProviderClient(self.settings, self.auth, self.state_store)
        self.maintenance = MaintenanceSweeper(
            self.auth,
            self.blacklist,
            self.events,
            retention_days=self.settings.security_event_retention_days,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            access_token_ttl_seconds=access_ttl,
            maintenance_enabled=self.settings.maintenance_enabled,
        )

    def close(self) -> None:
        self.code_store.close()
        self.state_store.close()
        if self.cache is not None:
            self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
