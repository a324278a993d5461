from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Tuple

from shopauth.logging import get_logger, mask_email
from shopauth.storage.models import SecurityEvent

logger = get_logger(__name__)


class SecurityEventKind(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    OAUTH2_LOGIN = "OAUTH2_LOGIN"
    ACCESS_DENIED = "ACCESS_DENIED"


class SecurityEventStore(Protocol):
    def append_security_event(self, event: SecurityEvent) -> None: ...

    def delete_security_events_before(self, cutoff: datetime) -> int: ...

    def count_security_events(self) -> int: ...


class SecurityEventLog:
    """Append-only audit trail of authentication events.

    Recording is a side effect of the auth flows and must never fail them, so
    ``record`` logs and drops any storage error. Failed logins are also
    counted per identifier within a sliding window of twice the lockout
    duration; the counter is informational and does not gate login.
    """

    def __init__(
        self,
        store: SecurityEventStore,
        *,
        max_failed_attempts: int = 5,
        lockout_minutes: int = 30,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.max_failed_attempts = max_failed_attempts
        self.lockout_minutes = lockout_minutes
        self._window_seconds = lockout_minutes * 2 * 60
        self._clock = clock or time.time
        self._lock = threading.Lock()
        # identifier -> (attempts, window deadline)
        self._failures: Dict[str, Tuple[int, float]] = {}
        self._last_events: Dict[str, SecurityEvent] = {}
        self._failure_lookups = 0
        self._failure_hits = 0

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def record(
        self,
        subject: str,
        kind: SecurityEventKind,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[SecurityEvent]:
        event = SecurityEvent(
            subject=subject,
            kind=SecurityEventKind(kind).value,
            reason=reason,
            ip_address=ip_address,
            created_at=self._now(),
        )
        try:
            self.store.append_security_event(event)
        except Exception as exc:
            logger.error(
                "security_event_record_failed", kind=event.kind, error=str(exc)
            )
            return None
        with self._lock:
            self._last_events[subject.lower()] = event
        return event

    def record_login_success(self, identifier: str, ip_address: Optional[str] = None) -> None:
        with self._lock:
            self._failures.pop(identifier.lower(), None)
        logger.info("login_success", user=mask_email(identifier), ip=ip_address)
        self.record(identifier, SecurityEventKind.LOGIN_SUCCESS, "Successful login", ip_address)

    def record_login_failure(
        self, identifier: str, reason: str, ip_address: Optional[str] = None
    ) -> int:
        key = identifier.lower()
        with self._lock:
            now = self._clock()
            attempts, deadline = self._failures.get(key, (0, 0.0))
            if deadline <= now:
                attempts = 0
            attempts += 1
            self._failures[key] = (attempts, now + self._window_seconds)
        logger.warning(
            "login_failure",
            user=mask_email(identifier),
            ip=ip_address,
            attempts=attempts,
            reason=reason,
        )
        if attempts >= self.max_failed_attempts:
            logger.error(
                "failed_attempt_threshold_reached",
                user=mask_email(identifier),
                ip=ip_address,
                attempts=attempts,
            )
        self.record(identifier, SecurityEventKind.LOGIN_FAILURE, reason, ip_address)
        return attempts

    def record_token_revoked(self, subject: str, reason: str) -> None:
        logger.info("token_revoked", subject=subject, reason=reason)
        self.record(subject, SecurityEventKind.TOKEN_REVOKED, reason)

    def record_oauth2_login(
        self, identifier: str, provider: str, ip_address: Optional[str] = None
    ) -> None:
        logger.info(
            "oauth2_login", user=mask_email(identifier), provider=provider, ip=ip_address
        )
        self.record(
            identifier, SecurityEventKind.OAUTH2_LOGIN, f"provider={provider}", ip_address
        )

    def record_account_locked(self, identifier: str, locked_by: str, reason: str) -> None:
        logger.warning(
            "account_locked", user=mask_email(identifier), locked_by=locked_by, reason=reason
        )
        self.record(
            identifier,
            SecurityEventKind.ACCOUNT_LOCKED,
            f"{reason} (by {locked_by})",
        )

    def record_account_unlocked(self, identifier: str, unlocked_by: str) -> None:
        logger.info("account_unlocked", user=mask_email(identifier), unlocked_by=unlocked_by)
        self.record(
            identifier,
            SecurityEventKind.ACCOUNT_UNLOCKED,
            f"Account unlocked by {unlocked_by}",
        )

    def record_access_denied(
        self,
        identifier: str,
        endpoint: str,
        reason: str,
        ip_address: Optional[str] = None,
    ) -> None:
        logger.warning(
            "access_denied", subject=identifier, ip=ip_address, endpoint=endpoint, reason=reason
        )
        self.record(
            identifier, SecurityEventKind.ACCESS_DENIED, f"{endpoint}: {reason}", ip_address
        )

    def failed_attempts(self, identifier: str) -> int:
        with self._lock:
            self._failure_lookups += 1
            entry = self._failures.get(identifier.lower())
            if entry is None or entry[1] <= self._clock():
                return 0
            self._failure_hits += 1
            return entry[0]

    def exceeds_failure_threshold(self, identifier: str) -> bool:
        return self.failed_attempts(identifier) >= self.max_failed_attempts

    def last_event(self, identifier: str) -> Optional[SecurityEvent]:
        with self._lock:
            return self._last_events.get(identifier.lower())

    def clear_expired_attempts(self) -> int:
        with self._lock:
            now = self._clock()
            stale = [key for key, (_, deadline) in self._failures.items() if deadline <= now]
            for key in stale:
                del self._failures[key]
            return len(stale)

    def sweep_older_than(self, cutoff: datetime) -> int:
        removed = self.store.delete_security_events_before(cutoff)
        with self._lock:
            stale = [k for k, e in self._last_events.items() if e.created_at < cutoff]
            for key in stale:
                del self._last_events[key]
        self.clear_expired_attempts()
        logger.info("security_events_swept", removed=removed, cutoff=cutoff.isoformat())
        return removed

    def stats(self) -> dict:
        with self._lock:
            now = self._clock()
            tracked = sum(1 for _, deadline in self._failures.values() if deadline > now)
            lookups = self._failure_lookups
            hit_rate = (self._failure_hits / lookups) if lookups else 0.0
            access_log_size = len(self._last_events)
        try:
            stored_events = self.store.count_security_events()
        except Exception as exc:
            logger.warning("security_event_count_failed", error=str(exc))
            stored_events = None
        return {
            "current_failed_attempts_count": tracked,
            "hit_rate": hit_rate,
            "access_log_size": access_log_size,
            "stored_events": stored_events,
            "max_failed_attempts": self.max_failed_attempts,
            "lockout_duration_minutes": self.lockout_minutes,
        }

