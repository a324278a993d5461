from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from shopauth.logging import get_logger
from shopauth.service.auth import AuthService
from shopauth.service.blacklist import Blacklist
from shopauth.service.isolation import run_isolated
from shopauth.service.security_events import SecurityEventLog

logger = get_logger(__name__)


class MaintenanceSweeper:
    """Periodic housekeeping for sessions, the blacklist and the audit trail.

    Steps run in a fixed order, sessions first since they are the source of
    truth. Each step is isolated: a failure is logged and the next step still
    runs, so one broken store never stalls the others.
    """

    def __init__(
        self,
        auth: AuthService,
        blacklist: Blacklist,
        events: SecurityEventLog,
        *,
        retention_days: int = 30,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.auth = auth
        self.blacklist = blacklist
        self.events = events
        self.retention_days = retention_days
        self._clock = clock or time.time

    def _event_cutoff(self) -> datetime:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return now - timedelta(days=self.retention_days)

    def run(self) -> Dict[str, Optional[int]]:
        logger.info("maintenance_started")
        results = {
            "sessions_invalidated": run_isolated(
                "maintenance_session_cleanup", self.auth.invalidate_expired_sessions
            ),
            "blacklist_removed": run_isolated(
                "maintenance_blacklist_cleanup", self.blacklist.sweep_expired
            ),
            "security_events_removed": run_isolated(
                "maintenance_security_events_cleanup",
                lambda: self.events.sweep_older_than(self._event_cutoff()),
            ),
        }
        logger.info("maintenance_completed", **results)
        return results


async def run_maintenance_loop(sweeper: MaintenanceSweeper, interval_seconds: int) -> None:
    """Background loop that runs the sweeper in a worker thread every interval."""

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await asyncio.to_thread(sweeper.run)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - run() isolates its steps
                logger.warning("maintenance_run_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")
