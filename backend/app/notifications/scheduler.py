"""
Background jobs for the delivery engine.

═══════════════════════════════════════════════════════════════════════════
BACKGROUND TASKS
═══════════════════════════════════════════════════════════════════════════

1. RETRY SCHEDULER  (every RETRY_SCAN_INTERVAL_SECONDS, default 30s)
   - Return stale ``in_flight`` claims to ``pending``
   - Find ``pending`` rows whose next_retry_at has passed and
     ``scheduled`` rows whose scheduled_at has passed
   - Re-enter ``deliver_notification`` for each, concurrently;
     the orchestrator's claim step stops two ticks delivering one row

2. RATE-WINDOW REAPER  (every RATE_WINDOW_REAP_INTERVAL_SECONDS, default 1h)
   - Delete rate-limit windows that ended more than
     RATE_WINDOW_RETENTION_HOURS ago

Both loops read the database directly. Nothing is held in memory between
ticks, so a restart loses no retry state.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from backend.app.notifications.orchestrator import NotificationOrchestrator
from backend.app.notifications.rate_limiter import RateLimiter
from backend.app.notifications.store import NotificationStore

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """State of a periodic job."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class PeriodicJob(abc.ABC):
    """
    Runs ``run_once`` on a fixed interval in a background task.

    Usage:
        job = RetryScheduler(orchestrator, store, interval_seconds=30)
        await job.start()
        ...
        await job.stop()

    ``run_once`` can also be awaited directly (tests, admin triggers).
    """

    name = "job"

    def __init__(
        self,
        *,
        interval_seconds: float,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.errors = 0
        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_result: Any = None

    @abc.abstractmethod
    async def run_once(self) -> Any:
        """One tick of work."""

    @property
    def status(self) -> JobStatus:
        if self._running:
            return JobStatus.RUNNING
        return JobStatus.IDLE if self.runs == 0 else JobStatus.STOPPED

    async def start(self):
        """Start the loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        logger.info("%s started (every %ss)", self.name, self.interval_seconds)

    async def stop(self):
        """Stop the loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("%s stopped", self.name)

    async def tick(self) -> Any:
        """Run once, recording the outcome; errors are logged, not raised."""
        try:
            result = await self.run_once()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.errors += 1
            self.last_error = str(e)
            logger.exception("%s error: %s", self.name, e)
            return None
        finally:
            self.runs += 1
            self.last_run_at = self._clock()
        self.last_result = result
        return result

    async def _run_loop(self):
        while self._running:
            await self.tick()
            await asyncio.sleep(self.interval_seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "errors": self.errors,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


class RetryScheduler(PeriodicJob):
    """Re-dispatches due retries and scheduled notifications."""

    name = "retry_scheduler"

    def __init__(
        self,
        orchestrator: NotificationOrchestrator,
        store: NotificationStore,
        *,
        interval_seconds: float = 30,
        batch_size: int = 100,
        in_flight_timeout_seconds: int = 300,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        super().__init__(interval_seconds=interval_seconds, clock=clock)
        self.orchestrator = orchestrator
        self.store = store
        self.batch_size = batch_size
        self.in_flight_timeout = timedelta(seconds=in_flight_timeout_seconds)

    async def run_once(self) -> Dict[str, int]:
        now = self._clock()
        released = await self.store.release_stale_claims(now - self.in_flight_timeout)
        # Unattempted pending rows stay with their sender until the claim timeout
        due = await self.store.find_due(limit=self.batch_size, stale_before=now - self.in_flight_timeout)
        if not due:
            return {"released": released, "due": 0, "sent": 0, "failed": 0}

        logger.info("Retry scan: %d due notification(s)", len(due))
        results = await asyncio.gather(
            *(self.orchestrator.deliver_notification(nid) for nid in due),
            return_exceptions=True,
        )

        sent = failed = 0
        for nid, result in zip(due, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.error("Delivery of %s raised: %s", nid, result, extra={"notification_id": nid})
            elif result.success:
                sent += 1
            else:
                failed += 1
        return {"released": released, "due": len(due), "sent": sent, "failed": failed}


class RateWindowReaper(PeriodicJob):
    """Purges expired rate-limit windows."""

    name = "rate_window_reaper"

    def __init__(
        self,
        rate_limiter: RateLimiter,
        *,
        interval_seconds: float = 3600,
        retention_hours: int = 24,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        super().__init__(interval_seconds=interval_seconds, clock=clock)
        self.rate_limiter = rate_limiter
        self.retention = timedelta(hours=retention_hours)

    async def run_once(self) -> int:
        removed = await self.rate_limiter.reap_expired(self.retention)
        if removed:
            logger.info("Reaped %d expired rate-limit window(s)", removed)
        return removed
