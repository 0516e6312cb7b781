"""Scheduled sync drivers.

A driver owns one recurring job (usually a provider's sync_latest):

    run once at startup
    loop:
        next = next CronTrigger fire time (daily at HH:00 UTC, or Mondays)
        wait until next, or until the stop event is set
        run one pass, record health, repeat

Any exception from a pass is logged, sent to Sentry and recorded as an
integration failure; the driver keeps going. Cancellation (task.cancel()
or the stop event, which also interrupts a pass in flight) ends the
driver and is never recorded as a failure.
"""

import asyncio
import logging
import time
import traceback
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from matchdata.database import get_session_with_retry
from matchdata.jobs.health import record_sync_failure, record_sync_success
from matchdata.models import utc_now
from matchdata.telemetry.metrics import record_job_run
from matchdata.telemetry.sentry import capture_exception as sentry_capture_exception

logger = logging.getLogger(__name__)

SyncJob = Callable[[AsyncSession], Awaitable[Optional[dict]]]


def _validate_hour(hour: int) -> None:
    if not 0 <= hour <= 23:
        raise ValueError(f"Sync hour must be within 0..23, got {hour}")


def build_trigger(hour: int, weekly: bool = False) -> CronTrigger:
    """Daily at hour:00 UTC, or Mondays at hour:00 UTC when weekly."""
    _validate_hour(hour)
    if weekly:
        return CronTrigger(day_of_week="mon", hour=hour, minute=0, timezone=timezone.utc)
    return CronTrigger(hour=hour, minute=0, timezone=timezone.utc)


def next_fire_time(trigger: CronTrigger, now: datetime) -> datetime:
    """First fire time strictly after now (a trigger instant that was reached rolls forward)."""
    return trigger.get_next_fire_time(None, now + timedelta(microseconds=1))


def next_daily_run(now: datetime, hour: int) -> datetime:
    """Today at hour:00, or tomorrow if that time has already been reached."""
    return next_fire_time(build_trigger(hour), now)


def next_weekly_run(now: datetime, hour: int) -> datetime:
    """Next Monday at hour:00, a week later if already reached."""
    return next_fire_time(build_trigger(hour, weekly=True), now)


class ScheduledSyncDriver:
    """
    Timer loop around one sync job.

    Args:
        name: Job name for logs, metrics and Sentry tags (e.g. "clubelo_sync").
        integration_name: IntegrationStatus row to report to.
        job: Coroutine function taking a session.
        hour: UTC hour to run at.
        session_factory: Session factory (AsyncSessionLocal in production).
        weekly: Run weekly on Mondays instead of daily.
        enabled: When False, run() logs and returns immediately.
        clock: Returns aware UTC now (tests inject one).
    """

    def __init__(
        self,
        name: str,
        integration_name: str,
        job: SyncJob,
        hour: int,
        session_factory: sessionmaker,
        weekly: bool = False,
        enabled: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.trigger = build_trigger(hour, weekly)
        self.name = name
        self.integration_name = integration_name
        self.job = job
        self.hour = hour
        self.session_factory = session_factory
        self.weekly = weekly
        self.enabled = enabled
        self._clock = clock or utc_now

    def next_run(self, now: Optional[datetime] = None) -> datetime:
        return next_fire_time(self.trigger, now or self._clock())

    async def run_once(self) -> bool:
        """
        Run one pass and record health.

        Returns:
            True on success, False if the pass failed (already recorded).

        Raises:
            asyncio.CancelledError: propagated untouched.
        """
        started = time.monotonic()
        logger.info(f"[SCHEDULER] {self.name}: starting pass")
        try:
            async with get_session_with_retry(self.session_factory) as session:
                result = await self.job(session)
                duration = timedelta(seconds=time.monotonic() - started)
                await record_sync_success(session, self.integration_name, duration)
        except asyncio.CancelledError:
            logger.info(f"[SCHEDULER] {self.name}: pass cancelled")
            record_job_run(self.name, "cancelled", (time.monotonic() - started) * 1000)
            raise
        except Exception as e:
            duration_ms = (time.monotonic() - started) * 1000
            logger.exception(f"[SCHEDULER] {self.name}: pass failed after {duration_ms:.0f}ms: {e}")
            sentry_capture_exception(e, job_id=self.name, integration=self.integration_name)
            record_job_run(self.name, "error", duration_ms)
            await self._record_failure(e)
            return False

        record_job_run(self.name, "ok", duration.total_seconds() * 1000)
        logger.info(f"[SCHEDULER] {self.name}: done in {duration.total_seconds():.1f}s {result or ''}")
        return True

    async def _record_failure(self, error: Exception) -> None:
        # Fresh session: the job's session may be mid-transaction
        try:
            async with get_session_with_retry(self.session_factory) as session:
                await record_sync_failure(
                    session,
                    self.integration_name,
                    str(error) or type(error).__name__,
                    "".join(traceback.format_exception(type(error), error, error.__traceback__)),
                )
        except Exception as e:
            logger.error(f"[SCHEDULER] {self.name}: could not record failure: {e}")

    async def _run_pass(self, stop_event: asyncio.Event) -> bool:
        """
        Run one pass that a stop request interrupts.

        Returns:
            False once the stop event is set (the pass is cancelled if still running).
        """
        if stop_event.is_set():
            return False

        pass_task = asyncio.create_task(self.run_once(), name=f"{self.name}:pass")
        stop_task = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait({pass_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pass_task.cancel()
            stop_task.cancel()
            await asyncio.gather(pass_task, stop_task, return_exceptions=True)

        if pass_task.cancelled():
            logger.info(f"[SCHEDULER] {self.name}: stop requested, in-flight pass cancelled")
            return False
        pass_task.result()
        return not stop_event.is_set()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run until stop_event is set or the task is cancelled."""
        if not self.enabled:
            logger.info(f"[SCHEDULER] {self.name} disabled, not starting")
            return

        stop_event = stop_event or asyncio.Event()
        logger.info(f"[SCHEDULER] {self.name} started ({'weekly' if self.weekly else 'daily'} at {self.hour:02d}:00 UTC)")
        try:
            running = await self._run_pass(stop_event)
            while running:
                next_at = self.next_run()
                delay = max((next_at - self._clock()).total_seconds(), 0)
                logger.info(f"[SCHEDULER] {self.name}: next run at {next_at.isoformat()}")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass
                running = await self._run_pass(stop_event)
        except asyncio.CancelledError:
            logger.info(f"[SCHEDULER] {self.name} cancelled, stopping")
            raise
        logger.info(f"[SCHEDULER] {self.name} stopped")
