"""Tests for scheduled sync drivers."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select

from matchdata.jobs import scheduled
from matchdata.jobs.scheduled import (
    ScheduledSyncDriver,
    build_trigger,
    next_daily_run,
    next_weekly_run,
)
from matchdata.models import IntegrationHealth, IntegrationStatus


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestNextRun:
    def test_trigger_is_cron(self):
        assert isinstance(build_trigger(3), CronTrigger)
        assert isinstance(build_trigger(5, weekly=True), CronTrigger)

    def test_later_today(self):
        assert next_daily_run(utc(2024, 9, 1, 2, 30), 3) == utc(2024, 9, 1, 3, 0)

    def test_exactly_at_hour_rolls_to_tomorrow(self):
        assert next_daily_run(utc(2024, 9, 1, 3, 0), 3) == utc(2024, 9, 2, 3, 0)

    def test_just_before_hour_stays_today(self):
        assert next_daily_run(utc(2024, 9, 1, 2, 59, 59, 500000), 3) == utc(2024, 9, 1, 3, 0)

    def test_past_hour_rolls_to_tomorrow(self):
        assert next_daily_run(utc(2024, 12, 31, 22, 15), 3) == utc(2025, 1, 1, 3, 0)

    def test_invalid_hour(self):
        with pytest.raises(ValueError):
            next_daily_run(utc(2024, 9, 1), 24)
        with pytest.raises(ValueError):
            next_weekly_run(utc(2024, 9, 1), -1)

    def test_weekly_lands_on_monday(self):
        # 2024-09-04 is a Wednesday
        assert next_weekly_run(utc(2024, 9, 4, 10, 0), 5) == utc(2024, 9, 9, 5, 0)

    def test_weekly_same_monday_before_hour(self):
        assert next_weekly_run(utc(2024, 9, 9, 4, 59), 5) == utc(2024, 9, 9, 5, 0)

    def test_weekly_monday_after_hour(self):
        assert next_weekly_run(utc(2024, 9, 9, 5, 0), 5) == utc(2024, 9, 16, 5, 0)


async def _status(session_factory, name: str):
    async with session_factory() as session:
        result = await session.execute(
            select(IntegrationStatus).where(IntegrationStatus.integration_name == name)
        )
        return result.scalar_one_or_none()


def _driver(job, session_factory, **kwargs) -> ScheduledSyncDriver:
    return ScheduledSyncDriver("test_sync", "ClubElo", job, 3, session_factory, **kwargs)


class TestScheduledSyncDriver:
    def test_invalid_hour_rejected(self):
        with pytest.raises(ValueError):
            ScheduledSyncDriver("test_sync", "ClubElo", None, 25, None)

    def test_next_run_uses_clock(self):
        clock = lambda: utc(2024, 9, 4, 10, 0)  # noqa: E731
        assert _driver(None, None, clock=clock).next_run() == utc(2024, 9, 5, 3, 0)
        assert _driver(None, None, clock=clock, weekly=True).next_run() == utc(2024, 9, 9, 3, 0)

    @pytest.mark.asyncio
    async def test_success_recorded(self, session_factory):
        async def job(session):
            return {"inserted": 1}

        assert await _driver(job, session_factory).run_once() is True
        status = await _status(session_factory, "ClubElo")
        assert status.health == IntegrationHealth.HEALTHY
        assert status.successful_syncs_24h == 1

    @pytest.mark.asyncio
    async def test_failure_recorded_and_swallowed(self, session_factory):
        async def job(session):
            raise RuntimeError("upstream exploded")

        driver = _driver(job, session_factory)
        assert await driver.run_once() is False
        assert await driver.run_once() is False

        status = await _status(session_factory, "ClubElo")
        assert status.health == IntegrationHealth.DEGRADED
        assert status.consecutive_failures == 2
        assert status.last_error_message == "upstream exploded"
        assert "RuntimeError" in status.last_error_details

    @pytest.mark.asyncio
    async def test_failure_sent_to_sentry(self, session_factory, monkeypatch):
        capture = MagicMock()
        monkeypatch.setattr(scheduled, "sentry_capture_exception", capture)
        error = RuntimeError("upstream exploded")

        async def job(session):
            raise error

        await _driver(job, session_factory).run_once()
        capture.assert_called_once_with(error, job_id="test_sync", integration="ClubElo")

    @pytest.mark.asyncio
    async def test_stop_event_interrupts_pass_in_flight(self, session_factory):
        started = asyncio.Event()
        finished = []

        async def job(session):
            started.set()
            await asyncio.sleep(30)
            finished.append(1)

        stop_event = asyncio.Event()
        task = asyncio.create_task(_driver(job, session_factory).run(stop_event))
        await asyncio.wait_for(started.wait(), timeout=5)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1)

        assert finished == []
        assert not task.cancelled()
        status = await _status(session_factory, "ClubElo")
        assert status is None or status.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_cancellation_not_recorded(self, session_factory):
        async def job(session):
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await _driver(job, session_factory).run_once()
        assert await _status(session_factory, "ClubElo") is None

    @pytest.mark.asyncio
    async def test_disabled_driver_never_runs(self, session_factory):
        calls = []

        async def job(session):
            calls.append(1)

        await _driver(job, session_factory, enabled=False).run(asyncio.Event())
        assert calls == []

    @pytest.mark.asyncio
    async def test_stop_event_ends_loop(self, session_factory):
        calls = []
        started = asyncio.Event()

        async def job(session):
            calls.append(1)
            started.set()

        stop_event = asyncio.Event()
        task = asyncio.create_task(_driver(job, session_factory).run(stop_event))
        await asyncio.wait_for(started.wait(), timeout=5)
        stop_event.set()
        await asyncio.wait_for(task, timeout=5)

        assert calls == [1]
        assert task.done() and not task.cancelled()

    @pytest.mark.asyncio
    async def test_cancel_while_waiting(self, session_factory):
        started = asyncio.Event()

        async def job(session):
            started.set()

        task = asyncio.create_task(_driver(job, session_factory).run(asyncio.Event()))
        await asyncio.wait_for(started.wait(), timeout=5)
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        status = await _status(session_factory, "ClubElo")
        assert status is None or status.consecutive_failures == 0
