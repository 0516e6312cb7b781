"""Integration health recording.

One IntegrationStatus row per external source. Scheduled drivers report
every pass through record_sync_success / record_sync_failure; providers
stamp data freshness after a successful upsert.

Usage:
    from matchdata.jobs.health import record_sync_success

    started = utc_now()
    await provider.sync_latest(session)
    await record_sync_success(session, "ClubElo", utc_now() - started)
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchdata.models import IntegrationStatus, utc_now

logger = logging.getLogger(__name__)

CLUBELO = "ClubElo"
UNDERSTAT = "Understat"
FOOTBALL_DATA_UK = "FootballDataUk"
API_FOOTBALL = "ApiFootball"
SUSPENSIONS = "Suspensions"


async def get_status(session: AsyncSession, integration_name: str) -> IntegrationStatus:
    """Get the status row, creating it (health Unknown) on first use."""
    result = await session.execute(
        select(IntegrationStatus).where(IntegrationStatus.integration_name == integration_name)
    )
    status = result.scalar_one_or_none()
    if status is None:
        status = IntegrationStatus(integration_name=integration_name)
        session.add(status)
        await session.flush()
    return status


async def get_all_statuses(session: AsyncSession) -> list[IntegrationStatus]:
    result = await session.execute(
        select(IntegrationStatus).order_by(IntegrationStatus.integration_name)
    )
    return list(result.scalars().all())


async def record_sync_success(
    session: AsyncSession,
    integration_name: str,
    duration: timedelta,
) -> IntegrationStatus:
    status = await get_status(session, integration_name)
    status.record_success(duration)
    await session.commit()
    logger.debug(
        f"[HEALTH] {integration_name} ok in {duration.total_seconds():.1f}s "
        f"(health={status.health})"
    )
    return status


async def record_sync_failure(
    session: AsyncSession,
    integration_name: str,
    message: str,
    details: Optional[str] = None,
) -> IntegrationStatus:
    status = await get_status(session, integration_name)
    status.record_failure(message, details)
    await session.commit()
    logger.warning(
        f"[HEALTH] {integration_name} failure #{status.consecutive_failures} "
        f"(health={status.health}): {message}"
    )
    return status


async def mark_data_fresh(
    session: AsyncSession,
    integration_name: str,
    as_of: Optional[datetime] = None,
) -> None:
    """Stamp the freshest data timestamp (caller commits)."""
    status = await get_status(session, integration_name)
    status.data_fresh_as_of = as_of or utc_now()
    status.updated_at = utc_now()


async def disable_integration(
    session: AsyncSession,
    integration_name: str,
    reason: str,
    disabled_by: str = "system",
) -> IntegrationStatus:
    status = await get_status(session, integration_name)
    status.disable(reason, disabled_by)
    await session.commit()
    logger.info(f"[HEALTH] {integration_name} disabled by {disabled_by}: {reason}")
    return status


async def enable_integration(session: AsyncSession, integration_name: str) -> IntegrationStatus:
    status = await get_status(session, integration_name)
    status.enable()
    await session.commit()
    logger.info(f"[HEALTH] {integration_name} re-enabled")
    return status


async def is_operational(session: AsyncSession, integration_name: str) -> bool:
    return (await get_status(session, integration_name)).is_operational


async def has_fresh_data(session: AsyncSession, integration_name: str) -> bool:
    status = await get_status(session, integration_name)
    return status.data_fresh_as_of is not None and not status.is_data_stale()


async def reset_daily_counters(session: AsyncSession) -> int:
    """Zero the 24h counters on every row. Returns rows touched."""
    statuses = await get_all_statuses(session)
    for status in statuses:
        status.reset_daily_counters()
    await session.commit()
    return len(statuses)
