"""
Team suspension summaries.

The injury provider stores card bans and disciplinary absences from each
/injuries response as PlayerSuspension rows. SuspensionTracker refreshes
injuries first (within the same quota policy; fresh teams cost nothing),
then recomputes TeamSuspensions for every team with an upcoming match and
reports under its own "Suspensions" integration.

Impact score: min(100, 6*total + 18*key + 5*card + 8*disciplinary).

Usage:
    tracker = SuspensionTracker(injury_provider)
    metrics = await tracker.sync_upcoming(session, days_ahead=3)
    row = await tracker.get_team_suspensions_as_of(session, team_id, as_of)
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchdata.etl.api_football_injuries import ApiFootballInjuryProvider, upcoming_team_ids
from matchdata.jobs.health import SUSPENSIONS, mark_data_fresh
from matchdata.models import PlayerSuspension, TeamSuspensions, utc_now

logger = logging.getLogger(__name__)

CARD_MARKERS = ("card", "red", "yellow")

# TeamSuspensions.next_sync_due offset
SYNC_INTERVAL_HOURS = 24


def is_card_suspension(reason: Optional[str]) -> bool:
    text = (reason or "").lower()
    return any(marker in text for marker in CARD_MARKERS)


def calculate_suspension_impact(total: int, key_players: int, card: int, disciplinary: int) -> float:
    """Weighted suspension burden, capped at 100."""
    return float(min(100, 6 * total + 18 * key_players + 5 * card + 8 * disciplinary))


def summarize_suspensions(rows: list[PlayerSuspension]) -> dict:
    card = sum(1 for r in rows if is_card_suspension(r.suspension_reason))
    figures = {
        "total_suspended": len(rows),
        "key_players_suspended": sum(1 for r in rows if r.is_key_player),
        "card_suspensions": card,
        "disciplinary_suspensions": len(rows) - card,
        "suspended_player_names": [r.player_name for r in rows if (r.player_name or "").strip()],
    }
    figures["suspension_impact_score"] = calculate_suspension_impact(
        figures["total_suspended"],
        figures["key_players_suspended"],
        figures["card_suspensions"],
        figures["disciplinary_suspensions"],
    )
    return figures


class SuspensionTracker:
    """Suspension summaries for teams with upcoming matches."""

    INTEGRATION_NAME = SUSPENSIONS
    LOG_TAG = "[SUSPENSIONS]"

    def __init__(self, injuries: ApiFootballInjuryProvider):
        self.injuries = injuries

    async def sync_upcoming(self, session: AsyncSession, days_ahead: Optional[int] = None) -> dict:
        """
        Refresh injuries, then recompute suspension summaries.

        Args:
            session: Database session.
            days_ahead: Look-ahead window in days (>= 1).

        Returns:
            Dict with status, teams, suspended and the injury sync status.
        """
        days_ahead = self.injuries.default_days_ahead if days_ahead is None else days_ahead
        if days_ahead < 1:
            raise ValueError(f"days_ahead must be >= 1, got {days_ahead}")

        injury_metrics = await self.injuries.sync_upcoming(session, days_ahead)

        now = utc_now()
        team_ids = sorted(await upcoming_team_ids(session, now, days_ahead))
        metrics = {"status": "ok", "teams": len(team_ids), "suspended": 0, "injury_sync": injury_metrics["status"]}
        if not team_ids:
            logger.debug(f"{self.LOG_TAG} No upcoming teams")
            return metrics

        for team_id in team_ids:
            summary = await self.recompute_team(session, team_id, now)
            metrics["suspended"] += summary.total_suspended

        await mark_data_fresh(session, self.INTEGRATION_NAME, now)
        await session.commit()
        logger.info(f"{self.LOG_TAG} {metrics['suspended']} suspended across {len(team_ids)} teams")
        return metrics

    async def recompute_team(
        self,
        session: AsyncSession,
        team_id: int,
        now: Optional[datetime] = None,
    ) -> TeamSuspensions:
        """Rebuild TeamSuspensions from the team's active PlayerSuspension rows (caller commits)."""
        now = now or utc_now()
        rows = list(
            (
                await session.execute(
                    select(PlayerSuspension).where(
                        PlayerSuspension.team_id == team_id,
                        PlayerSuspension.is_active.is_(True),
                    )
                )
            ).scalars().all()
        )

        summary = (
            await session.execute(select(TeamSuspensions).where(TeamSuspensions.team_id == team_id))
        ).scalar_one_or_none()
        if summary is None:
            summary = TeamSuspensions(team_id=team_id)
            session.add(summary)
        for name, value in summarize_suspensions(rows).items():
            setattr(summary, name, value)
        summary.last_synced_at = now
        summary.next_sync_due = now + timedelta(hours=SYNC_INTERVAL_HOURS)
        await session.flush()
        return summary

    async def sync_latest(self, session: AsyncSession) -> dict:
        return await self.sync_upcoming(session)

    async def get_team_suspensions_as_of(
        self,
        session: AsyncSession,
        team_id: int,
        as_of: datetime,
    ) -> Optional[TeamSuspensions]:
        """The team's summary if it was last synced by as_of (no history is kept)."""
        result = await session.execute(
            select(TeamSuspensions)
            .where(TeamSuspensions.team_id == team_id, TeamSuspensions.last_synced_at <= as_of)
            .order_by(TeamSuspensions.last_synced_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
