"""
ClubElo provider for daily team Elo ratings.

ClubElo serves a CSV snapshot of every rated club for a given day:

    GET http://api.clubelo.com/2024-09-01
    Rank,Club,Country,Level,Elo,From,To
    1,Man City,ENG,1,2054.1,2024-08-30,2024-09-01
    ...

Only top-flight rows (Level == 1) are stored, one TeamEloRating per
(team, rating_date). Unranked clubs carry Rank "None" and are skipped.

Usage:
    provider = ClubEloProvider()
    metrics = await provider.sync_for_date(session, date(2024, 9, 1))
    rating = await provider.get_team_elo_as_of(session, team_id, date(2024, 9, 3))
"""

import csv
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from io import StringIO
from typing import Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchdata.config import get_settings
from matchdata.etl.base import ExternalDataProvider, parse_float, parse_int
from matchdata.etl.name_normalization import resolve_team
from matchdata.jobs.health import CLUBELO, mark_data_fresh
from matchdata.models import Team, TeamEloRating, utc_now

logger = logging.getLogger(__name__)

TOP_FLIGHT_LEVEL = 1


@dataclass
class ClubEloRow:
    """One parsed row of the ClubElo day snapshot."""

    rank: int
    club: str
    country: str
    level: int
    elo: float


def parse_ratings_csv(text: str) -> list[ClubEloRow]:
    """
    Parse a ClubElo CSV body into top-flight rows.

    csv.reader handles quoted fields with embedded commas. Rows with fewer
    than 5 columns, a non-integer rank or a non-numeric Elo are skipped;
    an unparsable Level is treated as top flight.
    """
    rows = []
    reader = csv.reader(StringIO(text))
    for i, fields in enumerate(reader):
        if i == 0 and fields and fields[0].strip().lower() == "rank":
            continue
        if len(fields) < 5:
            continue

        rank = parse_int(fields[0])
        elo = parse_float(fields[4])
        if rank is None or elo is None:
            continue

        level = parse_int(fields[3])
        if level is None:
            level = TOP_FLIGHT_LEVEL
        if level != TOP_FLIGHT_LEVEL:
            continue

        rows.append(ClubEloRow(
            rank=rank,
            club=fields[1].strip(),
            country=fields[2].strip(),
            level=level,
            elo=elo,
        ))
    return rows


class ClubEloProvider(ExternalDataProvider):
    """ClubElo daily ratings (CSV over HTTP, no auth, no quota)."""

    SOURCE_ID = "clubelo"
    INTEGRATION_NAME = CLUBELO
    LOG_TAG = "[CLUBELO]"

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        super().__init__(base_url or get_settings().CLUBELO_BASE_URL, client)

    async def fetch_ratings(self, day: date) -> list[ClubEloRow]:
        """Fetch and parse the snapshot for one day ([] if ClubElo has none)."""
        url = f"{self.base_url}/{day.isoformat()}"
        try:
            response = await self._get(url, entity="ratings")
        except httpx.HTTPError as e:
            logger.warning(f"{self.LOG_TAG} Fetch failed for {day}: {e}")
            raise
        if response is None:
            return []
        return parse_ratings_csv(response.text)

    async def sync_for_date(self, session: AsyncSession, day: date) -> dict:
        """
        Upsert ratings for one day.

        Args:
            session: Database session.
            day: Rating date.

        Returns:
            Dict with fetched/inserted/updated/unmatched counts.
        """
        metrics = {"date": day.isoformat(), "fetched": 0, "inserted": 0, "updated": 0, "unmatched": 0}

        rows = await self.fetch_ratings(day)
        metrics["fetched"] = len(rows)
        if not rows:
            return metrics

        teams = (await session.execute(select(Team).order_by(Team.id))).scalars().all()
        existing = {
            r.team_id: r
            for r in (
                await session.execute(
                    select(TeamEloRating).where(TeamEloRating.rating_date == day)
                )
            ).scalars().all()
        }
        now = utc_now()

        for row in rows:
            team = resolve_team(row.club, teams)
            if team is None:
                metrics["unmatched"] += 1
                logger.debug(f"{self.LOG_TAG} No team for '{row.club}' ({row.country})")
                continue

            rating = existing.get(team.id)
            if rating is None:
                rating = TeamEloRating(
                    team_id=team.id,
                    rating_date=day,
                    elo_rating=row.elo,
                    elo_rank=row.rank,
                    clubelo_name=row.club,
                    synced_at=now,
                )
                session.add(rating)
                existing[team.id] = rating
                metrics["inserted"] += 1
            else:
                rating.elo_rating = row.elo
                rating.elo_rank = row.rank
                rating.clubelo_name = row.club
                rating.synced_at = now
                metrics["updated"] += 1

        await mark_data_fresh(session, self.INTEGRATION_NAME, now)
        await session.commit()

        logger.info(
            f"{self.LOG_TAG} {day}: {metrics['inserted']} inserted, {metrics['updated']} updated, "
            f"{metrics['unmatched']} unmatched of {metrics['fetched']}"
        )
        return metrics

    async def sync_latest(self, session: AsyncSession) -> dict:
        return await self.sync_for_date(session, utc_now().date())

    async def backfill_range(self, session: AsyncSession, from_date: date, to_date: date) -> list[dict]:
        """Sync every day in [from_date, to_date] sequentially."""
        if from_date > to_date:
            raise ValueError(f"from_date {from_date} is after to_date {to_date}")

        results = []
        day = from_date
        while day <= to_date:
            results.append(await self.sync_for_date(session, day))
            day += timedelta(days=1)
        return results

    async def get_team_elo_as_of(
        self,
        session: AsyncSession,
        team_id: int,
        as_of: date,
    ) -> Optional[TeamEloRating]:
        """Latest rating on or before as_of."""
        result = await session.execute(
            select(TeamEloRating)
            .where(TeamEloRating.team_id == team_id, TeamEloRating.rating_date <= as_of)
            .order_by(TeamEloRating.rating_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
