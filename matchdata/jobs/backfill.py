"""Resumable historical backfill for external data.

Progress lives only in checkpoints (see checkpoints.py):

    NotStarted  -> no checkpoint for the key
    InProgress  -> checkpoint below the requested upper bound
    Caught-up   -> checkpoint >= upper bound (the run is a no-op)

Each unit (a season, or a day for global Elo) runs strictly in order and
its checkpoint is written as soon as it succeeds. A failing unit re-raises
after logging; earlier checkpoints stay, so calling the same backfill
again resumes after the last completed unit.

Callers must not run two backfills for the same key concurrently (the
runner CLI and the scheduler are single-instance); nothing here locks.

Usage:
    async with AsyncSessionLocal() as session:
        backfill = ExternalDataBackfill(session, understat=..., odds=..., injuries=...)
        reports = await backfill.backfill_league("PL", 2022, 2024)
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from matchdata.etl.api_football_injuries import ApiFootballInjuryProvider, upcoming_team_ids
from matchdata.etl.clubelo_provider import ClubEloProvider
from matchdata.etl.competitions import (
    FOOTBALL_DATA_LEAGUES,
    UNDERSTAT_LEAGUES,
    season_snapshot_date,
    season_window,
)
from matchdata.etl.football_data_uk import FootballDataUkProvider
from matchdata.etl.understat_provider import UnderstatProvider
from matchdata.jobs.checkpoints import GLOBAL_SCOPE, CheckpointStore, checkpoint_key
from matchdata.models import (
    Competition,
    CompetitionTeam,
    Match,
    MatchOdds,
    Team,
    TeamEloRating,
    TeamInjurySnapshot,
    TeamXgSnapshot,
    utc_now,
)
from matchdata.telemetry.metrics import set_backfill_coverage

logger = logging.getLogger(__name__)

INJURY_BACKFILL_DAYS_AHEAD = 3


def remaining_seasons(from_season: int, to_season: int, last_completed: Optional[int]) -> list[int]:
    """Seasons still to run, ascending ([] when caught up)."""
    start = from_season if last_completed is None else max(from_season, last_completed + 1)
    return list(range(start, to_season + 1))


def remaining_dates(from_date: date, to_date: date, last_completed: Optional[date]) -> list[date]:
    """Days still to run, ascending ([] when caught up)."""
    start = from_date
    if last_completed is not None and last_completed >= from_date:
        start = last_completed + timedelta(days=1)
    days = []
    while start <= to_date:
        days.append(start)
        start += timedelta(days=1)
    return days


@dataclass
class DataQualityReport:
    """Expected vs available rows for one backfill unit (not persisted)."""

    run_id: str
    scope: str
    source: str
    segment: str
    expected: int
    available: int

    def __post_init__(self):
        self.expected = max(self.expected, 0)
        self.available = max(self.available, 0)

    @property
    def coverage_percent(self) -> float:
        if self.expected == 0:
            return 100.0
        return min(100.0, self.available / self.expected * 100)

    @property
    def missing_rate_percent(self) -> float:
        if self.expected == 0:
            return 0.0
        return max(0.0, (self.expected - self.available) / self.expected * 100)

    def log(self) -> None:
        logger.info(
            f"Backfill data quality [{self.run_id}:{self.scope}] {self.source} {self.segment}: "
            f"coverage {self.coverage_percent:.1f}% ({self.available}/{self.expected}), "
            f"missing {self.missing_rate_percent:.1f}%"
        )
        set_backfill_coverage(self.source, self.coverage_percent)


class ExternalDataBackfill:
    """
    Drives multi-season (per league) and multi-day (global Elo) backfills.

    Providers are injected; any left as None is skipped for its segment.
    """

    def __init__(
        self,
        session: AsyncSession,
        understat: Optional[UnderstatProvider] = None,
        odds: Optional[FootballDataUkProvider] = None,
        injuries: Optional[ApiFootballInjuryProvider] = None,
        elo: Optional[ClubEloProvider] = None,
    ):
        self.session = session
        self.understat = understat
        self.odds = odds
        self.injuries = injuries
        self.elo = elo
        self.checkpoints = CheckpointStore(session)

    # -------------------------------------------------------------------------
    # League backfill
    # -------------------------------------------------------------------------

    async def backfill_league(
        self,
        competition_code: str,
        from_season: int,
        to_season: int,
        include_injuries: bool = True,
    ) -> list[DataQualityReport]:
        """
        Backfill Understat xG, odds and (today's) injuries for one league.

        Args:
            competition_code: League code, e.g. "PL".
            from_season: First season (start year), inclusive.
            to_season: Last season, inclusive.
            include_injuries: Also take today's injury snapshot.

        Returns:
            One DataQualityReport per completed unit.

        Raises:
            ValueError: empty code or from_season > to_season.
        """
        if not competition_code or not competition_code.strip():
            raise ValueError("competition_code is required")
        if from_season > to_season:
            raise ValueError(f"from_season {from_season} is after to_season {to_season}")

        code = competition_code.strip().upper()
        competition = (
            await self.session.execute(select(Competition).where(Competition.code == code))
        ).scalar_one_or_none()
        if competition is None:
            logger.warning(f"[BACKFILL] Competition {code} not found, nothing to backfill")
            return []

        run_id = uuid.uuid4().hex[:8]
        logger.info(f"[BACKFILL] Run {run_id}: {code} seasons {from_season}-{to_season}")
        reports = []

        if self.understat is not None and code in UNDERSTAT_LEAGUES:
            reports += await self._backfill_understat(run_id, competition, from_season, to_season)
        else:
            logger.info(f"[BACKFILL] Understat segment skipped for {code}")

        if self.odds is not None and code in FOOTBALL_DATA_LEAGUES:
            reports += await self._backfill_odds(run_id, competition, from_season, to_season)
        else:
            logger.info(f"[BACKFILL] Odds segment skipped for {code}")

        if include_injuries and self.injuries is not None:
            report = await self._backfill_injuries(run_id, competition)
            if report is not None:
                reports.append(report)

        return reports

    async def _backfill_understat(
        self,
        run_id: str,
        competition: Competition,
        from_season: int,
        to_season: int,
    ) -> list[DataQualityReport]:
        key = checkpoint_key("Understat", competition.code)
        seasons = remaining_seasons(from_season, to_season, await self.checkpoints.get_last_season(key))
        if not seasons:
            logger.info(f"[BACKFILL] {key} already complete through {to_season}")
            return []

        reports = []
        for season in seasons:
            snapshot_date = season_snapshot_date(season)
            try:
                await self.understat.sync_league(self.session, competition.code, season, snapshot_date)
            except Exception as e:
                logger.error(f"[BACKFILL] {key} season {season} failed: {e}")
                raise
            await self.checkpoints.save_season(key, season)

            expected = await self._count(
                select(func.count(CompetitionTeam.id)).where(
                    CompetitionTeam.competition_id == competition.id,
                    CompetitionTeam.season == season,
                )
            )
            available = await self._count(
                select(func.count(TeamXgSnapshot.id)).where(
                    TeamXgSnapshot.competition_id == competition.id,
                    TeamXgSnapshot.season == season,
                    TeamXgSnapshot.snapshot_date == snapshot_date,
                )
            )
            report = DataQualityReport(run_id, competition.code, "Understat", str(season), expected, available)
            report.log()
            reports.append(report)
        return reports

    async def _backfill_odds(
        self,
        run_id: str,
        competition: Competition,
        from_season: int,
        to_season: int,
    ) -> list[DataQualityReport]:
        key = checkpoint_key("Odds", competition.code)
        seasons = remaining_seasons(from_season, to_season, await self.checkpoints.get_last_season(key))
        if not seasons:
            logger.info(f"[BACKFILL] {key} already complete through {to_season}")
            return []

        reports = []
        for season in seasons:
            try:
                await self.odds.import_league_season(self.session, competition.code, season)
            except Exception as e:
                logger.error(f"[BACKFILL] {key} season {season} failed: {e}")
                raise
            await self.checkpoints.save_season(key, season)

            start, end = season_window(season)
            in_season = (
                Match.competition_id == competition.id,
                Match.match_date_utc >= start,
                Match.match_date_utc < end,
            )
            expected = await self._count(select(func.count(Match.id)).where(*in_season))
            available = await self._count(
                select(func.count(MatchOdds.id))
                .join(Match, Match.id == MatchOdds.match_id)
                .where(*in_season)
            )
            report = DataQualityReport(run_id, competition.code, "Odds", str(season), expected, available)
            report.log()
            reports.append(report)
        return reports

    async def _backfill_injuries(self, run_id: str, competition: Competition) -> Optional[DataQualityReport]:
        key = checkpoint_key("Injuries", competition.code)
        now = utc_now()
        today = now.date()
        last = await self.checkpoints.get_last_date(key)
        if last is not None and last >= today:
            logger.info(f"[BACKFILL] {key} already snapshotted for {today}")
            return None

        try:
            await self.injuries.sync_upcoming(
                self.session,
                days_ahead=INJURY_BACKFILL_DAYS_AHEAD,
                competition_code=competition.code,
            )
        except Exception as e:
            logger.error(f"[BACKFILL] {key} snapshot failed: {e}")
            raise
        await self.checkpoints.save_date(key, today)

        team_ids = await upcoming_team_ids(
            self.session, now, INJURY_BACKFILL_DAYS_AHEAD, competition.code
        )
        available = 0
        if team_ids:
            available = await self._count(
                select(func.count(TeamInjurySnapshot.id)).where(
                    TeamInjurySnapshot.team_id.in_(team_ids),
                    TeamInjurySnapshot.snapshot_date == today,
                )
            )
        report = DataQualityReport(
            run_id, competition.code, "Injuries", today.isoformat(), len(team_ids), available
        )
        report.log()
        return report

    # -------------------------------------------------------------------------
    # Global Elo backfill
    # -------------------------------------------------------------------------

    async def backfill_elo_global(self, from_date: date, to_date: date) -> list[DataQualityReport]:
        """
        Backfill ClubElo ratings day by day for all teams.

        Returns:
            Per-day reports; an aggregated report is logged as well.

        Raises:
            ValueError: from_date > to_date or no Elo provider configured.
        """
        if from_date > to_date:
            raise ValueError(f"from_date {from_date} is after to_date {to_date}")
        if self.elo is None:
            raise ValueError("Elo backfill needs a ClubEloProvider")

        key = checkpoint_key("Elo", GLOBAL_SCOPE)
        days = remaining_dates(from_date, to_date, await self.checkpoints.get_last_date(key))
        if not days:
            logger.info(f"[BACKFILL] {key} already complete through {to_date}")
            return []

        run_id = uuid.uuid4().hex[:8]
        logger.info(f"[BACKFILL] Run {run_id}: Elo {days[0]} -> {days[-1]} ({len(days)} days)")
        team_count = await self._count(select(func.count(Team.id)))

        reports = []
        for day in days:
            try:
                await self.elo.sync_for_date(self.session, day)
            except Exception as e:
                logger.error(f"[BACKFILL] {key} {day} failed: {e}")
                raise
            await self.checkpoints.save_date(key, day)

            available = await self._count(
                select(func.count(TeamEloRating.id)).where(TeamEloRating.rating_date == day)
            )
            reports.append(DataQualityReport(run_id, GLOBAL_SCOPE, "Elo", day.isoformat(), team_count, available))

        DataQualityReport(
            run_id,
            GLOBAL_SCOPE,
            "Elo",
            f"{days[0].isoformat()}..{days[-1].isoformat()}",
            sum(r.expected for r in reports),
            sum(r.available for r in reports),
        ).log()
        return reports

    async def _count(self, query) -> int:
        return int((await self.session.execute(query)).scalar_one() or 0)
