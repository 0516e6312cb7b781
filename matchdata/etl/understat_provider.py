"""
Understat provider for season xG aggregates.

The league page embeds every team's match history as an escaped JSON
string:

    GET https://understat.com/league/EPL/2024
    ...
    var teamsData = JSON.parse('\\x7B\\x2283\\x22\\x3A...');

The blob is a map of numeric Understat team id -> {"id", "title",
"history": [{"xG", "xGA", "scored", "missed", ...}, ...]}. Values in
history may be strings.

Per team we store season totals, per-match rates, over/under-performance
versus xG and a trailing 5-match average, keyed by
(team, competition, season). Backfill additionally writes an
end-of-season TeamXgSnapshot.

Usage:
    provider = UnderstatProvider()
    metrics = await provider.sync_league(session, "PL", 2024)
    stats = await provider.get_team_xg_as_of(session, team_id, competition_id, as_of)
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchdata.config import get_settings
from matchdata.etl.base import ExternalDataProvider, parse_float, parse_int
from matchdata.etl.competitions import UNDERSTAT_LEAGUES, season_for_date
from matchdata.etl.name_normalization import resolve_team
from matchdata.jobs.health import UNDERSTAT, mark_data_fresh
from matchdata.models import (
    Competition,
    CompetitionTeam,
    Team,
    TeamXgSnapshot,
    TeamXgStats,
    utc_now,
)

logger = logging.getLogger(__name__)

TEAMS_DATA_RE = re.compile(r"teamsData\s*=\s*JSON\.parse\('(?P<json>.*?)'\);", re.DOTALL)

RECENT_MATCHES = 5


@dataclass
class UnderstatTeamSummary:
    """Season aggregates for one Understat team."""

    understat_team_id: str
    title: str
    xg_for: float = 0.0
    xg_against: float = 0.0
    goals: int = 0
    goals_conceded: int = 0
    matches_played: int = 0
    recent_xg: list = field(default_factory=list)
    recent_xga: list = field(default_factory=list)

    @property
    def xg_diff(self) -> float:
        return self.xg_for - self.xg_against

    @property
    def xg_per_match(self) -> float:
        return self.xg_for / self.matches_played if self.matches_played else 0.0

    @property
    def xg_against_per_match(self) -> float:
        return self.xg_against / self.matches_played if self.matches_played else 0.0

    @property
    def xg_overperformance(self) -> float:
        """Goals scored above xG (positive = clinical finishing)."""
        return self.goals - self.xg_for

    @property
    def xga_overperformance(self) -> float:
        """xG conceded above goals conceded (positive = good keeping/luck)."""
        return self.xg_against - self.goals_conceded

    @property
    def recent_xg_per_match(self) -> float:
        return sum(self.recent_xg) / len(self.recent_xg) if self.recent_xg else 0.0

    @property
    def recent_xga_per_match(self) -> float:
        return sum(self.recent_xga) / len(self.recent_xga) if self.recent_xga else 0.0

    def figures(self) -> dict:
        """Column values shared by TeamXgStats and TeamXgSnapshot."""
        return {
            "understat_team_id": self.understat_team_id,
            "xg_for": self.xg_for,
            "xg_against": self.xg_against,
            "xg_diff": self.xg_diff,
            "xg_per_match": self.xg_per_match,
            "xg_against_per_match": self.xg_against_per_match,
            "goals": self.goals,
            "goals_conceded": self.goals_conceded,
            "xg_overperformance": self.xg_overperformance,
            "xga_overperformance": self.xga_overperformance,
            "recent_xg_per_match": self.recent_xg_per_match,
            "recent_xga_per_match": self.recent_xga_per_match,
            "matches_played": self.matches_played,
        }


def extract_teams_data(html: str) -> dict:
    """
    Pull the teamsData object out of a league page.

    Returns:
        Map of numeric team id -> team dict; {} if the marker is missing
        or the payload does not decode.
    """
    match = TEAMS_DATA_RE.search(html or "")
    if not match:
        logger.warning("[UNDERSTAT] teamsData marker not found in page")
        return {}

    escaped = match.group("json").replace("\\x", "\\u00").replace("\\'", "'")
    try:
        decoded = json.loads(f'"{escaped}"')
        data = json.loads(decoded)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"[UNDERSTAT] teamsData payload not decodable: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning("[UNDERSTAT] teamsData payload is not an object")
        return {}
    return {k: v for k, v in data.items() if k.isdigit() and isinstance(v, dict)}


def summarize_team_history(understat_team_id: str, title: str, history: list) -> UnderstatTeamSummary:
    """Aggregate one team's match history; malformed entries are skipped."""
    summary = UnderstatTeamSummary(understat_team_id=understat_team_id, title=title)
    parsed = []
    for entry in history or []:
        if not isinstance(entry, dict):
            continue
        xg = parse_float(entry.get("xG"))
        xga = parse_float(entry.get("xGA"))
        scored = parse_int(entry.get("scored"))
        missed = parse_int(entry.get("missed"))
        if xg is None or xga is None or scored is None or missed is None:
            continue
        parsed.append((xg, xga, scored, missed))

    for xg, xga, scored, missed in parsed:
        summary.xg_for += xg
        summary.xg_against += xga
        summary.goals += scored
        summary.goals_conceded += missed
    summary.matches_played = len(parsed)

    recent = parsed[-RECENT_MATCHES:]
    summary.recent_xg = [p[0] for p in recent]
    summary.recent_xga = [p[1] for p in recent]
    return summary


class UnderstatProvider(ExternalDataProvider):
    """Understat league pages (HTML with an embedded JSON blob)."""

    SOURCE_ID = "understat"
    INTEGRATION_NAME = UNDERSTAT
    LOG_TAG = "[UNDERSTAT]"

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        league_delay_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        super().__init__(base_url or settings.UNDERSTAT_BASE_URL, client)
        self.league_delay_seconds = (
            settings.UNDERSTAT_LEAGUE_DELAY_SECONDS
            if league_delay_seconds is None
            else league_delay_seconds
        )

    async def fetch_league_teams(self, competition_code: str, season: int) -> list[UnderstatTeamSummary]:
        """Fetch a league page and summarize every team in it."""
        slug = UNDERSTAT_LEAGUES.get(competition_code.upper())
        if slug is None:
            raise ValueError(f"Understat does not cover competition {competition_code}")

        url = f"{self.base_url}/league/{slug}/{season}"
        try:
            response = await self._get(url, entity="league_page")
        except httpx.HTTPError as e:
            logger.warning(f"{self.LOG_TAG} Fetch failed for {competition_code} {season}: {e}")
            raise
        if response is None:
            return []

        summaries = []
        for team_id, team in extract_teams_data(response.text).items():
            title = team.get("title")
            if not title:
                continue
            summaries.append(summarize_team_history(team_id, title, team.get("history")))
        return summaries

    async def _candidate_teams(self, session: AsyncSession, competition_id: int, season: int) -> list[Team]:
        result = await session.execute(
            select(Team)
            .join(CompetitionTeam, CompetitionTeam.team_id == Team.id)
            .where(CompetitionTeam.competition_id == competition_id, CompetitionTeam.season == season)
            .order_by(Team.id)
        )
        teams = list(result.scalars().all())
        if teams:
            return teams
        return list((await session.execute(select(Team).order_by(Team.id))).scalars().all())

    async def sync_league(
        self,
        session: AsyncSession,
        competition_code: str,
        season: int,
        snapshot_date: Optional[date] = None,
    ) -> dict:
        """
        Upsert season xG for one league.

        Args:
            session: Database session.
            competition_code: PL, PD, BL1, SA or FL1.
            season: Season start year.
            snapshot_date: When set, also upsert a TeamXgSnapshot for that date.

        Returns:
            Dict with fetched/inserted/updated/unmatched/snapshots counts.
        """
        code = competition_code.upper()
        metrics = {
            "league": code, "season": season,
            "fetched": 0, "inserted": 0, "updated": 0, "unmatched": 0, "snapshots": 0,
        }

        competition = (
            await session.execute(select(Competition).where(Competition.code == code))
        ).scalar_one_or_none()
        if competition is None:
            logger.warning(f"{self.LOG_TAG} Competition {code} not in database, skipping")
            return metrics

        summaries = await self.fetch_league_teams(code, season)
        metrics["fetched"] = len(summaries)
        if not summaries:
            return metrics

        teams = await self._candidate_teams(session, competition.id, season)
        now = utc_now()

        for summary in summaries:
            team = resolve_team(summary.title, teams)
            if team is None:
                metrics["unmatched"] += 1
                logger.debug(f"{self.LOG_TAG} No team for '{summary.title}' ({code} {season})")
                continue

            figures = summary.figures()
            stats = (
                await session.execute(
                    select(TeamXgStats).where(
                        TeamXgStats.team_id == team.id,
                        TeamXgStats.competition_id == competition.id,
                        TeamXgStats.season == season,
                    )
                )
            ).scalar_one_or_none()
            if stats is None:
                session.add(TeamXgStats(
                    team_id=team.id,
                    competition_id=competition.id,
                    season=season,
                    last_synced_at=now,
                    **figures,
                ))
                metrics["inserted"] += 1
            else:
                for name, value in figures.items():
                    setattr(stats, name, value)
                stats.last_synced_at = now
                metrics["updated"] += 1

            if snapshot_date is not None:
                await self._upsert_snapshot(session, team.id, competition.id, season, snapshot_date, figures, now)
                metrics["snapshots"] += 1

            # Same team resolved twice in one page must hit the pending row
            await session.flush()

        await mark_data_fresh(session, self.INTEGRATION_NAME, now)
        await session.commit()

        logger.info(
            f"{self.LOG_TAG} {code} {season}: {metrics['inserted']} inserted, "
            f"{metrics['updated']} updated, {metrics['unmatched']} unmatched"
        )
        return metrics

    async def _upsert_snapshot(
        self,
        session: AsyncSession,
        team_id: int,
        competition_id: int,
        season: int,
        snapshot_date: date,
        figures: dict,
        now: datetime,
    ) -> None:
        snapshot = (
            await session.execute(
                select(TeamXgSnapshot).where(
                    TeamXgSnapshot.team_id == team_id,
                    TeamXgSnapshot.competition_id == competition_id,
                    TeamXgSnapshot.season == season,
                    TeamXgSnapshot.snapshot_date == snapshot_date,
                )
            )
        ).scalar_one_or_none()
        if snapshot is None:
            session.add(TeamXgSnapshot(
                team_id=team_id,
                competition_id=competition_id,
                season=season,
                snapshot_date=snapshot_date,
                last_synced_at=now,
                **figures,
            ))
            return
        for name, value in figures.items():
            setattr(snapshot, name, value)
        snapshot.last_synced_at = now

    async def sync_all_leagues(self, session: AsyncSession, season: Optional[int] = None) -> list[dict]:
        """Sync every covered league, pausing between league pages."""
        if season is None:
            season = season_for_date(utc_now())

        results = []
        for i, code in enumerate(UNDERSTAT_LEAGUES):
            if i > 0 and self.league_delay_seconds > 0:
                await asyncio.sleep(self.league_delay_seconds)
            results.append(await self.sync_league(session, code, season))
        return results

    async def sync_latest(self, session: AsyncSession) -> dict:
        results = await self.sync_all_leagues(session)
        return {
            "leagues": len(results),
            "inserted": sum(r["inserted"] for r in results),
            "updated": sum(r["updated"] for r in results),
            "unmatched": sum(r["unmatched"] for r in results),
        }

    async def get_team_xg_as_of(
        self,
        session: AsyncSession,
        team_id: int,
        competition_id: int,
        as_of: datetime,
    ) -> Optional[TeamXgStats]:
        """Most recent season row synced by as_of, never from a later season."""
        result = await session.execute(
            select(TeamXgStats)
            .where(
                TeamXgStats.team_id == team_id,
                TeamXgStats.competition_id == competition_id,
                TeamXgStats.last_synced_at <= as_of,
                TeamXgStats.season <= season_for_date(as_of),
            )
            .order_by(TeamXgStats.season.desc(), TeamXgStats.last_synced_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
