"""
Football-Data UK provider for historical odds and match statistics.

One CSV per league and season:

    GET https://www.football-data.co.uk/mmz4281/2425/E0.csv

Columns used (headers are matched case-insensitively):
    Date, HomeTeam, AwayTeam, FTHG, FTAG
    1X2 odds:    B365H/D/A -> BWH/D/A -> AvgH/D/A (per column fallback)
    Over/Under:  B365>2.5 -> Avg>2.5, B365<2.5 -> Avg<2.5
    BTTS:        B365BTSY -> AvgBTSY, B365BTSN -> AvgBTSN
    Stats:       HTHG HTAG HS AS HST AST HC AC HF AF HY AY HR AR Referee

A row is kept only if its date and all three 1X2 odds parse. Rows are
attached to persisted matches by team name plus a [-1, +2) day window
around the CSV date (the CSV uses local kickoff dates).
"""

import csv
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from io import StringIO
from typing import Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchdata.config import get_settings
from matchdata.etl.base import ExternalDataProvider, parse_date, parse_float, parse_int
from matchdata.etl.competitions import (
    FOOTBALL_DATA_LEAGUES,
    football_data_season_code,
    season_for_date,
    season_window,
)
from matchdata.etl.name_normalization import team_matches_name
from matchdata.jobs.health import FOOTBALL_DATA_UK, mark_data_fresh
from matchdata.models import Competition, Match, MatchOdds, MatchStats, Team, utc_now

logger = logging.getLogger(__name__)

DATA_SOURCE = "football-data.co.uk"

REQUIRED_HEADERS = ("date", "hometeam", "awayteam")

# Column fallback chains, best source first
ODDS_COLUMNS = {
    "home": ("B365H", "BWH", "AvgH"),
    "draw": ("B365D", "BWD", "AvgD"),
    "away": ("B365A", "BWA", "AvgA"),
    "over25": ("B365>2.5", "Avg>2.5"),
    "under25": ("B365<2.5", "Avg<2.5"),
    "btts_yes": ("B365BTSY", "AvgBTSY"),
    "btts_no": ("B365BTSN", "AvgBTSN"),
}

# CSV column -> MatchStats field
STATS_COLUMNS = {
    "HTHG": "home_half_time_goals",
    "HTAG": "away_half_time_goals",
    "HS": "home_shots",
    "AS": "away_shots",
    "HST": "home_shots_on_target",
    "AST": "away_shots_on_target",
    "HC": "home_corners",
    "AC": "away_corners",
    "HF": "home_fouls",
    "AF": "away_fouls",
    "HY": "home_yellow_cards",
    "AY": "away_yellow_cards",
    "HR": "home_red_cards",
    "AR": "away_red_cards",
}

MATCH_WINDOW_BEFORE = timedelta(days=1)
MATCH_WINDOW_AFTER = timedelta(days=2)


@dataclass
class ImpliedProbabilities:
    home: float
    draw: float
    away: float
    favorite: str  # "Home", "Draw" or "Away"

    @property
    def favorite_confidence(self) -> float:
        return {"Home": self.home, "Draw": self.draw, "Away": self.away}[self.favorite]


@dataclass
class FootballDataRow:
    """One usable CSV row."""

    date: datetime
    home_team: str
    away_team: str
    home_goals: Optional[int]
    away_goals: Optional[int]
    home_odds: float
    draw_odds: float
    away_odds: float
    over25_odds: Optional[float] = None
    under25_odds: Optional[float] = None
    btts_yes_odds: Optional[float] = None
    btts_no_odds: Optional[float] = None
    stats: Optional[dict] = None
    referee: Optional[str] = None

    @property
    def has_stats(self) -> bool:
        return bool(self.referee) or any(v is not None for v in (self.stats or {}).values())


def calculate_implied_probabilities(
    home_odds: float,
    draw_odds: float,
    away_odds: float,
) -> ImpliedProbabilities:
    """
    Normalized implied probabilities p_i = (1/o_i) / sum(1/o_j).

    The favorite is Home when home >= both others, else Away when
    away >= draw, else Draw. Non-positive odds yield all zeros and Draw.
    """
    if home_odds <= 0 or draw_odds <= 0 or away_odds <= 0:
        return ImpliedProbabilities(0.0, 0.0, 0.0, "Draw")

    imp_h = 1.0 / home_odds
    imp_d = 1.0 / draw_odds
    imp_a = 1.0 / away_odds
    total = imp_h + imp_d + imp_a
    if total <= 0:
        return ImpliedProbabilities(0.0, 0.0, 0.0, "Draw")

    p_home, p_draw, p_away = imp_h / total, imp_d / total, imp_a / total
    if p_home >= p_draw and p_home >= p_away:
        favorite = "Home"
    elif p_away >= p_draw:
        favorite = "Away"
    else:
        favorite = "Draw"
    return ImpliedProbabilities(p_home, p_draw, p_away, favorite)


def _first_odds(row: dict, columns: tuple) -> Optional[float]:
    for column in columns:
        value = parse_float(row.get(column.lower()))
        if value is not None and value > 0:
            return value
    return None


def parse_odds_csv(text: str) -> list[FootballDataRow]:
    """Parse a Football-Data CSV; [] if the required headers are missing."""
    reader = csv.DictReader(StringIO((text or "").lstrip("\ufeff")))
    headers = {(h or "").strip().lower() for h in reader.fieldnames or []}
    missing = [h for h in REQUIRED_HEADERS if h not in headers]
    if missing:
        logger.warning(f"[FDUK] CSV missing required columns: {missing}")
        return []

    rows = []
    for raw in reader:
        row = {(k or "").strip().lower(): (v or "").strip() for k, v in raw.items() if isinstance(v, str)}

        match_date = parse_date(row.get("date", ""))
        home_team = row.get("hometeam", "")
        away_team = row.get("awayteam", "")
        if match_date is None or not home_team or not away_team:
            continue

        home = _first_odds(row, ODDS_COLUMNS["home"])
        draw = _first_odds(row, ODDS_COLUMNS["draw"])
        away = _first_odds(row, ODDS_COLUMNS["away"])
        if home is None or draw is None or away is None:
            continue

        rows.append(FootballDataRow(
            date=match_date,
            home_team=home_team,
            away_team=away_team,
            home_goals=parse_int(row.get("fthg")),
            away_goals=parse_int(row.get("ftag")),
            home_odds=home,
            draw_odds=draw,
            away_odds=away,
            over25_odds=_first_odds(row, ODDS_COLUMNS["over25"]),
            under25_odds=_first_odds(row, ODDS_COLUMNS["under25"]),
            btts_yes_odds=_first_odds(row, ODDS_COLUMNS["btts_yes"]),
            btts_no_odds=_first_odds(row, ODDS_COLUMNS["btts_no"]),
            stats={field: parse_int(row.get(col.lower())) for col, field in STATS_COLUMNS.items()},
            referee=row.get("referee") or None,
        ))
    return rows


def find_match(
    row: FootballDataRow,
    matches: list[Match],
    teams_by_id: dict[int, Team],
) -> Optional[Match]:
    """Persisted match for a CSV row: same teams, kickoff in [date-1d, date+2d)."""
    window_start = row.date - MATCH_WINDOW_BEFORE
    window_end = row.date + MATCH_WINDOW_AFTER
    for match in matches:
        if not (window_start <= match.match_date_utc < window_end):
            continue
        home = teams_by_id.get(match.home_team_id)
        away = teams_by_id.get(match.away_team_id)
        if home is None or away is None:
            continue
        if team_matches_name(home, row.home_team) and team_matches_name(away, row.away_team):
            return match
    return None


class FootballDataUkProvider(ExternalDataProvider):
    """football-data.co.uk season CSVs (odds + match stats)."""

    SOURCE_ID = "football_data_uk"
    INTEGRATION_NAME = FOOTBALL_DATA_UK
    LOG_TAG = "[FDUK]"

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        super().__init__(base_url or get_settings().FOOTBALL_DATA_BASE_URL, client)

    def build_url(self, competition_code: str, season: int) -> str:
        league_file = FOOTBALL_DATA_LEAGUES.get(competition_code.upper())
        if league_file is None:
            raise ValueError(f"football-data.co.uk does not cover competition {competition_code}")
        return f"{self.base_url}/mmz4281/{football_data_season_code(season)}/{league_file}.csv"

    async def fetch_rows(self, competition_code: str, season: int) -> list[FootballDataRow]:
        url = self.build_url(competition_code, season)
        try:
            response = await self._get(url, entity="odds_csv")
        except httpx.HTTPError as e:
            logger.warning(f"{self.LOG_TAG} Fetch failed for {competition_code} {season}: {e}")
            raise
        if response is None:
            return []
        return parse_odds_csv(response.text)

    async def import_league_season(
        self,
        session: AsyncSession,
        competition_code: str,
        season: int,
        imported_at: Optional[datetime] = None,
    ) -> dict:
        """
        Upsert odds (and stats when present) for one league season.

        Args:
            session: Database session.
            competition_code: League code (PL, ELC, PD, ...).
            season: Season start year.
            imported_at: Timestamp to stamp on odds; defaults to the row date
                so historical imports stay point-in-time correct.

        Returns:
            Dict with rows/matched/unmatched/odds_inserted/odds_updated/stats_upserted.
        """
        code = competition_code.upper()
        metrics = {
            "league": code, "season": season, "rows": 0, "matched": 0, "unmatched": 0,
            "odds_inserted": 0, "odds_updated": 0, "stats_upserted": 0,
        }

        competition = (
            await session.execute(select(Competition).where(Competition.code == code))
        ).scalar_one_or_none()
        if competition is None:
            logger.warning(f"{self.LOG_TAG} Competition {code} not in database, skipping")
            return metrics

        rows = await self.fetch_rows(code, season)
        metrics["rows"] = len(rows)
        if not rows:
            return metrics

        start, end = season_window(season)
        matches = list((
            await session.execute(
                select(Match)
                .where(
                    Match.competition_id == competition.id,
                    Match.match_date_utc >= start - MATCH_WINDOW_BEFORE,
                    Match.match_date_utc < end + MATCH_WINDOW_AFTER,
                )
                .order_by(Match.match_date_utc, Match.id)
            )
        ).scalars().all())
        team_ids = {m.home_team_id for m in matches} | {m.away_team_id for m in matches}
        teams_by_id = {}
        if team_ids:
            teams_by_id = {
                t.id: t
                for t in (await session.execute(select(Team).where(Team.id.in_(team_ids)))).scalars().all()
            }

        for row in rows:
            match = find_match(row, matches, teams_by_id)
            if match is None:
                metrics["unmatched"] += 1
                logger.debug(
                    f"{self.LOG_TAG} No match for {row.home_team} v {row.away_team} "
                    f"on {row.date.date()}"
                )
                continue
            metrics["matched"] += 1

            if await self._upsert_odds(session, match.id, row, imported_at or row.date):
                metrics["odds_inserted"] += 1
            else:
                metrics["odds_updated"] += 1

            if row.has_stats:
                await self._upsert_stats(session, match.id, row, imported_at or row.date)
                metrics["stats_upserted"] += 1

            await session.flush()

        await mark_data_fresh(session, self.INTEGRATION_NAME)
        await session.commit()

        logger.info(
            f"{self.LOG_TAG} {code} {season}: {metrics['matched']}/{metrics['rows']} rows matched, "
            f"{metrics['odds_inserted']} odds inserted, {metrics['odds_updated']} updated"
        )
        return metrics

    async def _upsert_odds(
        self,
        session: AsyncSession,
        match_id: int,
        row: FootballDataRow,
        imported_at: datetime,
    ) -> bool:
        """Returns True when a new row was inserted."""
        probs = calculate_implied_probabilities(row.home_odds, row.draw_odds, row.away_odds)
        values = {
            "home_win_odds": row.home_odds,
            "draw_odds": row.draw_odds,
            "away_win_odds": row.away_odds,
            "over25_odds": row.over25_odds,
            "under25_odds": row.under25_odds,
            "btts_yes_odds": row.btts_yes_odds,
            "btts_no_odds": row.btts_no_odds,
            "home_win_probability": probs.home,
            "draw_probability": probs.draw,
            "away_win_probability": probs.away,
            "market_favorite": probs.favorite,
            "favorite_confidence": probs.favorite_confidence,
            "data_source": DATA_SOURCE,
            "imported_at": imported_at,
        }

        odds = (
            await session.execute(select(MatchOdds).where(MatchOdds.match_id == match_id))
        ).scalar_one_or_none()
        if odds is None:
            session.add(MatchOdds(match_id=match_id, **values))
            return True
        for name, value in values.items():
            setattr(odds, name, value)
        return False

    async def _upsert_stats(
        self,
        session: AsyncSession,
        match_id: int,
        row: FootballDataRow,
        imported_at: datetime,
    ) -> None:
        values = dict(row.stats or {})
        values["referee"] = row.referee
        values["data_source"] = DATA_SOURCE
        values["imported_at"] = imported_at

        stats = (
            await session.execute(select(MatchStats).where(MatchStats.match_id == match_id))
        ).scalar_one_or_none()
        if stats is None:
            session.add(MatchStats(match_id=match_id, **values))
            return
        for name, value in values.items():
            setattr(stats, name, value)

    async def sync_latest(self, session: AsyncSession) -> dict:
        """Import the current season for every covered league."""
        season = season_for_date(utc_now())
        totals = {"season": season, "leagues": 0, "matched": 0, "unmatched": 0}
        for code in FOOTBALL_DATA_LEAGUES:
            result = await self.import_league_season(session, code, season, imported_at=utc_now())
            totals["leagues"] += 1
            totals["matched"] += result["matched"]
            totals["unmatched"] += result["unmatched"]
        return totals

    async def get_odds_as_of(
        self,
        session: AsyncSession,
        match_id: int,
        as_of: datetime,
    ) -> Optional[MatchOdds]:
        """Odds for a match if they were imported by as_of."""
        result = await session.execute(
            select(MatchOdds)
            .where(MatchOdds.match_id == match_id, MatchOdds.imported_at <= as_of)
            .order_by(MatchOdds.imported_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
