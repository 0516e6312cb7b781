"""
League code tables and season arithmetic shared by the providers.

Competition codes are the short codes stored in competitions.code
(PL, PD, BL1, ...). Each provider spells leagues its own way; the tables
below are the single source of truth for those spellings.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional, Union


@dataclass(frozen=True)
class LeagueSource:
    """Per-provider spellings of one competition."""

    code: str
    name: str
    understat_slug: Optional[str] = None
    football_data_file: Optional[str] = None


LEAGUES = {
    "PL": LeagueSource("PL", "Premier League", understat_slug="EPL", football_data_file="E0"),
    "ELC": LeagueSource("ELC", "Championship", football_data_file="E1"),
    "PD": LeagueSource("PD", "La Liga", understat_slug="La_liga", football_data_file="SP1"),
    "BL1": LeagueSource("BL1", "Bundesliga", understat_slug="Bundesliga", football_data_file="D1"),
    "SA": LeagueSource("SA", "Serie A", understat_slug="Serie_A", football_data_file="I1"),
    "FL1": LeagueSource("FL1", "Ligue 1", understat_slug="Ligue_1", football_data_file="F1"),
    "DED": LeagueSource("DED", "Eredivisie", football_data_file="N1"),
    "PPL": LeagueSource("PPL", "Primeira Liga", football_data_file="P1"),
}

UNDERSTAT_LEAGUES = {code: lg.understat_slug for code, lg in LEAGUES.items() if lg.understat_slug}

FOOTBALL_DATA_LEAGUES = {
    code: lg.football_data_file for code, lg in LEAGUES.items() if lg.football_data_file
}

# European seasons roll over in August (xG/odds); API-Football uses July
SEASON_START_MONTH = 8
API_FOOTBALL_SEASON_START_MONTH = 7


def season_for_date(
    when: Union[date, datetime],
    start_month: int = SEASON_START_MONTH,
) -> int:
    """
    Start year of the season containing `when`.

    Examples:
        2024-09-01 -> 2024
        2025-03-01 -> 2024
    """
    return when.year if when.month >= start_month else when.year - 1


def football_data_season_code(season: int) -> str:
    """2024 -> "2425" (two-digit start + two-digit end year)."""
    return f"{season % 100:02d}{(season + 1) % 100:02d}"


def season_window(season: int) -> tuple[datetime, datetime]:
    """[Aug 1 of season, Aug 1 of next season) as aware UTC datetimes."""
    start = datetime(season, SEASON_START_MONTH, 1, tzinfo=timezone.utc)
    return start, datetime(season + 1, SEASON_START_MONTH, 1, tzinfo=timezone.utc)


def season_snapshot_date(season: int) -> date:
    """End-of-season date used to stamp backfilled xG snapshots."""
    return date(season + 1, 6, 30)
