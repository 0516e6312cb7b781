"""Database models using SQLModel.

Teams, competitions and matches belong to the wider prediction-league
domain; they are declared here so the sync pipeline can query them, but
the pipeline never creates them. Everything below the "Sync state" banner
is owned by this package.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Referenced domain tables
# =============================================================================


class Team(SQLModel, table=True):
    """Canonical club."""

    __tablename__ = "teams"

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: int = Field(unique=True, index=True, description="API-Football team ID")
    name: str = Field(max_length=255)
    short_name: Optional[str] = Field(default=None, max_length=100)


class Competition(SQLModel, table=True):
    """Competition identified by its short code (PL, PD, BL1, ...)."""

    __tablename__ = "competitions"

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: Optional[int] = Field(default=None, index=True, description="API-Football league ID")
    code: str = Field(max_length=10, unique=True, index=True)
    name: str = Field(max_length=255)


class CompetitionTeam(SQLModel, table=True):
    """Season roster of a competition."""

    __tablename__ = "competition_teams"
    __table_args__ = (
        UniqueConstraint("competition_id", "team_id", "season", name="uq_competition_team_season"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    competition_id: int = Field(foreign_key="competitions.id", index=True)
    team_id: int = Field(foreign_key="teams.id", index=True)
    season: int = Field(description="Season start year")


class Match(SQLModel, table=True):
    """Fixture."""

    __tablename__ = "matches"

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: Optional[int] = Field(default=None, index=True)
    competition_id: int = Field(foreign_key="competitions.id", index=True)
    season: int = Field(description="Season start year")
    home_team_id: int = Field(foreign_key="teams.id", index=True)
    away_team_id: int = Field(foreign_key="teams.id", index=True)
    match_date_utc: datetime = Field(index=True)
    status: str = Field(default="Scheduled", max_length=20, description="Scheduled, Live, Finished, ...")
    home_score: Optional[int] = None
    away_score: Optional[int] = None


# =============================================================================
# Sync state
# =============================================================================


class BackfillCheckpoint(SQLModel, table=True):
    """Last completed backfill unit per (source, scope) key."""

    __tablename__ = "backfill_checkpoints"

    id: Optional[int] = Field(default=None, primary_key=True)
    key: str = Field(max_length=200, unique=True, index=True, description="Backfill:{Source}:{Scope}")
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utc_now)


class IntegrationHealth:
    """Health states of an integration."""

    UNKNOWN = "Unknown"
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    FAILED = "Failed"
    DISABLED = "Disabled"


# Consecutive failures at which an integration is considered down
FAILED_THRESHOLD = 5


class IntegrationStatus(SQLModel, table=True):
    """
    Health of one external integration.

    Only record_success/record_failure (plus the manual disable switch and
    freshness marker) mutate a row; health is derived from the
    consecutive-failure count on every call.
    """

    __tablename__ = "integration_statuses"

    id: Optional[int] = Field(default=None, primary_key=True)
    integration_name: str = Field(max_length=50, unique=True, index=True)
    health: str = Field(default=IntegrationHealth.UNKNOWN, max_length=20)

    last_successful_sync: Optional[datetime] = None
    last_attempted_sync: Optional[datetime] = None
    last_failed_sync: Optional[datetime] = None

    consecutive_failures: int = 0
    total_failures_24h: int = 0
    successful_syncs_24h: int = 0
    counters_window_started_at: Optional[datetime] = None

    last_error_message: Optional[str] = Field(default=None, max_length=1000)
    last_error_details: Optional[str] = None

    data_fresh_as_of: Optional[datetime] = None
    stale_threshold_hours: float = 48.0
    average_sync_duration_ms: Optional[float] = None

    is_manually_disabled: bool = False
    disabled_reason: Optional[str] = Field(default=None, max_length=500)
    disabled_at: Optional[datetime] = None
    disabled_by: Optional[str] = Field(default=None, max_length=100)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_operational(self) -> bool:
        if self.is_manually_disabled:
            return False
        return self.health in (IntegrationHealth.HEALTHY, IntegrationHealth.DEGRADED)

    def is_data_stale(self, now: Optional[datetime] = None) -> bool:
        if self.data_fresh_as_of is None:
            return False
        now = now or utc_now()
        return now - self.data_fresh_as_of > timedelta(hours=self.stale_threshold_hours)

    @property
    def success_rate_24h(self) -> Optional[float]:
        total = self.successful_syncs_24h + self.total_failures_24h
        if total == 0:
            return None
        return self.successful_syncs_24h / total * 100

    def _roll_counters(self, now: datetime) -> None:
        if (
            self.counters_window_started_at is None
            or now - self.counters_window_started_at >= timedelta(hours=24)
        ):
            self.reset_daily_counters(now)

    def reset_daily_counters(self, now: Optional[datetime] = None) -> None:
        self.successful_syncs_24h = 0
        self.total_failures_24h = 0
        self.counters_window_started_at = now or utc_now()

    def record_success(self, duration: timedelta, now: Optional[datetime] = None) -> None:
        now = now or utc_now()
        self._roll_counters(now)
        duration_ms = duration.total_seconds() * 1000

        self.last_attempted_sync = now
        self.last_successful_sync = now
        self.consecutive_failures = 0
        self.successful_syncs_24h += 1
        if self.average_sync_duration_ms is None:
            self.average_sync_duration_ms = duration_ms
        else:
            self.average_sync_duration_ms = (self.average_sync_duration_ms + duration_ms) / 2
        if not self.is_manually_disabled:
            self.health = IntegrationHealth.HEALTHY
        self.updated_at = now

    def record_failure(
        self,
        message: str,
        details: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or utc_now()
        self._roll_counters(now)

        self.last_attempted_sync = now
        self.last_failed_sync = now
        self.consecutive_failures += 1
        self.total_failures_24h += 1
        self.last_error_message = (message or "")[:1000]
        self.last_error_details = details
        if not self.is_manually_disabled:
            if self.consecutive_failures >= FAILED_THRESHOLD:
                self.health = IntegrationHealth.FAILED
            else:
                self.health = IntegrationHealth.DEGRADED
        self.updated_at = now

    def disable(self, reason: str, disabled_by: str = "system", now: Optional[datetime] = None) -> None:
        now = now or utc_now()
        self.is_manually_disabled = True
        self.disabled_reason = (reason or "")[:500]
        self.disabled_at = now
        self.disabled_by = disabled_by
        self.health = IntegrationHealth.DISABLED
        self.updated_at = now

    def enable(self, now: Optional[datetime] = None) -> None:
        """Clear the manual switch; health is re-derived on the next record call."""
        self.is_manually_disabled = False
        self.disabled_reason = None
        self.disabled_at = None
        self.disabled_by = None
        self.health = IntegrationHealth.UNKNOWN
        self.updated_at = now or utc_now()


# =============================================================================
# Per-source facts
# =============================================================================


class TeamEloRating(SQLModel, table=True):
    """ClubElo rating of a team on a given day."""

    __tablename__ = "team_elo_ratings"
    __table_args__ = (
        UniqueConstraint("team_id", "rating_date", name="uq_team_elo_date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    team_id: int = Field(foreign_key="teams.id", index=True)
    rating_date: date = Field(index=True)
    elo_rating: float
    elo_rank: int
    clubelo_name: str = Field(max_length=100)
    synced_at: datetime = Field(default_factory=utc_now)


class _XgFigures(SQLModel):
    """Season xG aggregates shared by the current row and its snapshots."""

    understat_team_id: Optional[str] = Field(default=None, max_length=20)
    xg_for: float = 0.0
    xg_against: float = 0.0
    xg_diff: float = 0.0
    xg_per_match: float = 0.0
    xg_against_per_match: float = 0.0
    goals: int = 0
    goals_conceded: int = 0
    xg_overperformance: float = 0.0
    xga_overperformance: float = 0.0
    recent_xg_per_match: float = 0.0
    recent_xga_per_match: float = 0.0
    matches_played: int = 0
    last_synced_at: datetime = Field(default_factory=utc_now)


class TeamXgStats(_XgFigures, table=True):
    """Current Understat season aggregates per team and competition."""

    __tablename__ = "team_xg_stats"
    __table_args__ = (
        UniqueConstraint("team_id", "competition_id", "season", name="uq_team_xg_season"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    team_id: int = Field(foreign_key="teams.id", index=True)
    competition_id: int = Field(foreign_key="competitions.id", index=True)
    season: int


class TeamXgSnapshot(_XgFigures, table=True):
    """Point-in-time copy of season xG aggregates (written by backfill)."""

    __tablename__ = "team_xg_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "team_id", "competition_id", "season", "snapshot_date", name="uq_team_xg_snapshot"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    team_id: int = Field(foreign_key="teams.id", index=True)
    competition_id: int = Field(foreign_key="competitions.id", index=True)
    season: int
    snapshot_date: date


class MatchOdds(SQLModel, table=True):
    """Closing-style bookmaker odds for a match, with implied probabilities."""

    __tablename__ = "match_odds"

    id: Optional[int] = Field(default=None, primary_key=True)
    match_id: int = Field(foreign_key="matches.id", unique=True, index=True)

    home_win_odds: float
    draw_odds: float
    away_win_odds: float
    over25_odds: Optional[float] = None
    under25_odds: Optional[float] = None
    btts_yes_odds: Optional[float] = None
    btts_no_odds: Optional[float] = None

    home_win_probability: float = 0.0
    draw_probability: float = 0.0
    away_win_probability: float = 0.0
    market_favorite: str = Field(default="Draw", max_length=10, description="Home, Draw or Away")
    favorite_confidence: float = 0.0

    data_source: str = Field(default="football-data.co.uk", max_length=50)
    imported_at: datetime = Field(default_factory=utc_now, index=True)


class MatchStats(SQLModel, table=True):
    """Secondary match statistics from the odds CSV."""

    __tablename__ = "match_stats"

    id: Optional[int] = Field(default=None, primary_key=True)
    match_id: int = Field(foreign_key="matches.id", unique=True, index=True)

    home_half_time_goals: Optional[int] = None
    away_half_time_goals: Optional[int] = None
    home_shots: Optional[int] = None
    away_shots: Optional[int] = None
    home_shots_on_target: Optional[int] = None
    away_shots_on_target: Optional[int] = None
    home_corners: Optional[int] = None
    away_corners: Optional[int] = None
    home_fouls: Optional[int] = None
    away_fouls: Optional[int] = None
    home_yellow_cards: Optional[int] = None
    away_yellow_cards: Optional[int] = None
    home_red_cards: Optional[int] = None
    away_red_cards: Optional[int] = None
    referee: Optional[str] = Field(default=None, max_length=100)

    data_source: str = Field(default="football-data.co.uk", max_length=50)
    imported_at: datetime = Field(default_factory=utc_now)


class PlayerInjury(SQLModel, table=True):
    """One currently active injury (the team's set is replaced on every sync)."""

    __tablename__ = "player_injuries"

    id: Optional[int] = Field(default=None, primary_key=True)
    team_id: int = Field(foreign_key="teams.id", index=True)
    external_player_id: Optional[int] = None
    player_name: str = Field(max_length=150)
    position: str = Field(default="UNK", max_length=5, description="GK, DEF, MID, FWD, UNK")
    injury_type: str = Field(default="Unknown", max_length=150)
    severity: str = Field(default="Minor", max_length=10, description="Minor, Moderate, Severe")
    injury_date: Optional[datetime] = None
    expected_return_date: Optional[datetime] = None
    is_doubtful: bool = False
    is_key_player: bool = False
    is_active: bool = True
    last_updated_at: datetime = Field(default_factory=utc_now)


class _InjuryFigures(SQLModel):
    total_injured: int = 0
    key_players_injured: int = 0
    long_term_injuries: int = 0
    short_term_injuries: int = 0
    doubtful_players: int = 0
    injured_player_names: Optional[list] = Field(default=None, sa_type=JSON)
    top_scorer_injured: bool = False
    captain_injured: bool = False
    first_choice_gk_injured: bool = False
    injury_impact_score: float = 0.0


class TeamInjuries(_InjuryFigures, table=True):
    """Current injury state of a team."""

    __tablename__ = "team_injuries"

    id: Optional[int] = Field(default=None, primary_key=True)
    team_id: int = Field(foreign_key="teams.id", unique=True, index=True)
    last_synced_at: datetime = Field(default_factory=utc_now)
    next_sync_due: Optional[datetime] = None


class PlayerSuspension(SQLModel, table=True):
    """One card ban or disciplinary absence (replaced with the team's injuries)."""

    __tablename__ = "player_suspensions"

    id: Optional[int] = Field(default=None, primary_key=True)
    team_id: int = Field(foreign_key="teams.id", index=True)
    external_player_id: Optional[int] = None
    player_name: str = Field(max_length=150)
    position: str = Field(default="UNK", max_length=5)
    is_key_player: bool = False
    suspension_reason: str = Field(default="Suspended", max_length=150)
    fixture_date: Optional[datetime] = None
    is_active: bool = True
    last_updated_at: datetime = Field(default_factory=utc_now)


class TeamSuspensions(SQLModel, table=True):
    """Current suspension state of a team."""

    __tablename__ = "team_suspensions"

    id: Optional[int] = Field(default=None, primary_key=True)
    team_id: int = Field(foreign_key="teams.id", unique=True, index=True)
    total_suspended: int = 0
    key_players_suspended: int = 0
    card_suspensions: int = 0
    disciplinary_suspensions: int = 0
    suspended_player_names: Optional[list] = Field(default=None, sa_type=JSON)
    suspension_impact_score: float = 0.0
    last_synced_at: datetime = Field(default_factory=utc_now)
    next_sync_due: Optional[datetime] = None


class TeamInjurySnapshot(_InjuryFigures, table=True):
    """Daily copy of a team's injury state."""

    __tablename__ = "team_injury_snapshots"
    __table_args__ = (
        UniqueConstraint("team_id", "snapshot_date", name="uq_team_injury_snapshot_day"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    team_id: int = Field(foreign_key="teams.id", index=True)
    snapshot_date: date = Field(index=True)
    created_at: datetime = Field(default_factory=utc_now)
