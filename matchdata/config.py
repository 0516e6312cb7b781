"""Application configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./matchdata.db"

    LOG_LEVEL: str = "INFO"

    # Prometheus /metrics listener for the serve command (0 = off)
    METRICS_PORT: int = 0

    # Sentry (inactive while SENTRY_DSN is empty)
    SENTRY_DSN: str = ""
    SENTRY_ENABLED: bool = True
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_RELEASE: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.05

    # HTTP
    HTTP_TIMEOUT_SECONDS: float = 30.0
    HTTP_USER_AGENT: str = "matchdata-sync/0.1 (+https://www.football-data.co.uk)"

    # ═══════════════════════════════════════════════════════════════
    # Providers
    # ═══════════════════════════════════════════════════════════════

    CLUBELO_BASE_URL: str = "http://api.clubelo.com"
    UNDERSTAT_BASE_URL: str = "https://understat.com"
    FOOTBALL_DATA_BASE_URL: str = "https://www.football-data.co.uk"
    API_FOOTBALL_BASE_URL: str = "https://v3.football.api-sports.io"
    API_FOOTBALL_KEY: str = ""

    # Pause between league pages (Understat is not an API, be polite)
    UNDERSTAT_LEAGUE_DELAY_SECONDS: float = 2.0

    # ═══════════════════════════════════════════════════════════════
    # Scheduled sync drivers (hours are UTC)
    # ═══════════════════════════════════════════════════════════════

    CLUBELO_SYNC_ENABLED: bool = True
    CLUBELO_SYNC_HOUR_UTC: int = 3

    UNDERSTAT_SYNC_ENABLED: bool = True
    UNDERSTAT_SYNC_HOUR_UTC: int = 4

    # Odds run weekly on Mondays
    FOOTBALL_DATA_SYNC_ENABLED: bool = True
    FOOTBALL_DATA_SYNC_HOUR_UTC: int = 5

    INJURIES_SYNC_HOUR_UTC: int = 6
    # Suspension summaries (enabled with injuries)
    SUSPENSIONS_SYNC_HOUR_UTC: int = 7

    # ═══════════════════════════════════════════════════════════════
    # Injuries + API-Football quota policy
    # ═══════════════════════════════════════════════════════════════

    INJURIES_ENABLED: bool = False
    INJURY_DAYS_AHEAD: int = 3
    INJURY_STALE_HOURS: int = 24

    # Provider hard limit (free plan: 100/day)
    API_FOOTBALL_HARD_DAILY_LIMIT: int = 100
    # Operational stop below the hard limit
    API_FOOTBALL_OPERATIONAL_CAP: int = 90
    INJURY_MAX_CALLS_PER_DAY: int = 40
    # Always left for lineup fetches on top of imminent matches
    INJURY_SAFETY_RESERVE: int = 10
    # Count only Premier League matches when reserving for lineups
    INJURY_RESERVE_PL_ONLY: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
