"""Provider adapters for external football data sources."""

from matchdata.etl.api_football_injuries import ApiFootballInjuryProvider
from matchdata.etl.base import ExternalDataProvider
from matchdata.etl.clubelo_provider import ClubEloProvider
from matchdata.etl.football_data_uk import FootballDataUkProvider
from matchdata.etl.name_normalization import resolve_team
from matchdata.etl.quota import QuotaGovernor, QuotaPolicy
from matchdata.etl.suspensions import SuspensionTracker
from matchdata.etl.understat_provider import UnderstatProvider

__all__ = [
    "ExternalDataProvider",
    "ClubEloProvider",
    "UnderstatProvider",
    "FootballDataUkProvider",
    "ApiFootballInjuryProvider",
    "SuspensionTracker",
    "QuotaGovernor",
    "QuotaPolicy",
    "resolve_team",
]
