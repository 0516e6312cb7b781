"""
Team name resolution across providers.

Single source of truth: every adapter (ClubElo, Understat,
football-data.co.uk) resolves source club names through resolve_team().

Resolution order (first hit wins):
1. Exact case-insensitive match of the raw or alias-mapped name against the
   team's full or short name.
2. Exact match on normalized forms (normalize_club_name).
3. Normalized substring containment, either direction.

Step 3 is a heuristic and can pick the wrong club for short or ambiguous
names (e.g. "Inter" vs "Internazionale" variants). When several candidates
qualify, the first one in enumeration order wins, so callers pass teams in
a stable order (by id).
"""

import re
import unicodedata
from typing import Iterable, Optional, Protocol, TypeVar


class NamedTeam(Protocol):
    name: str
    short_name: Optional[str]


T = TypeVar("T", bound=NamedTeam)


# Source spelling -> canonical full name
TEAM_NAME_ALIASES = {
    "Man City": "Manchester City",
    "Man United": "Manchester United",
    "Spurs": "Tottenham Hotspur",
    "Wolves": "Wolverhampton Wanderers",
    "West Ham": "West Ham United",
    "Sheffield Utd": "Sheffield United",
    "Nott'm Forest": "Nottingham Forest",
    "Newcastle": "Newcastle United",
    "Leicester": "Leicester City",
    "Leeds": "Leeds United",
    "Brighton": "Brighton and Hove Albion",
    "Athletic Bilbao": "Athletic Club",
    "Inter": "Inter Milan",
    "AC Milan": "Milan",
    "PSG": "Paris Saint-Germain",
}

_ALIASES_LOWER = {k.lower(): v for k, v in TEAM_NAME_ALIASES.items()}

# Stripped in this order after punctuation/whitespace removal
_ORG_TOKENS = ("footballclub", "afc", "fc", "cf")


def map_alias(name: str) -> str:
    """Alias-mapped name, or the input unchanged."""
    if not name:
        return ""
    return _ALIASES_LOWER.get(name.strip().lower(), name.strip())


def normalize_club_name(name: str) -> str:
    """
    Collapse a club name to a comparison key.

    Lowercase, strip diacritics, keep only [a-z0-9], then remove the
    organizational tokens "footballclub", "afc", "fc", "cf" wherever they
    occur.

    Examples:
        "Brighton & Hove Albion FC" -> "brightonhovealbion"
        "AFC Bournemouth"           -> "bournemouth"
        "Atlético Madrid"           -> "atleticomadrid"
    """
    if not name:
        return ""

    name = unicodedata.normalize("NFKD", name.lower())
    name = "".join(c for c in name if not unicodedata.combining(c))
    name = re.sub(r"[^a-z0-9]", "", name)
    for token in _ORG_TOKENS:
        name = name.replace(token, "")
    return name


def _team_names(team: NamedTeam) -> list[str]:
    return [n for n in (team.name, team.short_name) if n]


def _source_names(source_name: str) -> list[str]:
    raw = (source_name or "").strip()
    mapped = map_alias(raw)
    return [raw] if mapped == raw else [raw, mapped]


def _exact(team: NamedTeam, sources: list[str]) -> bool:
    names = {n.lower() for n in _team_names(team)}
    return any(s.lower() in names for s in sources)


def _normalized_exact(team: NamedTeam, normalized_sources: list[str]) -> bool:
    names = {normalize_club_name(n) for n in _team_names(team)}
    names.discard("")
    return any(s in names for s in normalized_sources)


def _normalized_contains(team: NamedTeam, normalized_sources: list[str]) -> bool:
    for candidate in (normalize_club_name(n) for n in _team_names(team)):
        if not candidate:
            continue
        for source in normalized_sources:
            if source in candidate or candidate in source:
                return True
    return False


def resolve_team(source_name: str, candidates: Iterable[T]) -> Optional[T]:
    """
    Map a provider club name to one of the candidate teams.

    Args:
        source_name: Club name as spelled by the provider.
        candidates: Teams exposing .name and .short_name.

    Returns:
        The matching team, or None when nothing matches (callers skip the
        record; that is a data-quality gap, not an error).
    """
    sources = [s for s in _source_names(source_name) if s]
    if not sources:
        return None

    teams = list(candidates)
    normalized = [n for n in (normalize_club_name(s) for s in sources) if n]

    for team in teams:
        if _exact(team, sources):
            return team

    if not normalized:
        return None

    for team in teams:
        if _normalized_exact(team, normalized):
            return team

    for team in teams:
        if _normalized_contains(team, normalized):
            return team

    return None


def team_matches_name(team: NamedTeam, source_name: str) -> bool:
    """True if source_name resolves to this team on its own."""
    return resolve_team(source_name, [team]) is not None
