"""Unit tests for club name normalization and team resolution."""

from dataclasses import dataclass
from typing import Optional

from matchdata.etl.name_normalization import (
    TEAM_NAME_ALIASES,
    map_alias,
    normalize_club_name,
    resolve_team,
    team_matches_name,
)


@dataclass
class FakeTeam:
    name: str
    short_name: Optional[str] = None


ENGLISH = [
    FakeTeam("Arsenal", "Arsenal"),
    FakeTeam("Manchester City", "Man City"),
    FakeTeam("Manchester United", "Man Utd"),
    FakeTeam("Tottenham Hotspur", "Tottenham"),
    FakeTeam("Brighton and Hove Albion", "Brighton"),
    FakeTeam("AFC Bournemouth", "Bournemouth"),
    FakeTeam("Wolverhampton Wanderers", "Wolves"),
]


def _by_name(name: str) -> FakeTeam:
    return next(t for t in ENGLISH if t.name == name)


class TestNormalizeClubName:
    """Comparison key: lowercase alphanumerics without org tokens."""

    def test_strips_punctuation_and_spaces(self):
        assert normalize_club_name("Brighton & Hove Albion") == "brightonhovealbion"

    def test_strips_org_tokens(self):
        assert normalize_club_name("AFC Bournemouth") == "bournemouth"
        assert normalize_club_name("Valencia CF") == "valencia"
        assert normalize_club_name("Liverpool Football Club") == "liverpool"

    def test_tokens_stripped_in_order_anywhere(self):
        # "chelseafc" loses "afc" before "fc" is tried
        assert normalize_club_name("Chelsea FC") == "chelse"

    def test_diacritics(self):
        assert normalize_club_name("Atlético Madrid") == "atleticomadrid"

    def test_empty(self):
        assert normalize_club_name("") == ""
        assert normalize_club_name(None) == ""

    def test_only_tokens_collapses_to_empty(self):
        assert normalize_club_name("F.C.") == ""


class TestAliases:
    def test_known_aliases(self):
        assert TEAM_NAME_ALIASES["Man City"] == "Manchester City"
        assert TEAM_NAME_ALIASES["Spurs"] == "Tottenham Hotspur"

    def test_alias_lookup_is_case_insensitive(self):
        assert map_alias("man city") == "Manchester City"

    def test_unknown_name_unchanged(self):
        assert map_alias("Arsenal") == "Arsenal"


class TestResolveTeam:
    """Resolution order: exact, normalized exact, normalized containment."""

    def test_alias_resolves_to_canonical(self):
        assert resolve_team("Spurs", ENGLISH) is _by_name("Tottenham Hotspur")

    def test_short_name_exact(self):
        assert resolve_team("Man City", ENGLISH) is _by_name("Manchester City")

    def test_case_insensitive_exact(self):
        assert resolve_team("ARSENAL", ENGLISH) is _by_name("Arsenal")

    def test_normalized_exact(self):
        assert resolve_team("Brighton and Hove Albion FC", ENGLISH) is _by_name("Brighton and Hove Albion")

    def test_containment(self):
        assert resolve_team("Wolverhampton", ENGLISH) is _by_name("Wolverhampton Wanderers")

    def test_over_stripped_name_resolves_by_containment(self):
        teams = ENGLISH + [FakeTeam("Chelsea", "Chelsea")]
        assert resolve_team("Chelsea FC", teams) is teams[-1]

    def test_unrelated_name_returns_none(self):
        assert resolve_team("Real Madrid", ENGLISH) is None

    def test_empty_source_returns_none(self):
        assert resolve_team("", ENGLISH) is None

    def test_token_only_name_does_not_match_everything(self):
        assert resolve_team("FC", ENGLISH) is None

    def test_exact_beats_earlier_containment(self):
        """An exact match wins over an earlier containment candidate."""
        teams = [FakeTeam("Manchester City Women"), FakeTeam("Manchester City")]
        assert resolve_team("Manchester City", teams) is teams[1]

    def test_ambiguous_containment_takes_first(self):
        teams = [FakeTeam("Inter Miami"), FakeTeam("Internazionale")]
        assert resolve_team("Inter", teams) is teams[0]

    def test_team_matches_name(self):
        assert team_matches_name(_by_name("Manchester United"), "Man United")
        assert not team_matches_name(_by_name("Manchester United"), "Man City")
