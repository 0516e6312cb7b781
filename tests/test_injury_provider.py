"""Tests for injury classification, persistence and quota-metered sync."""

from datetime import date, datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import select

from matchdata.etl.api_football_injuries import (
    ApiFootballInjuryProvider,
    calculate_impact_score,
    classify_position,
    classify_severity,
    estimate_return_date,
    is_doubtful,
    is_suspension,
    is_suspension_listing,
    parse_injury_entries,
    parse_suspension_entries,
    summarize_injuries,
    upcoming_team_ids,
)
from matchdata.etl.quota import QuotaGovernor, QuotaPolicy
from matchdata.models import Match, PlayerInjury, PlayerSuspension, TeamInjuries, TeamInjurySnapshot, utc_now

from .conftest import mock_client

NOW = datetime(2024, 9, 10, 9, 0, tzinfo=timezone.utc)


def _item(player_id, name, position, reason, timestamp=1725800000) -> dict:
    return {
        "player": {"id": player_id, "name": name, "position": position, "reason": reason},
        "team": {"id": 42},
        "fixture": {"id": 1, "timestamp": timestamp},
    }


FWD_AND_GK = [
    _item(1, "B. Saka", "Attacker", "Knock"),
    _item(2, "D. Raya", "Goalkeeper", "ACL Injury"),
]


class TestClassification:
    def test_suspensions(self):
        assert is_suspension("Red Card Suspension")
        assert is_suspension("Suspended")
        assert is_suspension("Missing Fixture")
        assert not is_suspension("Hamstring Injury")
        assert not is_suspension(None)

    def test_suspension_listings(self):
        assert is_suspension_listing("Red Card")
        assert is_suspension_listing("Yellow Cards")
        assert is_suspension_listing("Suspended")
        assert is_suspension_listing("Disciplinary reasons")
        assert not is_suspension_listing("Missing Fixture")
        assert not is_suspension_listing("Knee Injury")
        assert not is_suspension_listing(None)

    def test_positions(self):
        assert classify_position("Goalkeeper") == "GK"
        assert classify_position("defender") == "DEF"
        assert classify_position("Midfielder") == "MID"
        assert classify_position("Attacker") == "FWD"
        assert classify_position("Coach") == "UNK"
        assert classify_position(None) == "UNK"

    def test_severity(self):
        assert classify_severity("ACL Injury") == "Severe"
        assert classify_severity("Ankle Fracture") == "Severe"
        assert classify_severity("Achilles Rupture") == "Severe"
        assert classify_severity("Hamstring Injury") == "Moderate"
        assert classify_severity("Calf Strain") == "Moderate"
        assert classify_severity("Knock") == "Minor"
        assert classify_severity(None) == "Minor"

    def test_doubtful(self):
        assert is_doubtful("Doubtful: knee")
        assert is_doubtful("Questionable")
        assert not is_doubtful("Knock")

    def test_return_dates(self):
        day = datetime(2024, 9, 1, tzinfo=timezone.utc)
        assert estimate_return_date(day, "Severe", False) == day + timedelta(days=45)
        assert estimate_return_date(day, "Moderate", False) == day + timedelta(days=14)
        assert estimate_return_date(day, "Minor", False) == day + timedelta(days=5)
        assert estimate_return_date(day, "Other", False) == day + timedelta(days=10)
        assert estimate_return_date(day, "Severe", True) == day + timedelta(days=3)

    def test_impact_capped(self):
        assert calculate_impact_score(20, 5, 5, 5, True, True, True) == 100.0
        assert calculate_impact_score(0, 0, 0, 0, False, False, False) == 0.0


class TestParseAndSummarize:
    def test_forward_and_keeper_scenario(self):
        entries = parse_injury_entries(FWD_AND_GK, NOW)
        figures = summarize_injuries(entries)

        assert figures["total_injured"] == 2
        assert figures["key_players_injured"] == 2
        assert figures["long_term_injuries"] == 1
        assert figures["short_term_injuries"] == 1
        assert figures["first_choice_gk_injured"]
        assert figures["top_scorer_injured"]
        assert not figures["captain_injured"]
        assert figures["injury_impact_score"] == 83.0

    def test_summary_is_deterministic(self):
        first = summarize_injuries(parse_injury_entries(FWD_AND_GK, NOW))
        second = summarize_injuries(parse_injury_entries(FWD_AND_GK, NOW))
        assert first == second

    def test_suspensions_dropped(self):
        entries = parse_injury_entries([_item(3, "W. Saliba", "Defender", "Red Card Suspension")], NOW)
        assert entries == []

    def test_suspension_listings_kept_separately(self):
        payload = [
            _item(1, "B. Saka", "Attacker", "Knock"),
            _item(3, "W. Saliba", "Defender", "Red Card Suspension"),
            _item(9, "K. Havertz", "Attacker", "Yellow Cards", timestamp=1725000000),
            _item(9, "K. Havertz", "Attacker", "Yellow Cards", timestamp=1725900000),
        ]
        listings = parse_suspension_entries(payload, NOW)

        assert [s.player_name for s in listings] == ["W. Saliba", "K. Havertz"]
        assert not listings[0].is_key_player
        assert listings[1].is_key_player
        assert listings[1].fixture_date == datetime.fromtimestamp(1725900000, timezone.utc)

    def test_latest_fixture_per_player_wins(self):
        payload = [
            _item(1, "B. Saka", "Attacker", "Hamstring Injury", timestamp=1725900000),
            _item(1, "B. Saka", "Attacker", "Knock", timestamp=1725000000),
        ]
        entries = parse_injury_entries(payload, NOW)
        assert len(entries) == 1
        assert entries[0].severity == "Moderate"

    def test_missing_timestamp_uses_now(self):
        item = _item(1, "B. Saka", "Attacker", "Knock")
        item["fixture"] = {}
        entries = parse_injury_entries([item], NOW)
        assert entries[0].injury_date == NOW


def _status_body(current=0, limit_day=100) -> dict:
    return {"response": {"requests": {"current": current, "limit_day": limit_day}}, "errors": []}


def _injuries_body(items) -> dict:
    return {"response": items, "errors": []}


class FakeApi:
    """Routes /v3/status and /v3/injuries; records every request path."""

    def __init__(self, status=None, injuries_by_team=None, status_code=200, team_status_codes=None):
        self.status = status if status is not None else _status_body()
        self.injuries_by_team = injuries_by_team or {}
        self.status_code = status_code
        self.team_status_codes = team_status_codes or {}
        self.calls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        if request.url.path == "/v3/status":
            return httpx.Response(self.status_code, json=self.status)
        team = int(request.url.params["team"])
        code = self.team_status_codes.get(team, 200)
        if code != 200:
            return httpx.Response(code, json={"message": "error"})
        return httpx.Response(200, json=self.injuries_by_team.get(team, _injuries_body([])))

    @property
    def injury_calls(self) -> int:
        return sum(1 for path in self.calls if path == "/v3/injuries")


def _provider(api: FakeApi, governor: QuotaGovernor = None, policy: QuotaPolicy = None, **kwargs):
    policy = policy or QuotaPolicy(hard_daily_limit=100, operational_cap=90, max_calls_per_day=40, safety_reserve=10)
    options = {"api_key": "test-key", "enabled": True, "stale_hours": 24, "reserve_pl_only": False}
    options.update(kwargs)
    return ApiFootballInjuryProvider(
        governor or QuotaGovernor(policy.hard_daily_limit),
        policy=policy,
        base_url="https://api.test",
        client=mock_client(api),
        **options,
    )


class TestApplyInjuryResponse:
    @pytest.mark.asyncio
    async def test_replaces_active_set(self, session, premier_league):
        _, teams = premier_league
        arsenal = teams["Arsenal"].id
        provider = _provider(FakeApi())

        await provider.apply_injury_response(session, arsenal, FWD_AND_GK, NOW)
        current = await provider.apply_injury_response(
            session, arsenal, [_item(4, "M. Odegaard", "Midfielder", "Ankle Sprain")], NOW
        )
        await session.commit()

        names = (await session.execute(
            select(PlayerInjury.player_name).where(PlayerInjury.team_id == arsenal)
        )).scalars().all()
        assert names == ["M. Odegaard"]
        assert current.total_injured == 1
        assert current.injured_player_names == ["M. Odegaard"]
        assert current.next_sync_due == NOW + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_same_day_snapshot_upserted(self, session, premier_league):
        _, teams = premier_league
        arsenal = teams["Arsenal"].id
        provider = _provider(FakeApi())

        await provider.apply_injury_response(session, arsenal, FWD_AND_GK, NOW)
        await provider.apply_injury_response(session, arsenal, [], NOW + timedelta(hours=3))
        await session.commit()

        snapshots = (await session.execute(
            select(TeamInjurySnapshot).where(TeamInjurySnapshot.team_id == arsenal)
        )).scalars().all()
        assert len(snapshots) == 1
        assert snapshots[0].total_injured == 0

        await provider.apply_injury_response(session, arsenal, FWD_AND_GK, NOW + timedelta(days=1))
        await session.commit()
        snapshot = await provider.get_team_injuries_as_of(session, arsenal, date(2024, 9, 10))
        assert snapshot.total_injured == 0
        snapshot = await provider.get_team_injuries_as_of(session, arsenal, date(2024, 9, 12))
        assert snapshot.injury_impact_score == 83.0
        assert await provider.get_team_injuries_as_of(session, arsenal, date(2024, 9, 9)) is None

    @pytest.mark.asyncio
    async def test_suspension_listings_replaced_with_injuries(self, session, premier_league):
        _, teams = premier_league
        arsenal = teams["Arsenal"].id
        provider = _provider(FakeApi())
        payload = FWD_AND_GK + [_item(3, "W. Saliba", "Defender", "Red Card")]

        await provider.apply_injury_response(session, arsenal, payload, NOW)
        await session.commit()
        rows = (await session.execute(
            select(PlayerSuspension).where(PlayerSuspension.team_id == arsenal)
        )).scalars().all()
        assert [(r.player_name, r.suspension_reason, r.position) for r in rows] == [("W. Saliba", "Red Card", "DEF")]

        await provider.apply_injury_response(session, arsenal, FWD_AND_GK, NOW + timedelta(hours=1))
        await session.commit()
        rows = (await session.execute(
            select(PlayerSuspension).where(PlayerSuspension.team_id == arsenal)
        )).scalars().all()
        assert rows == []


class TestSyncUpcoming:
    @pytest.mark.asyncio
    async def test_syncs_teams_with_upcoming_matches(self, session, upcoming_match):
        api = FakeApi(injuries_by_team={42: _injuries_body(FWD_AND_GK)})
        governor = QuotaGovernor(100)
        provider = _provider(api, governor=governor)

        metrics = await provider.sync_upcoming(session, days_ahead=3)

        assert metrics["teams_selected"] == 2
        assert metrics["teams_synced"] == 2
        assert metrics["calls"] == 2
        assert metrics["stop_reason"] is None
        assert api.calls[0] == "/v3/status"
        assert api.injury_calls == 2
        assert governor.consumed_by("injuries") == 2

        arsenal_id = upcoming_match.home_team_id
        summary = (await session.execute(
            select(TeamInjuries).where(TeamInjuries.team_id == arsenal_id)
        )).scalar_one()
        assert summary.injury_impact_score == 83.0

    @pytest.mark.asyncio
    async def test_fresh_teams_not_refetched(self, session, upcoming_match):
        api = FakeApi()
        provider = _provider(api)
        await provider.sync_upcoming(session, days_ahead=3)
        calls_after_first = len(api.calls)

        metrics = await provider.sync_upcoming(session, days_ahead=3)
        assert metrics["teams_selected"] == 0
        assert len(api.calls) == calls_after_first

    @pytest.mark.asyncio
    async def test_reserve_blocks_every_injury_call(self, session, upcoming_match):
        api = FakeApi(status=_status_body(current=0, limit_day=10))
        policy = QuotaPolicy(hard_daily_limit=10, operational_cap=10, max_calls_per_day=10, safety_reserve=10)
        provider = _provider(api, policy=policy)

        metrics = await provider.sync_upcoming(session, days_ahead=3)

        assert api.calls == ["/v3/status"]
        assert metrics["calls"] == 0
        assert metrics["teams_synced"] == 0
        assert metrics["stop_reason"] == "reserved"

    @pytest.mark.asyncio
    async def test_consumer_cap_stops_run(self, session, upcoming_match):
        api = FakeApi()
        policy = QuotaPolicy(hard_daily_limit=100, operational_cap=90, max_calls_per_day=1, safety_reserve=10)
        metrics = await _provider(api, policy=policy).sync_upcoming(session, days_ahead=3)

        assert api.injury_calls == 1
        assert metrics["teams_synced"] == 1
        assert metrics["stop_reason"] == "consumer_cap"

    @pytest.mark.asyncio
    async def test_failed_status_call_falls_back_to_local_counter(self, session, upcoming_match):
        api = FakeApi(status_code=500)
        metrics = await _provider(api).sync_upcoming(session, days_ahead=3)
        assert metrics["teams_synced"] == 2
        assert api.injury_calls == 2

    @pytest.mark.asyncio
    async def test_team_error_skips_and_continues(self, session, upcoming_match):
        api = FakeApi(team_status_codes={42: 500})
        metrics = await _provider(api).sync_upcoming(session, days_ahead=3)
        assert metrics["calls"] == 2
        assert metrics["teams_synced"] == 1

    @pytest.mark.asyncio
    async def test_api_errors_field_skips_team(self, session, upcoming_match):
        api = FakeApi(injuries_by_team={42: {"response": [], "errors": {"token": "invalid"}}})
        metrics = await _provider(api).sync_upcoming(session, days_ahead=3)
        assert metrics["teams_synced"] == 1

    @pytest.mark.asyncio
    async def test_disabled_makes_no_calls(self, session, upcoming_match):
        api = FakeApi()
        metrics = await _provider(api, enabled=False).sync_upcoming(session, days_ahead=3)
        assert metrics["status"] == "disabled"
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_missing_key_makes_no_calls(self, session, upcoming_match):
        api = FakeApi()
        metrics = await _provider(api, api_key="").sync_upcoming(session, days_ahead=3)
        assert metrics["status"] == "no_api_key"
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_no_upcoming_matches_skips_status_call(self, session, premier_league):
        api = FakeApi()
        metrics = await _provider(api).sync_upcoming(session, days_ahead=3)
        assert metrics["teams_selected"] == 0
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_timed_match_counts_as_upcoming(self, session, premier_league):
        competition, teams = premier_league
        session.add(Match(
            competition_id=competition.id,
            season=2024,
            home_team_id=teams["Manchester City"].id,
            away_team_id=teams["Tottenham Hotspur"].id,
            match_date_utc=utc_now() + timedelta(hours=30),
            status="Timed",
        ))
        await session.commit()

        assert await upcoming_team_ids(session, utc_now(), 3) == {
            teams["Manchester City"].id, teams["Tottenham Hotspur"].id,
        }
        metrics = await _provider(FakeApi()).sync_upcoming(session, days_ahead=3)
        assert metrics["teams_selected"] == 2
        assert metrics["teams_synced"] == 2

    @pytest.mark.asyncio
    async def test_finished_match_is_not_upcoming(self, session, premier_league):
        competition, teams = premier_league
        session.add(Match(
            competition_id=competition.id,
            season=2024,
            home_team_id=teams["Manchester City"].id,
            away_team_id=teams["Tottenham Hotspur"].id,
            match_date_utc=utc_now() + timedelta(hours=30),
            status="Finished",
        ))
        await session.commit()
        assert await upcoming_team_ids(session, utc_now(), 3) == set()

    @pytest.mark.asyncio
    async def test_invalid_window(self, session):
        with pytest.raises(ValueError):
            await _provider(FakeApi()).sync_upcoming(session, days_ahead=0)


class TestReportedRemaining:
    @pytest.mark.asyncio
    async def test_requests_shape(self):
        provider = _provider(FakeApi(status=_status_body(current=30, limit_day=100)))
        assert await provider.get_reported_remaining() == 70

    @pytest.mark.asyncio
    async def test_subscription_shape(self):
        body = {"response": {"subscription": {"requests": {"current": 5, "limit_day": 10}}}}
        assert await _provider(FakeApi(status=body)).get_reported_remaining() == 5

    @pytest.mark.asyncio
    async def test_unparsable(self):
        assert await _provider(FakeApi(status={"response": []})).get_reported_remaining() is None
        assert await _provider(FakeApi(status_code=500)).get_reported_remaining() is None

