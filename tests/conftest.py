"""Shared fixtures: in-memory SQLite database and seeded Premier League data."""

from datetime import timedelta

import httpx
import pytest_asyncio
from sqlmodel import SQLModel

import matchdata.models  # noqa: F401  (registers tables on SQLModel.metadata)
from matchdata.database import build_engine, build_session_factory
from matchdata.models import Competition, CompetitionTeam, Match, Team, utc_now


def mock_client(handler) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by handler(request)."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest_asyncio.fixture
async def engine():
    engine = build_engine("sqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


PL_TEAMS = [
    # (external_id, name, short_name)
    (42, "Arsenal", "Arsenal"),
    (50, "Manchester City", "Man City"),
    (47, "Tottenham Hotspur", "Tottenham"),
    (49, "Chelsea", "Chelsea"),
]


@pytest_asyncio.fixture
async def premier_league(session):
    """PL competition with four teams on the 2024 roster. Returns (competition, teams by name)."""
    competition = Competition(external_id=39, code="PL", name="Premier League")
    session.add(competition)
    teams = {}
    for external_id, name, short_name in PL_TEAMS:
        team = Team(external_id=external_id, name=name, short_name=short_name)
        session.add(team)
        teams[name] = team
    await session.flush()
    for team in teams.values():
        session.add(CompetitionTeam(competition_id=competition.id, team_id=team.id, season=2024))
    await session.commit()
    return competition, teams


@pytest_asyncio.fixture
async def upcoming_match(session, premier_league):
    """Arsenal v Chelsea, scheduled tomorrow."""
    competition, teams = premier_league
    match = Match(
        external_id=1001,
        competition_id=competition.id,
        season=2024,
        home_team_id=teams["Arsenal"].id,
        away_team_id=teams["Chelsea"].id,
        match_date_utc=utc_now() + timedelta(days=1),
        status="Scheduled",
    )
    session.add(match)
    await session.commit()
    return match
