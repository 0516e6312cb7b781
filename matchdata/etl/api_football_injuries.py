"""
API-Football injury provider (quota-metered).

Endpoints (API-Sports direct, header x-apisports-key):
    GET /v3/status                          -> account usage (not metered)
    GET /v3/injuries?team={id}&season={yr}  -> injury entries, one per player/fixture

Every /injuries call goes through the shared QuotaGovernor first; the
daily plan is small and most of it belongs to lineup fetches around
kickoff, so the reservation is "upcoming matches in the next 24h plus a
safety reserve". The first refusal ends the run.

Per team the active injury set is replaced wholesale (delete then insert),
TeamInjuries is recomputed and a TeamInjurySnapshot is written for today.
Card bans and disciplinary entries from the same response replace the
team's PlayerSuspension rows (see matchdata.etl.suspensions).

Usage:
    governor = QuotaGovernor(settings.API_FOOTBALL_HARD_DAILY_LIMIT)
    provider = ApiFootballInjuryProvider(governor)
    metrics = await provider.sync_upcoming(session, days_ahead=3)
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import httpx
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from matchdata.config import get_settings
from matchdata.etl.base import ExternalDataProvider, parse_int
from matchdata.etl.competitions import API_FOOTBALL_SEASON_START_MONTH, season_for_date
from matchdata.etl.quota import QuotaGovernor, QuotaPolicy
from matchdata.jobs.health import API_FOOTBALL, mark_data_fresh
from matchdata.models import (
    Competition,
    Match,
    PlayerInjury,
    PlayerSuspension,
    Team,
    TeamInjuries,
    TeamInjurySnapshot,
    utc_now,
)

logger = logging.getLogger(__name__)

CONSUMER = "injuries"

# Match statuses that count as upcoming
UPCOMING_STATUSES = ("Scheduled", "Timed")

SUSPENSION_MARKERS = ("suspension", "suspended", "missing")

# Entries kept as suspension listings (card bans and disciplinary cases)
SUSPENSION_LISTING_MARKERS = ("suspension", "suspended", "card", "disciplinary")

POSITIONS = {
    "goalkeeper": "GK",
    "defender": "DEF",
    "midfielder": "MID",
    "attacker": "FWD",
}
KEY_POSITIONS = ("GK", "FWD")

SEVERE_MARKERS = ("acl", "fracture", "rupture")
MODERATE_MARKERS = ("strain", "sprain", "hamstring")

# Days from injury date to expected return
RETURN_DAYS_DOUBTFUL = 3
RETURN_DAYS = {"Severe": 45, "Moderate": 14, "Minor": 5}
RETURN_DAYS_UNKNOWN = 10


# =============================================================================
# Classification (pure)
# =============================================================================


def is_suspension(reason: Optional[str]) -> bool:
    text = (reason or "").lower()
    return any(marker in text for marker in SUSPENSION_MARKERS)


def is_suspension_listing(reason: Optional[str]) -> bool:
    text = (reason or "").lower()
    return any(marker in text for marker in SUSPENSION_LISTING_MARKERS)


def classify_position(position: Optional[str]) -> str:
    return POSITIONS.get((position or "").strip().lower(), "UNK")


def classify_severity(reason: Optional[str]) -> str:
    text = (reason or "").lower()
    if any(marker in text for marker in SEVERE_MARKERS):
        return "Severe"
    if any(marker in text for marker in MODERATE_MARKERS):
        return "Moderate"
    return "Minor"


def is_doubtful(reason: Optional[str]) -> bool:
    text = (reason or "").lower()
    return "doubt" in text or "question" in text


def estimate_return_date(injury_date: datetime, severity: str, doubtful: bool) -> datetime:
    if doubtful:
        return injury_date + timedelta(days=RETURN_DAYS_DOUBTFUL)
    return injury_date + timedelta(days=RETURN_DAYS.get(severity, RETURN_DAYS_UNKNOWN))


def calculate_impact_score(
    total_injured: int,
    key_players_injured: int,
    long_term_injuries: int,
    doubtful_players: int,
    top_scorer_injured: bool,
    captain_injured: bool,
    first_choice_gk_injured: bool,
) -> float:
    """Weighted injury burden, capped at 100."""
    score = (
        5 * total_injured
        + 15 * key_players_injured
        + 8 * long_term_injuries
        + 2 * doubtful_players
        + (20 if top_scorer_injured else 0)
        + (10 if captain_injured else 0)
        + (15 if first_choice_gk_injured else 0)
    )
    return float(min(100, score))


@dataclass
class InjuryEntry:
    """One classified, non-suspension injury."""

    external_player_id: Optional[int]
    player_name: str
    position: str
    injury_type: str
    severity: str
    injury_date: datetime
    expected_return_date: datetime
    is_doubtful: bool

    @property
    def is_key_player(self) -> bool:
        return self.position in KEY_POSITIONS


@dataclass
class SuspensionEntry:
    """One card ban or disciplinary absence."""

    external_player_id: Optional[int]
    player_name: str
    position: str
    reason: str
    fixture_date: datetime

    @property
    def is_key_player(self) -> bool:
        return self.position in KEY_POSITIONS


def _latest_per_player(payload: list, now: datetime, accept) -> list[tuple[dict, datetime]]:
    """
    (player, fixture date) of the latest accepted item per player.

    The endpoint returns one item per player per fixture; items without a
    fixture timestamp are dated `now`.
    """
    latest: dict = {}
    for item in payload or []:
        if not isinstance(item, dict):
            continue
        player = item.get("player") or {}
        if not accept(player.get("reason")):
            continue

        timestamp = parse_int((item.get("fixture") or {}).get("timestamp"))
        when = datetime.fromtimestamp(timestamp, timezone.utc) if timestamp else now
        player_id = parse_int(player.get("id"))
        key = player_id if player_id is not None else (player.get("name") or "Unknown")

        previous = latest.get(key)
        if previous is not None and previous[1] > when:
            continue
        latest[key] = (player, when)
    return list(latest.values())


def parse_injury_entries(payload: list, now: datetime) -> list[InjuryEntry]:
    """Classify raw /injuries items, dropping suspension-labelled ones."""
    entries = []
    for player, injury_date in _latest_per_player(payload, now, lambda reason: not is_suspension(reason)):
        reason = player.get("reason")
        severity = classify_severity(reason)
        doubtful = is_doubtful(reason)
        entries.append(InjuryEntry(
            external_player_id=parse_int(player.get("id")),
            player_name=player.get("name") or "Unknown",
            position=classify_position(player.get("position")),
            injury_type=reason or "Unknown",
            severity=severity,
            injury_date=injury_date,
            expected_return_date=estimate_return_date(injury_date, severity, doubtful),
            is_doubtful=doubtful,
        ))
    return entries


def parse_suspension_entries(payload: list, now: datetime) -> list[SuspensionEntry]:
    """Card bans and disciplinary absences from the same /injuries items."""
    return [
        SuspensionEntry(
            external_player_id=parse_int(player.get("id")),
            player_name=player.get("name") or "Unknown",
            position=classify_position(player.get("position")),
            reason=player.get("reason") or "Suspended",
            fixture_date=fixture_date,
        )
        for player, fixture_date in _latest_per_player(payload, now, is_suspension_listing)
    ]


def summarize_injuries(entries: list[InjuryEntry]) -> dict:
    """Team-level figures shared by TeamInjuries and TeamInjurySnapshot."""
    key_players = [e for e in entries if e.is_key_player]
    figures = {
        "total_injured": len(entries),
        "key_players_injured": len(key_players),
        "long_term_injuries": sum(1 for e in entries if e.severity == "Severe"),
        "short_term_injuries": sum(1 for e in entries if e.severity == "Minor"),
        "doubtful_players": sum(1 for e in entries if e.is_doubtful),
        "injured_player_names": [e.player_name for e in entries],
        "top_scorer_injured": any(e.position == "FWD" for e in key_players),
        "captain_injured": any("captain" in e.injury_type.lower() for e in entries),
        "first_choice_gk_injured": any(e.position == "GK" for e in entries),
    }
    figures["injury_impact_score"] = calculate_impact_score(
        figures["total_injured"],
        figures["key_players_injured"],
        figures["long_term_injuries"],
        figures["doubtful_players"],
        figures["top_scorer_injured"],
        figures["captain_injured"],
        figures["first_choice_gk_injured"],
    )
    return figures


async def upcoming_team_ids(
    session: AsyncSession,
    now: datetime,
    days_ahead: int,
    competition_code: Optional[str] = None,
) -> set[int]:
    """Home and away teams of Scheduled/Timed matches within days_ahead."""
    query = select(Match.home_team_id, Match.away_team_id).where(
        Match.status.in_(UPCOMING_STATUSES),
        Match.match_date_utc >= now,
        Match.match_date_utc <= now + timedelta(days=days_ahead),
    )
    if competition_code:
        query = query.join(Competition, Competition.id == Match.competition_id).where(
            Competition.code == competition_code.upper()
        )
    team_ids = set()
    for home_id, away_id in (await session.execute(query)).all():
        team_ids.update((home_id, away_id))
    return team_ids


# =============================================================================
# Provider
# =============================================================================


class ApiFootballInjuryProvider(ExternalDataProvider):
    """Injuries for teams with upcoming matches, within the daily quota."""

    SOURCE_ID = "api_football"
    INTEGRATION_NAME = API_FOOTBALL
    LOG_TAG = "[INJURIES]"

    def __init__(
        self,
        governor: QuotaGovernor,
        api_key: Optional[str] = None,
        enabled: Optional[bool] = None,
        policy: Optional[QuotaPolicy] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        stale_hours: Optional[int] = None,
        reserve_pl_only: Optional[bool] = None,
    ):
        settings = get_settings()
        super().__init__(base_url or settings.API_FOOTBALL_BASE_URL, client)
        self.governor = governor
        self.api_key = settings.API_FOOTBALL_KEY if api_key is None else api_key
        self.enabled = settings.INJURIES_ENABLED if enabled is None else enabled
        self.policy = policy or QuotaPolicy(
            hard_daily_limit=settings.API_FOOTBALL_HARD_DAILY_LIMIT,
            operational_cap=settings.API_FOOTBALL_OPERATIONAL_CAP,
            max_calls_per_day=settings.INJURY_MAX_CALLS_PER_DAY,
            safety_reserve=settings.INJURY_SAFETY_RESERVE,
        )
        self.stale_hours = max(1, settings.INJURY_STALE_HOURS if stale_hours is None else stale_hours)
        self.reserve_pl_only = settings.INJURY_RESERVE_PL_ONLY if reserve_pl_only is None else reserve_pl_only
        self.default_days_ahead = settings.INJURY_DAYS_AHEAD

    @property
    def _headers(self) -> dict:
        return {"x-apisports-key": self.api_key}

    async def get_reported_remaining(self) -> Optional[int]:
        """
        Remaining calls today according to /status, or None if unknown.

        Accepts both response.requests and response.subscription.requests
        shapes ({current, limit_day[, remaining]}).
        """
        try:
            response = await self._get(f"{self.base_url}/v3/status", entity="status", headers=self._headers)
            if response is None:
                return None
            body = response.json().get("response")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning(f"{self.LOG_TAG} Status request failed, using local quota counter: {e}")
            return None

        if not isinstance(body, dict):
            logger.warning(f"{self.LOG_TAG} Status request returned no account data")
            return None

        requests = body.get("requests") or (body.get("subscription") or {}).get("requests") or {}
        remaining = parse_int(requests.get("remaining"))
        if remaining is not None:
            return max(remaining, 0)
        current = parse_int(requests.get("current"))
        limit_day = parse_int(requests.get("limit_day"))
        if current is None or limit_day is None:
            logger.warning(f"{self.LOG_TAG} Status response unparsable: {requests}")
            return None
        return max(limit_day - current, 0)

    async def _count_upcoming_matches(self, session: AsyncSession, now: datetime) -> int:
        """Higher-priority (lineup) demand: upcoming matches in the next 24h."""
        query = select(func.count(Match.id)).where(
            Match.status.in_(UPCOMING_STATUSES),
            Match.match_date_utc >= now,
            Match.match_date_utc <= now + timedelta(hours=24),
        )
        if self.reserve_pl_only:
            query = query.join(Competition, Competition.id == Match.competition_id).where(
                Competition.code == "PL"
            )
        return (await session.execute(query)).scalar_one()

    async def select_teams(
        self,
        session: AsyncSession,
        now: datetime,
        days_ahead: int,
        competition_code: Optional[str] = None,
    ) -> list[Team]:
        """Teams playing within days_ahead whose injuries are stale or unknown."""
        team_ids = await upcoming_team_ids(session, now, days_ahead, competition_code)
        if not team_ids:
            return []

        stale_before = now - timedelta(hours=self.stale_hours)
        result = await session.execute(
            select(Team)
            .outerjoin(TeamInjuries, TeamInjuries.team_id == Team.id)
            .where(
                Team.id.in_(team_ids),
                or_(TeamInjuries.id.is_(None), TeamInjuries.last_synced_at < stale_before),
            )
            .order_by(Team.id)
        )
        return list(result.scalars().all())

    async def sync_upcoming(
        self,
        session: AsyncSession,
        days_ahead: Optional[int] = None,
        competition_code: Optional[str] = None,
    ) -> dict:
        """
        Refresh injuries for teams with upcoming matches.

        Args:
            session: Database session.
            days_ahead: Look-ahead window in days (>= 1).
            competition_code: Restrict to one competition.

        Returns:
            Dict with status, teams_selected, teams_synced, calls and stop_reason.
        """
        days_ahead = self.default_days_ahead if days_ahead is None else days_ahead
        if days_ahead < 1:
            raise ValueError(f"days_ahead must be >= 1, got {days_ahead}")

        metrics = {"status": "ok", "teams_selected": 0, "teams_synced": 0, "calls": 0, "stop_reason": None}

        if not self.enabled:
            logger.info(f"{self.LOG_TAG} Injury sync disabled, skipping")
            metrics["status"] = "disabled"
            return metrics
        if not self.api_key:
            logger.info(f"{self.LOG_TAG} No API key configured, skipping")
            metrics["status"] = "no_api_key"
            return metrics
        if self.policy.consumer_cap <= 0:
            logger.info(f"{self.LOG_TAG} Daily injury cap is 0, skipping")
            metrics["status"] = "cap_zero"
            return metrics

        now = utc_now()
        reserved = self.policy.reserved_for(await self._count_upcoming_matches(session, now))

        teams = await self.select_teams(session, now, days_ahead, competition_code)
        metrics["teams_selected"] = len(teams)
        if not teams:
            logger.info(f"{self.LOG_TAG} No stale teams with matches in the next {days_ahead} days")
            return metrics

        reported_remaining = await self.get_reported_remaining()
        season = season_for_date(now, start_month=API_FOOTBALL_SEASON_START_MONTH)

        for team in teams:
            decision = await self.governor.try_acquire(CONSUMER, self.policy, reserved, reported_remaining)
            if not decision.granted:
                metrics["stop_reason"] = decision.value
                logger.info(
                    f"{self.LOG_TAG} Quota stop after {metrics['calls']} calls ({decision.value})"
                )
                break

            metrics["calls"] += 1
            if reported_remaining is not None:
                reported_remaining -= 1

            payload = await self._fetch_team_injuries(team, season)
            if payload is None:
                continue

            await self.apply_injury_response(session, team.id, payload, now)
            metrics["teams_synced"] += 1

        if metrics["teams_synced"]:
            await mark_data_fresh(session, self.INTEGRATION_NAME, now)
            await session.commit()

        logger.info(
            f"{self.LOG_TAG} Synced {metrics['teams_synced']}/{metrics['teams_selected']} teams "
            f"with {metrics['calls']} calls"
        )
        return metrics

    async def _fetch_team_injuries(self, team: Team, season: int) -> Optional[list]:
        """Injury items for one team, or None when this team should be skipped."""
        try:
            response = await self._get(
                f"{self.base_url}/v3/injuries",
                entity="injuries",
                params={"team": team.external_id, "season": season},
                headers=self._headers,
            )
            if response is None:
                return None
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"{self.LOG_TAG} Team {team.external_id}: HTTP {e.response.status_code}, skipping")
            return None
        except (httpx.TransportError, ValueError) as e:
            logger.warning(f"{self.LOG_TAG} Team {team.external_id}: request failed ({e}), skipping")
            return None

        if not isinstance(data, dict):
            logger.warning(f"{self.LOG_TAG} Team {team.external_id}: unexpected body, skipping")
            return None
        if data.get("errors"):
            logger.warning(f"{self.LOG_TAG} Team {team.external_id}: API errors {data['errors']}, skipping")
            return None
        payload = data.get("response")
        return payload if isinstance(payload, list) else []

    async def apply_injury_response(
        self,
        session: AsyncSession,
        team_id: int,
        payload: list,
        now: Optional[datetime] = None,
    ) -> TeamInjuries:
        """
        Replace the team's active injuries and recompute its summary rows.

        Suspension listings in the same payload replace the team's
        PlayerSuspension rows; SuspensionTracker aggregates them.
        """
        now = now or utc_now()
        entries = parse_injury_entries(payload, now)

        await session.execute(delete(PlayerInjury).where(PlayerInjury.team_id == team_id))
        for entry in entries:
            session.add(PlayerInjury(
                team_id=team_id,
                external_player_id=entry.external_player_id,
                player_name=entry.player_name,
                position=entry.position,
                injury_type=entry.injury_type,
                severity=entry.severity,
                injury_date=entry.injury_date,
                expected_return_date=entry.expected_return_date,
                is_doubtful=entry.is_doubtful,
                is_key_player=entry.is_key_player,
                is_active=True,
                last_updated_at=now,
            ))

        await session.execute(delete(PlayerSuspension).where(PlayerSuspension.team_id == team_id))
        for listing in parse_suspension_entries(payload, now):
            session.add(PlayerSuspension(
                team_id=team_id,
                external_player_id=listing.external_player_id,
                player_name=listing.player_name,
                position=listing.position,
                is_key_player=listing.is_key_player,
                suspension_reason=listing.reason,
                fixture_date=listing.fixture_date,
                is_active=True,
                last_updated_at=now,
            ))

        figures = summarize_injuries(entries)

        current = (
            await session.execute(select(TeamInjuries).where(TeamInjuries.team_id == team_id))
        ).scalar_one_or_none()
        if current is None:
            current = TeamInjuries(team_id=team_id)
            session.add(current)
        for name, value in figures.items():
            setattr(current, name, value)
        current.last_synced_at = now
        current.next_sync_due = now + timedelta(hours=self.stale_hours)

        today = now.date()
        snapshot = (
            await session.execute(
                select(TeamInjurySnapshot).where(
                    TeamInjurySnapshot.team_id == team_id,
                    TeamInjurySnapshot.snapshot_date == today,
                )
            )
        ).scalar_one_or_none()
        if snapshot is None:
            snapshot = TeamInjurySnapshot(team_id=team_id, snapshot_date=today, created_at=now)
            session.add(snapshot)
        for name, value in figures.items():
            setattr(snapshot, name, value)

        await session.flush()
        logger.debug(
            f"{self.LOG_TAG} Team {team_id}: {figures['total_injured']} injured, "
            f"impact {figures['injury_impact_score']}"
        )
        return current

    async def sync_latest(self, session: AsyncSession) -> dict:
        return await self.sync_upcoming(session)

    async def get_team_injuries_as_of(
        self,
        session: AsyncSession,
        team_id: int,
        as_of: date,
    ) -> Optional[TeamInjurySnapshot]:
        """Latest daily snapshot on or before as_of."""
        result = await session.execute(
            select(TeamInjurySnapshot)
            .where(TeamInjurySnapshot.team_id == team_id, TeamInjurySnapshot.snapshot_date <= as_of)
            .order_by(TeamInjurySnapshot.snapshot_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
