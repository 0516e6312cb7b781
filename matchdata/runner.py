"""Composition root and CLI for the external data pipeline.

Builds the single QuotaGovernor, the providers and the scheduled drivers,
and exposes the backfill entry points. Sentry is initialized when
SENTRY_DSN is set.

Usage:
    # Run every enabled scheduled driver until SIGINT/SIGTERM
    python -m matchdata.runner serve

    # Resumable backfills
    python -m matchdata.runner backfill-league --league PL --from 2022 --to 2024
    python -m matchdata.runner backfill-elo --from 2024-08-01 --to 2024-08-31

    # Create tables
    python -m matchdata.runner init-db
"""

import argparse
import asyncio
import logging
import signal
import time
from datetime import date
from typing import Optional

from prometheus_client import start_http_server

from matchdata.config import Settings, get_settings
from matchdata.database import AsyncSessionLocal, close_db, init_db
from matchdata.etl.api_football_injuries import ApiFootballInjuryProvider
from matchdata.etl.clubelo_provider import ClubEloProvider
from matchdata.etl.football_data_uk import FootballDataUkProvider
from matchdata.etl.quota import QuotaGovernor, QuotaPolicy
from matchdata.etl.suspensions import SuspensionTracker
from matchdata.etl.understat_provider import UnderstatProvider
from matchdata.jobs.backfill import DataQualityReport, ExternalDataBackfill
from matchdata.jobs.scheduled import ScheduledSyncDriver
from matchdata.telemetry.metrics import record_job_run
from matchdata.telemetry.sentry import init_sentry, sentry_job_context

logger = logging.getLogger(__name__)


class SyncRuntime:
    """Owns the process-wide collaborators (one instance per process)."""

    def __init__(self, settings: Optional[Settings] = None, session_factory=None):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or AsyncSessionLocal
        s = self.settings
        self.governor = QuotaGovernor(s.API_FOOTBALL_HARD_DAILY_LIMIT)
        self.elo = ClubEloProvider(base_url=s.CLUBELO_BASE_URL)
        self.understat = UnderstatProvider(
            base_url=s.UNDERSTAT_BASE_URL,
            league_delay_seconds=s.UNDERSTAT_LEAGUE_DELAY_SECONDS,
        )
        self.odds = FootballDataUkProvider(base_url=s.FOOTBALL_DATA_BASE_URL)
        self.injuries = ApiFootballInjuryProvider(
            self.governor,
            api_key=s.API_FOOTBALL_KEY,
            enabled=s.INJURIES_ENABLED,
            policy=QuotaPolicy(
                hard_daily_limit=s.API_FOOTBALL_HARD_DAILY_LIMIT,
                operational_cap=s.API_FOOTBALL_OPERATIONAL_CAP,
                max_calls_per_day=s.INJURY_MAX_CALLS_PER_DAY,
                safety_reserve=s.INJURY_SAFETY_RESERVE,
            ),
            base_url=s.API_FOOTBALL_BASE_URL,
            stale_hours=s.INJURY_STALE_HOURS,
            reserve_pl_only=s.INJURY_RESERVE_PL_ONLY,
        )
        self.suspensions = SuspensionTracker(self.injuries)

    @property
    def providers(self) -> list:
        return [self.elo, self.understat, self.odds, self.injuries]

    def build_drivers(self) -> list[ScheduledSyncDriver]:
        s = self.settings
        return [
            ScheduledSyncDriver(
                "clubelo_sync", self.elo.INTEGRATION_NAME, self.elo.sync_latest,
                s.CLUBELO_SYNC_HOUR_UTC, self.session_factory, enabled=s.CLUBELO_SYNC_ENABLED,
            ),
            ScheduledSyncDriver(
                "understat_sync", self.understat.INTEGRATION_NAME, self.understat.sync_latest,
                s.UNDERSTAT_SYNC_HOUR_UTC, self.session_factory, enabled=s.UNDERSTAT_SYNC_ENABLED,
            ),
            ScheduledSyncDriver(
                "odds_sync", self.odds.INTEGRATION_NAME, self.odds.sync_latest,
                s.FOOTBALL_DATA_SYNC_HOUR_UTC, self.session_factory,
                weekly=True, enabled=s.FOOTBALL_DATA_SYNC_ENABLED,
            ),
            ScheduledSyncDriver(
                "injuries_sync", self.injuries.INTEGRATION_NAME, self.injuries.sync_latest,
                s.INJURIES_SYNC_HOUR_UTC, self.session_factory, enabled=s.INJURIES_ENABLED,
            ),
            ScheduledSyncDriver(
                "suspensions_sync", self.suspensions.INTEGRATION_NAME, self.suspensions.sync_latest,
                s.SUSPENSIONS_SYNC_HOUR_UTC, self.session_factory, enabled=s.INJURIES_ENABLED,
            ),
        ]

    async def close(self) -> None:
        for provider in self.providers:
            await provider.close()

    async def serve(self, stop_event: asyncio.Event) -> None:
        """Run all drivers until stop_event is set."""
        drivers = self.build_drivers()
        tasks = [asyncio.create_task(d.run(stop_event), name=d.name) for d in drivers]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def backfill_league(
        self,
        competition_code: str,
        from_season: int,
        to_season: int,
        include_injuries: bool = True,
    ) -> list[DataQualityReport]:
        started = time.monotonic()
        with sentry_job_context("backfill_league", league=competition_code):
            async with self.session_factory() as session:
                backfill = ExternalDataBackfill(
                    session,
                    understat=self.understat,
                    odds=self.odds,
                    injuries=self.injuries,
                )
                try:
                    reports = await backfill.backfill_league(
                        competition_code, from_season, to_season, include_injuries=include_injuries
                    )
                except Exception:
                    record_job_run("backfill_league", "error", (time.monotonic() - started) * 1000)
                    raise
        record_job_run("backfill_league", "ok", (time.monotonic() - started) * 1000)
        return reports

    async def backfill_elo(self, from_date: date, to_date: date) -> list[DataQualityReport]:
        started = time.monotonic()
        with sentry_job_context("backfill_elo"):
            async with self.session_factory() as session:
                backfill = ExternalDataBackfill(session, elo=self.elo)
                try:
                    reports = await backfill.backfill_elo_global(from_date, to_date)
                except Exception:
                    record_job_run("backfill_elo", "error", (time.monotonic() - started) * 1000)
                    raise
        record_job_run("backfill_elo", "ok", (time.monotonic() - started) * 1000)
        return reports


async def _serve(runtime: SyncRuntime) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    if runtime.settings.METRICS_PORT:
        start_http_server(runtime.settings.METRICS_PORT)
        logger.info(f"[SCHEDULER] Metrics on :{runtime.settings.METRICS_PORT}/metrics")

    await runtime.serve(stop_event)


async def _run(args: argparse.Namespace) -> int:
    runtime = SyncRuntime()
    try:
        if args.command == "init-db":
            await init_db()
        elif args.command == "serve":
            await _serve(runtime)
        elif args.command == "backfill-league":
            reports = await runtime.backfill_league(
                args.league, args.from_season, args.to_season, include_injuries=not args.no_injuries
            )
            _print_reports(reports)
        elif args.command == "backfill-elo":
            reports = await runtime.backfill_elo(
                date.fromisoformat(args.from_date), date.fromisoformat(args.to_date)
            )
            _print_reports(reports)
        return 0
    finally:
        await runtime.close()
        await close_db()


def _print_reports(reports: list[DataQualityReport]) -> None:
    if not reports:
        print("Nothing to backfill (already caught up).")
        return
    print("\n" + "=" * 60)
    print("Backfill data quality")
    print("=" * 60)
    for r in reports:
        print(
            f"  {r.source:<10} {r.scope:<7} {r.segment:<12} "
            f"{r.available:>5}/{r.expected:<5} coverage {r.coverage_percent:5.1f}%"
        )


def main():
    """CLI entrypoint."""
    parser = argparse.ArgumentParser(description="External football data sync and backfill")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")
    sub.add_parser("serve", help="Run scheduled sync drivers")

    league = sub.add_parser("backfill-league", help="Backfill xG, odds and injuries for one league")
    league.add_argument("--league", required=True, help="Competition code, e.g. PL")
    league.add_argument("--from", dest="from_season", type=int, required=True, help="First season start year")
    league.add_argument("--to", dest="to_season", type=int, required=True, help="Last season start year")
    league.add_argument("--no-injuries", action="store_true", help="Skip the injury snapshot")

    elo = sub.add_parser("backfill-elo", help="Backfill ClubElo ratings day by day")
    elo.add_argument("--from", dest="from_date", required=True, help="First day (YYYY-MM-DD)")
    elo.add_argument("--to", dest="to_date", required=True, help="Last day (YYYY-MM-DD)")

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else get_settings().LOG_LEVEL.upper()
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    init_sentry()

    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
