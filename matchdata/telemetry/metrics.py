"""
Prometheus metrics for external data sync.

Labels are restricted to LOW-CARDINALITY values:
- provider:    "clubelo", "understat", "football_data_uk", "api_football"
- entity:      "ratings", "league_page", "odds_csv", "injuries", "status"
- status_code: "200", "404", "500", "0" (0 = no response)
- job:         driver / backfill names ("clubelo_sync", "backfill_league", ...)
- decision:    quota outcomes ("granted", "reserved", "operational_stop", "consumer_cap")
- source:      backfill source ("Understat", "Odds", "Elo", "Injuries")

Never use match ids, team names or URLs as labels; put those in logs.

All helpers are best-effort: a metrics failure is logged and swallowed so it
can never break a sync.
"""

import logging
import time

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)

# =============================================================================
# PROVIDERS
# =============================================================================

provider_requests_total = Counter(
    "matchdata_provider_requests_total",
    "Total requests to external data providers",
    ["provider", "entity", "status_code"],
)

provider_latency_ms = Histogram(
    "matchdata_provider_latency_ms",
    "Provider request latency in milliseconds",
    ["provider", "entity"],
    buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
)

# =============================================================================
# JOBS
# =============================================================================

job_runs_total = Counter(
    "matchdata_job_runs_total",
    "Total job runs by job and status",
    ["job", "status"],  # status: ok, error, cancelled
)

job_duration_ms = Histogram(
    "matchdata_job_duration_ms",
    "Job duration in milliseconds",
    ["job"],
    buckets=[100, 500, 1000, 5000, 10000, 30000, 60000, 120000, 300000, 600000],
)

job_last_success_timestamp = Gauge(
    "matchdata_job_last_success_timestamp",
    "Unix timestamp of last successful job run",
    ["job"],
)

# =============================================================================
# QUOTA / BACKFILL
# =============================================================================

quota_decisions_total = Counter(
    "matchdata_quota_decisions_total",
    "Quota governor decisions",
    ["consumer", "decision"],
)

backfill_coverage_percent = Gauge(
    "matchdata_backfill_coverage_percent",
    "Coverage of the last backfill unit per source",
    ["source"],
)


def record_provider_request(
    provider: str,
    entity: str,
    status_code: int,
    latency_ms: float,
) -> None:
    """Record one provider request."""
    try:
        provider_requests_total.labels(
            provider=provider,
            entity=entity,
            status_code=str(status_code),
        ).inc()
        provider_latency_ms.labels(provider=provider, entity=entity).observe(latency_ms)
    except Exception as e:
        logger.warning(f"Failed to record provider request metric: {e}")


def record_job_run(job: str, status: str, duration_ms: float) -> None:
    """
    Record a job run with status and duration.

    Args:
        job: Job identifier (clubelo_sync, understat_sync, backfill_league, ...)
        status: "ok", "error" or "cancelled"
        duration_ms: Job duration in milliseconds
    """
    try:
        job_runs_total.labels(job=job, status=status).inc()
        if duration_ms > 0:
            job_duration_ms.labels(job=job).observe(duration_ms)
        if status == "ok":
            job_last_success_timestamp.labels(job=job).set(time.time())
    except Exception as e:
        logger.warning(f"Failed to record job run metric: {e}")


def record_quota_decision(consumer: str, decision: str) -> None:
    try:
        quota_decisions_total.labels(consumer=consumer, decision=decision).inc()
    except Exception as e:
        logger.warning(f"Failed to record quota metric: {e}")


def set_backfill_coverage(source: str, coverage_percent: float) -> None:
    try:
        backfill_coverage_percent.labels(source=source).set(coverage_percent)
    except Exception as e:
        logger.warning(f"Failed to set backfill coverage metric: {e}")
