"""
Sentry integration for error tracking.

Provides:
- Exception capture from scheduled sync passes and backfills
- SQLAlchemy query errors
- Job context tagging

Security:
- The API-Football key header is scrubbed before sending
- Query strings with keys or tokens are redacted
- PII is disabled

Everything here is a no-op until init_sentry() succeeds, which needs
SENTRY_DSN to be set.
"""

import logging
import re
from contextlib import contextmanager
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from matchdata.config import Settings, get_settings

logger = logging.getLogger(__name__)

_sentry_initialized = False

SENSITIVE_HEADERS = ("x-apisports-key", "authorization", "cookie", "set-cookie")

_SENSITIVE_QUERY = re.compile(r"(?i)(token|api_key|apikey|key|secret|password)=([^&]*)")


def scrub_sensitive_data(event: dict, hint: dict) -> Optional[dict]:
    """Redact credentials from Sentry events before sending."""
    try:
        request = event.get("request") or {}

        headers = request.get("headers") or {}
        for name in list(headers):
            if name.lower() in SENSITIVE_HEADERS:
                headers[name] = "[REDACTED]"
        request["headers"] = headers

        query_string = request.get("query_string")
        if isinstance(query_string, str) and query_string:
            request["query_string"] = _SENSITIVE_QUERY.sub(r"\1=[REDACTED]", query_string)

        event["request"] = request

        for breadcrumb in (event.get("breadcrumbs") or {}).get("values") or []:
            url = (breadcrumb.get("data") or {}).get("url")
            if isinstance(url, str):
                breadcrumb["data"]["url"] = _SENSITIVE_QUERY.sub(r"\1=[REDACTED]", url)
    except Exception as e:
        # Never drop an event because scrubbing failed
        logger.warning(f"Sentry scrubbing error (continuing): {e}")

    return event


def init_sentry(settings: Optional[Settings] = None) -> bool:
    """
    Initialize the Sentry SDK if SENTRY_DSN is configured.

    Returns:
        True if Sentry is active after the call, False otherwise.
    """
    global _sentry_initialized

    if _sentry_initialized:
        logger.debug("Sentry already initialized, skipping")
        return True

    settings = settings or get_settings()

    if not settings.SENTRY_ENABLED:
        logger.info("Sentry disabled via SENTRY_ENABLED=false")
        return False

    if not settings.SENTRY_DSN:
        logger.info("Sentry not configured (SENTRY_DSN not set)")
        return False

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        release=settings.SENTRY_RELEASE or None,
        integrations=[
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.INFO,         # Breadcrumbs
                event_level=logging.ERROR,  # Events
            ),
        ],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        send_default_pii=False,
        before_send=scrub_sensitive_data,
        ignore_errors=[KeyboardInterrupt, SystemExit],
    )

    _sentry_initialized = True
    logger.info(
        f"Sentry initialized: env={settings.SENTRY_ENVIRONMENT}, "
        f"traces_sample_rate={settings.SENTRY_TRACES_SAMPLE_RATE}"
    )
    return True


def is_sentry_enabled() -> bool:
    return _sentry_initialized


@contextmanager
def sentry_job_context(job_id: str, **extra_tags):
    """
    Tag everything inside the block with the job and capture escaping exceptions.

    Usage:
        with sentry_job_context("backfill_league", league="PL"):
            await backfill.backfill_league("PL", 2022, 2024)
    """
    if not _sentry_initialized:
        yield None
        return

    with sentry_sdk.new_scope() as scope:
        scope.set_tag("job_id", job_id)
        scope.set_context("job", {"job_id": job_id, **extra_tags})
        for key, value in extra_tags.items():
            if value is not None:
                scope.set_tag(key, str(value))
        try:
            yield scope
        except Exception as e:
            sentry_sdk.capture_exception(e)
            raise


def capture_exception(exception: Exception, job_id: Optional[str] = None, **extra_context) -> None:
    """
    Capture an exception with optional job context.

    Use this in job except blocks where the exception is handled locally.
    """
    if not _sentry_initialized:
        return

    with sentry_sdk.new_scope() as scope:
        if job_id:
            scope.set_tag("job_id", job_id)
        for key, value in extra_context.items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
