"""Tests for Sentry initialization, scrubbing and job capture."""

from unittest.mock import MagicMock

import pytest

from matchdata.config import Settings
from matchdata.telemetry import sentry


@pytest.fixture
def sdk(monkeypatch):
    """Sentry inactive, with init and capture replaced by mocks."""
    monkeypatch.setattr(sentry, "_sentry_initialized", False)
    init = MagicMock()
    capture = MagicMock()
    monkeypatch.setattr(sentry.sentry_sdk, "init", init)
    monkeypatch.setattr(sentry.sentry_sdk, "capture_exception", capture)
    return init, capture


class TestInitSentry:
    def test_no_dsn_stays_inactive(self, sdk):
        init, _ = sdk
        assert not sentry.init_sentry(Settings(SENTRY_DSN=""))
        assert not sentry.is_sentry_enabled()
        init.assert_not_called()

    def test_disabled_flag_wins_over_dsn(self, sdk):
        init, _ = sdk
        assert not sentry.init_sentry(Settings(SENTRY_DSN="https://key@sentry.test/1", SENTRY_ENABLED=False))
        init.assert_not_called()

    def test_init_with_dsn(self, sdk):
        init, _ = sdk
        settings = Settings(SENTRY_DSN="https://key@sentry.test/1", SENTRY_ENVIRONMENT="production")

        assert sentry.init_sentry(settings)
        assert sentry.is_sentry_enabled()
        kwargs = init.call_args.kwargs
        assert kwargs["dsn"] == "https://key@sentry.test/1"
        assert kwargs["environment"] == "production"
        assert kwargs["release"] is None
        assert kwargs["send_default_pii"] is False
        assert kwargs["before_send"] is sentry.scrub_sensitive_data

        # Second call is a no-op
        assert sentry.init_sentry(settings)
        assert init.call_count == 1


class TestScrubbing:
    def test_api_key_header_redacted(self):
        event = {"request": {"headers": {"X-Apisports-Key": "secret", "Accept": "application/json"}}}
        scrubbed = sentry.scrub_sensitive_data(event, {})
        assert scrubbed["request"]["headers"] == {"X-Apisports-Key": "[REDACTED]", "Accept": "application/json"}

    def test_query_string_and_breadcrumbs_redacted(self):
        event = {
            "request": {"query_string": "team=42&key=abc&season=2024"},
            "breadcrumbs": {"values": [{"data": {"url": "https://api.test/v3/injuries?api_key=abc&team=42"}}]},
        }
        scrubbed = sentry.scrub_sensitive_data(event, {})
        assert scrubbed["request"]["query_string"] == "team=42&key=[REDACTED]&season=2024"
        assert scrubbed["breadcrumbs"]["values"][0]["data"]["url"] == (
            "https://api.test/v3/injuries?api_key=[REDACTED]&team=42"
        )

    def test_event_without_request_kept(self):
        assert sentry.scrub_sensitive_data({"message": "boom"}, {})["message"] == "boom"


class TestJobCapture:
    def test_capture_is_noop_when_inactive(self, sdk):
        _, capture = sdk
        sentry.capture_exception(RuntimeError("boom"), job_id="clubelo_sync")
        capture.assert_not_called()

    def test_job_context_reraises_when_inactive(self, sdk):
        _, capture = sdk
        with pytest.raises(RuntimeError):
            with sentry.sentry_job_context("backfill_elo"):
                raise RuntimeError("boom")
        capture.assert_not_called()

    def test_job_context_captures_when_active(self, sdk, monkeypatch):
        _, capture = sdk
        monkeypatch.setattr(sentry, "_sentry_initialized", True)
        error = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            with sentry.sentry_job_context("backfill_league", league="PL"):
                raise error
        capture.assert_called_once_with(error)

    def test_capture_when_active(self, sdk, monkeypatch):
        _, capture = sdk
        monkeypatch.setattr(sentry, "_sentry_initialized", True)
        error = RuntimeError("boom")

        sentry.capture_exception(error, job_id="clubelo_sync", integration="ClubElo")
        capture.assert_called_once_with(error)
