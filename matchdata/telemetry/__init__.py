"""
Prometheus telemetry for provider requests, jobs, quota and backfill coverage.
"""
