"""Backfill orchestration, checkpoints, health and scheduled drivers."""
