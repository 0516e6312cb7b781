"""matchdata: external football data sync and backfill pipeline."""

__version__ = "0.1.0"
