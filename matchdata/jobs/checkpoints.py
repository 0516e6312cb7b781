"""Backfill progress checkpoints.

One row per (source, scope) key in backfill_checkpoints, e.g.
"Backfill:Understat:PL" or "Backfill:Elo:Global". The payload is a tagged
variant: season-based sources record the last completed season,
date-based sources the last completed UTC day. Saving one kind clears the
other field.

Reads never fail: a missing or malformed payload means "no progress yet".
Writes are last-write-wins and commit immediately, so a crash after a unit
loses at most that unit.
"""

import json
import logging
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchdata.models import BackfillCheckpoint, utc_now

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "Global"


def checkpoint_key(source: str, scope: str) -> str:
    """Backfill:{Source}:{Scope}"""
    return f"Backfill:{source}:{scope}"


class CheckpointPayload(BaseModel):
    kind: Literal["season", "date"]
    last_completed_season: Optional[int] = None
    last_completed_date: Optional[date] = None

    @classmethod
    def for_season(cls, season: int) -> "CheckpointPayload":
        return cls(kind="season", last_completed_season=season)

    @classmethod
    def for_date(cls, day: date) -> "CheckpointPayload":
        return cls(kind="date", last_completed_date=day)


class CheckpointStore:
    """Key -> JSON checkpoint persistence on a session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _row(self, key: str) -> Optional[BackfillCheckpoint]:
        result = await self.session.execute(
            select(BackfillCheckpoint).where(BackfillCheckpoint.key == key)
        )
        return result.scalar_one_or_none()

    async def get(self, key: str) -> Optional[dict]:
        """Raw payload for a key, or None."""
        row = await self._row(key)
        if row is None:
            return None
        payload = row.payload
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError:
                logger.warning(f"[BACKFILL] Checkpoint {key} payload is not JSON, ignoring")
                return None
        return payload if isinstance(payload, dict) else None

    async def set(self, key: str, payload: dict) -> None:
        """Overwrite (or create) the payload for a key and commit."""
        row = await self._row(key)
        if row is None:
            row = BackfillCheckpoint(key=key)
            self.session.add(row)
        row.payload = payload
        row.updated_at = utc_now()
        await self.session.commit()

    async def _load(self, key: str) -> Optional[CheckpointPayload]:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return CheckpointPayload.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"[BACKFILL] Checkpoint {key} payload malformed, treating as empty: {e}")
            return None

    async def get_last_season(self, key: str) -> Optional[int]:
        payload = await self._load(key)
        if payload is None or payload.kind != "season":
            return None
        return payload.last_completed_season

    async def get_last_date(self, key: str) -> Optional[date]:
        payload = await self._load(key)
        if payload is None or payload.kind != "date":
            return None
        return payload.last_completed_date

    async def save_season(self, key: str, season: int) -> None:
        await self.set(key, CheckpointPayload.for_season(season).model_dump(mode="json"))
        logger.debug(f"[BACKFILL] Checkpoint {key} -> season {season}")

    async def save_date(self, key: str, day: date) -> None:
        await self.set(key, CheckpointPayload.for_date(day).model_dump(mode="json"))
        logger.debug(f"[BACKFILL] Checkpoint {key} -> {day.isoformat()}")
