"""Base class and parsing helpers shared by the external data providers."""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from matchdata.config import get_settings
from matchdata.telemetry.metrics import record_provider_request

logger = logging.getLogger(__name__)


class ExternalDataProvider(ABC):
    """
    Shared plumbing for one external source.

    Subclasses set SOURCE_ID (metrics label), INTEGRATION_NAME (health row)
    and LOG_TAG, and implement sync_latest().

    HTTP policy, identical for every source:
    - 404 -> warning, None (no data for that period)
    - other non-2xx -> httpx.HTTPStatusError
    - timeouts / connection errors -> the httpx exception propagates
    """

    SOURCE_ID: str = ""
    INTEGRATION_NAME: str = ""
    LOG_TAG: str = ""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            settings = get_settings()
            self._client = httpx.AsyncClient(
                timeout=settings.HTTP_TIMEOUT_SECONDS,
                headers={"User-Agent": settings.HTTP_USER_AGENT},
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get(
        self,
        url: str,
        entity: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> Optional[httpx.Response]:
        """GET with the shared status policy. Returns None on 404."""
        client = await self._get_client()
        started = time.monotonic()
        status_code = 0
        try:
            response = await client.get(url, params=params, headers=headers)
            status_code = response.status_code
        finally:
            record_provider_request(
                self.SOURCE_ID, entity, status_code, (time.monotonic() - started) * 1000
            )

        if response.status_code == 404:
            logger.warning(f"{self.LOG_TAG} No data at {url} (404)")
            return None

        response.raise_for_status()
        return response

    @abstractmethod
    async def sync_latest(self, session: AsyncSession) -> dict:
        """
        Sync the most recent period for this source.

        Args:
            session: Database session.

        Returns:
            Metrics dict for logging and job tracking.
        """
        pass


# =============================================================================
# Lenient field parsers (bad values -> None, never raise)
# =============================================================================


def parse_float(value) -> Optional[float]:
    """Parse float, return None if empty or invalid."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    value = str(value).strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def parse_int(value) -> Optional[int]:
    """Parse int, return None if empty or invalid ("2.0" is accepted)."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    value = str(value).strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        try:
            parsed = float(value)
        except ValueError:
            return None
        return int(parsed) if parsed.is_integer() else None


def parse_date(value: str, formats: tuple = ("%d/%m/%Y", "%d/%m/%y")) -> Optional[datetime]:
    """Parse a day (midnight UTC) trying each format in order."""
    if not value:
        return None
    value = value.strip()
    for fmt in formats:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None
