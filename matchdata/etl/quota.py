"""
Daily request budget for metered providers (API-Football).

The governor is a single stateful object per process, created by the
composition root and handed to every consumer. It tracks calls made today
(reset lazily on the first call after the UTC date changes) and decides,
under one asyncio.Lock, whether a consumer may make one more call.

Before each call:
    remaining = min(provider-reported remaining, hard limit - consumed today)
    refuse if remaining <= reserved_for_higher_priority   (lineup headroom)
    refuse if remaining <= hard limit - operational cap   (operational stop)
    refuse if the consumer's own daily cap is spent
    otherwise consume one slot

A refusal means the caller stops for the rest of its run.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Optional

from matchdata.telemetry.metrics import record_quota_decision

logger = logging.getLogger(__name__)


class QuotaDecision(str, Enum):
    GRANTED = "granted"
    RESERVED = "reserved"
    OPERATIONAL_STOP = "operational_stop"
    CONSUMER_CAP = "consumer_cap"

    @property
    def granted(self) -> bool:
        return self is QuotaDecision.GRANTED


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


@dataclass
class QuotaPolicy:
    """Budget rules for one consumer."""

    hard_daily_limit: int
    operational_cap: int
    max_calls_per_day: int
    safety_reserve: int = 0

    @property
    def effective_cap(self) -> int:
        return _clamp(self.operational_cap, 0, max(self.hard_daily_limit, 0))

    @property
    def operational_stop(self) -> int:
        """Remaining budget at or below which nobody may call."""
        return self.hard_daily_limit - self.effective_cap

    @property
    def consumer_cap(self) -> int:
        return _clamp(self.max_calls_per_day, 0, self.effective_cap)

    def reserved_for(self, higher_priority_operations: int) -> int:
        """Headroom kept for higher-priority callers plus the safety reserve."""
        return max(higher_priority_operations, 0) + max(self.safety_reserve, 0)


class QuotaGovernor:
    """
    Process-wide daily call counter for one provider account.

    Args:
        hard_daily_limit: Provider's hard per-day limit.
        clock: Returns the current aware UTC datetime (tests inject one).
    """

    def __init__(
        self,
        hard_daily_limit: int,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.hard_daily_limit = hard_daily_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()
        self._day: Optional[date] = None
        self._consumed = 0
        self._consumed_by: dict[str, int] = {}

    def _roll_day(self) -> None:
        today = self._clock().date()
        if self._day != today:
            if self._day is not None:
                logger.info(f"[QUOTA] New UTC day {today}, resetting counters (was {self._consumed})")
            self._day = today
            self._consumed = 0
            self._consumed_by = {}

    def reset(self) -> None:
        self._day = None
        self._consumed = 0
        self._consumed_by = {}

    @property
    def consumed_today(self) -> int:
        self._roll_day()
        return self._consumed

    def consumed_by(self, consumer: str) -> int:
        self._roll_day()
        return self._consumed_by.get(consumer, 0)

    @property
    def local_remaining(self) -> int:
        return max(self.hard_daily_limit - self.consumed_today, 0)

    def remaining(self, reported_remaining: Optional[int] = None) -> int:
        """Effective remaining budget (provider report bounded by the local count)."""
        local = self.local_remaining
        if reported_remaining is None:
            return local
        return min(reported_remaining, local)

    async def try_acquire(
        self,
        consumer: str,
        policy: QuotaPolicy,
        reserved_for_higher_priority: int,
        reported_remaining: Optional[int] = None,
    ) -> QuotaDecision:
        """
        Consume one call slot if the policy allows it.

        Args:
            consumer: Consumer name (per-consumer cap key).
            policy: Budget rules for this consumer.
            reserved_for_higher_priority: Headroom that must stay untouched
                (already includes the safety reserve).
            reported_remaining: Remaining quota as last reported by the
                provider, or None when the status request failed.

        Returns:
            QuotaDecision; only GRANTED consumed a slot.
        """
        async with self._lock:
            remaining = self.remaining(reported_remaining)

            if remaining <= reserved_for_higher_priority:
                decision = QuotaDecision.RESERVED
            elif remaining <= policy.operational_stop:
                decision = QuotaDecision.OPERATIONAL_STOP
            elif self._consumed_by.get(consumer, 0) >= policy.consumer_cap:
                decision = QuotaDecision.CONSUMER_CAP
            else:
                self._consumed += 1
                self._consumed_by[consumer] = self._consumed_by.get(consumer, 0) + 1
                decision = QuotaDecision.GRANTED

        record_quota_decision(consumer, decision.value)
        if not decision.granted:
            logger.info(
                f"[QUOTA] {consumer} refused ({decision.value}): remaining={remaining}, "
                f"reserved={reserved_for_higher_priority}, stop_at={policy.operational_stop}, "
                f"consumer_used={self._consumed_by.get(consumer, 0)}/{policy.consumer_cap}"
            )
        return decision
