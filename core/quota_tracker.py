"""
Durable per-identity quota tracking against tier ceilings.

Usage is stored as one record per admitted job, plus top-up records when a job
turns out longer than its admission reservation. Only admission records count
as requests. Daily request counts are taken
from the current UTC day and minute totals from the current calendar month, so
counters only ever grow within a window and reset at the window boundary.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select

from .database import DatabaseManager, UsageRecord
from .models import AccuracyMode, Tier

logger = logging.getLogger(__name__)

UNLIMITED = float("inf")


@dataclass(frozen=True)
class TierQuota:
    """Ceilings for one tier. UNLIMITED disables a check."""
    daily_requests: float
    monthly_minutes: float
    high_accuracy_minutes: float
    max_file_minutes: float

    @property
    def is_unlimited(self) -> bool:
        return (
            self.daily_requests == UNLIMITED
            and self.monthly_minutes == UNLIMITED
            and self.high_accuracy_minutes == UNLIMITED
        )


TIER_QUOTAS: Dict[Tier, TierQuota] = {
    Tier.FREE: TierQuota(daily_requests=UNLIMITED, monthly_minutes=30, high_accuracy_minutes=0, max_file_minutes=15),
    Tier.BASIC: TierQuota(daily_requests=50, monthly_minutes=500, high_accuracy_minutes=0, max_file_minutes=120),
    Tier.PRO: TierQuota(daily_requests=200, monthly_minutes=2000, high_accuracy_minutes=200, max_file_minutes=240),
    Tier.PREMIUM: TierQuota(
        daily_requests=UNLIMITED, monthly_minutes=UNLIMITED,
        high_accuracy_minutes=UNLIMITED, max_file_minutes=UNLIMITED,
    ),
}


@dataclass
class UsageSnapshot:
    daily_requests: int = 0
    monthly_minutes: float = 0.0
    high_accuracy_minutes: float = 0.0


@dataclass
class QuotaCheck:
    """
    Result of a quota check.

    ``remaining`` is always populated. A value of None means unlimited.
    """
    allowed: bool
    tier: Tier
    remaining: Dict[str, Optional[float]] = field(default_factory=dict)
    reason: Optional[str] = None


def _window_starts(now: datetime) -> Tuple[datetime, datetime]:
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    month = day.replace(day=1)
    return day, month


class UsageStore(ABC):
    """Durable usage storage."""

    @abstractmethod
    async def get_usage(self, identity_key: str, day_start: datetime, month_start: datetime) -> UsageSnapshot:
        pass

    @abstractmethod
    async def add_usage(
        self, identity_key: str, minutes: float, model_type: str, at: datetime, counts_request: bool = True
    ) -> None:
        pass


class InMemoryUsageStore(UsageStore):
    """Process-local usage store for tests and single-process runs."""

    def __init__(self):
        self._records: Dict[str, List[Tuple[datetime, float, str, bool]]] = defaultdict(list)

    async def get_usage(self, identity_key: str, day_start: datetime, month_start: datetime) -> UsageSnapshot:
        snapshot = UsageSnapshot()
        for at, minutes, model_type, counts_request in self._records.get(identity_key, []):
            if at >= day_start and counts_request:
                snapshot.daily_requests += 1
            if at >= month_start:
                snapshot.monthly_minutes += minutes
                if model_type == AccuracyMode.HIGH.value:
                    snapshot.high_accuracy_minutes += minutes
        return snapshot

    async def add_usage(
        self, identity_key: str, minutes: float, model_type: str, at: datetime, counts_request: bool = True
    ) -> None:
        self._records[identity_key].append((at, minutes, model_type, counts_request))


class SqlUsageStore(UsageStore):
    """Usage records in the relational store, safe for multi-process access."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def get_usage(self, identity_key: str, day_start: datetime, month_start: datetime) -> UsageSnapshot:
        async with self.db_manager.get_session() as session:
            daily = await session.scalar(
                select(func.count(UsageRecord.id)).where(
                    UsageRecord.identity_key == identity_key,
                    UsageRecord.created_at >= day_start,
                    UsageRecord.counts_request.is_(True),
                )
            )
            monthly = await session.scalar(
                select(func.coalesce(func.sum(UsageRecord.minutes), 0.0)).where(
                    UsageRecord.identity_key == identity_key,
                    UsageRecord.created_at >= month_start,
                )
            )
            high = await session.scalar(
                select(func.coalesce(func.sum(UsageRecord.minutes), 0.0)).where(
                    UsageRecord.identity_key == identity_key,
                    UsageRecord.created_at >= month_start,
                    UsageRecord.model_type == AccuracyMode.HIGH.value,
                )
            )
        return UsageSnapshot(
            daily_requests=int(daily or 0),
            monthly_minutes=float(monthly or 0.0),
            high_accuracy_minutes=float(high or 0.0),
        )

    async def add_usage(
        self, identity_key: str, minutes: float, model_type: str, at: datetime, counts_request: bool = True
    ) -> None:
        async with self.db_manager.get_session() as session:
            session.add(UsageRecord(
                identity_key=identity_key,
                minutes=minutes,
                model_type=model_type,
                counts_request=counts_request,
                created_at=at,
            ))


def _remaining(limit: float, used: float) -> Optional[float]:
    if limit == UNLIMITED:
        return None
    return max(0.0, limit - used)


class QuotaTracker:
    """Compares usage against tier ceilings and records admitted usage."""

    def __init__(
        self,
        store: Optional[UsageStore] = None,
        quotas: Optional[Dict[Tier, TierQuota]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store or InMemoryUsageStore()
        self.quotas = quotas or TIER_QUOTAS
        self._clock = clock
        self._lock = asyncio.Lock()

    def quota_for(self, tier: Tier) -> TierQuota:
        return self.quotas.get(tier, self.quotas[Tier.FREE])

    async def check(
        self,
        identity_key: str,
        tier: Tier,
        requested_minutes: float,
        model_type: str = AccuracyMode.STANDARD.value,
        count_request: bool = True,
    ) -> QuotaCheck:
        """
        Check whether a job of the given length fits the identity's quota.

        Order: unlimited short-circuit, daily requests, monthly minutes,
        high-accuracy minutes.

        Args:
            identity_key: Identity key
            tier: Identity tier
            requested_minutes: Minutes the job will consume
            model_type: 'standard' or 'high'
            count_request: Apply the daily request ceiling; off for top-ups of
                an already admitted job

        Returns:
            QuotaCheck with remaining balances whether allowed or not
        """
        quota = self.quota_for(tier)
        if quota.is_unlimited:
            return QuotaCheck(
                allowed=True,
                tier=tier,
                remaining={"daily_requests": None, "monthly_minutes": None, "high_accuracy_minutes": None},
            )

        day_start, month_start = _window_starts(self._clock())
        usage = await self.store.get_usage(identity_key, day_start, month_start)
        remaining = {
            "daily_requests": _remaining(quota.daily_requests, usage.daily_requests),
            "monthly_minutes": _remaining(quota.monthly_minutes, usage.monthly_minutes),
            "high_accuracy_minutes": _remaining(quota.high_accuracy_minutes, usage.high_accuracy_minutes),
        }

        if count_request and usage.daily_requests >= quota.daily_requests:
            return QuotaCheck(False, tier, remaining, "daily_request_limit")

        if usage.monthly_minutes + requested_minutes > quota.monthly_minutes:
            return QuotaCheck(False, tier, remaining, "monthly_minutes_exceeded")

        if model_type == AccuracyMode.HIGH.value and (
            usage.high_accuracy_minutes + requested_minutes > quota.high_accuracy_minutes
        ):
            return QuotaCheck(False, tier, remaining, "high_accuracy_minutes_exceeded")

        return QuotaCheck(True, tier, remaining)

    async def record_usage(
        self,
        identity_key: str,
        minutes: float,
        model_type: str = AccuracyMode.STANDARD.value,
        counts_request: bool = True,
    ) -> None:
        await self.store.add_usage(identity_key, minutes, model_type, self._clock(), counts_request)
        logger.debug(f"Recorded {minutes:.2f} {model_type} minutes for {identity_key}")

    async def check_and_record(
        self,
        identity_key: str,
        tier: Tier,
        requested_minutes: float,
        model_type: str = AccuracyMode.STANDARD.value,
    ) -> QuotaCheck:
        """Check and, when allowed, record usage in one step for this process."""
        async with self._lock:
            result = await self.check(identity_key, tier, requested_minutes, model_type)
            if result.allowed:
                await self.record_usage(identity_key, requested_minutes, model_type)
                for key, value in (("daily_requests", 1), ("monthly_minutes", requested_minutes)):
                    if result.remaining.get(key) is not None:
                        result.remaining[key] = max(0.0, result.remaining[key] - value)
                if model_type == AccuracyMode.HIGH.value and result.remaining.get("high_accuracy_minutes") is not None:
                    result.remaining["high_accuracy_minutes"] = max(
                        0.0, result.remaining["high_accuracy_minutes"] - requested_minutes
                    )
            return result

    async def charge_additional(
        self,
        identity_key: str,
        tier: Tier,
        minutes: float,
        model_type: str = AccuracyMode.STANDARD.value,
    ) -> QuotaCheck:
        """
        Top up the usage of an admitted job whose real length exceeds its reservation.

        The extra minutes must fit the monthly and high-accuracy ceilings; the
        daily request ceiling is not applied and the top-up is not counted as
        a request. Nothing is recorded when the check fails.
        """
        async with self._lock:
            result = await self.check(identity_key, tier, minutes, model_type, count_request=False)
            if result.allowed:
                await self.record_usage(identity_key, minutes, model_type, counts_request=False)
                keys = ["monthly_minutes"]
                if model_type == AccuracyMode.HIGH.value:
                    keys.append("high_accuracy_minutes")
                for key in keys:
                    if result.remaining.get(key) is not None:
                        result.remaining[key] = max(0.0, result.remaining[key] - minutes)
            return result
