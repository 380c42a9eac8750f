"""
Priority job queue with anti-starvation aging and per-tier concurrency.

Entries are ordered by tier weight plus job-type weight plus an age boost that
grows with waiting time. Each drain re-scores the pending entries; the highest
score wins and ties go to the earliest submission. Entries that waited past the
configured maximum are drained first, oldest first.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .error_handling import QueueFullError
from .models import JobType, Tier

logger = logging.getLogger(__name__)

TIER_WEIGHTS: Dict[Tier, float] = {
    Tier.FREE: 0,
    Tier.BASIC: 5,
    Tier.PRO: 10,
    Tier.PREMIUM: 15,
}

JOB_TYPE_WEIGHTS: Dict[JobType, float] = {
    JobType.TRANSCRIPTION: 0,
    JobType.CHAPTER_GENERATION: -1,
    JobType.SUMMARY: -2,
}

AGE_BOOST_PER_MINUTE = 0.1
MAX_AGE_BOOST = 5.0
SECONDS_PER_JOB_ESTIMATE = 10

DEFAULT_TIER_CONCURRENCY: Dict[Tier, int] = {
    Tier.FREE: 1,
    Tier.BASIC: 2,
    Tier.PRO: 4,
    Tier.PREMIUM: 8,
}


def base_priority(tier: Tier, job_type: JobType) -> float:
    return TIER_WEIGHTS[tier] + JOB_TYPE_WEIGHTS[job_type]


def age_boost(waiting_seconds: float) -> float:
    """Bounded bonus proportional to waiting time."""
    return min(max(0.0, waiting_seconds) / 60.0 * AGE_BOOST_PER_MINUTE, MAX_AGE_BOOST)


@dataclass
class QueueEntry:
    """A pending job. Exists only while the job is waiting to be dispatched."""
    job_id: str
    owner: str
    tier: Tier
    job_type: JobType
    priority: float
    created_at: float
    payload: Dict[str, Any] = field(default_factory=dict)

    def score(self, now: float) -> float:
        return self.priority + age_boost(now - self.created_at)


@dataclass
class QueueStats:
    """Queue statistics data structure."""
    total_pending: int
    by_tier: Dict[str, int]
    oldest_pending_age_seconds: Optional[float]


class QueueStore(ABC):
    """Storage for pending entries, swappable for a shared backend."""

    @abstractmethod
    async def add(self, entry: QueueEntry) -> None:
        pass

    @abstractmethod
    async def remove(self, job_id: str) -> Optional[QueueEntry]:
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[QueueEntry]:
        pass

    @abstractmethod
    async def all(self) -> List[QueueEntry]:
        pass


class InMemoryQueueStore(QueueStore):
    """Process-local pending entries. Reset on restart."""

    def __init__(self):
        self._entries: Dict[str, QueueEntry] = {}

    async def add(self, entry: QueueEntry) -> None:
        self._entries[entry.job_id] = entry

    async def remove(self, job_id: str) -> Optional[QueueEntry]:
        return self._entries.pop(job_id, None)

    async def get(self, job_id: str) -> Optional[QueueEntry]:
        return self._entries.get(job_id)

    async def all(self) -> List[QueueEntry]:
        return list(self._entries.values())


class PriorityJobQueue:
    """
    Priority queue over pending jobs.

    Features:
    - Tier and job-type weighted ordering
    - Age boost re-computed on every drain
    - Hard maximum wait after which entries jump the line
    - Owner-only cancellation of pending entries
    - Position and wait estimates for callers
    """

    def __init__(
        self,
        store: Optional[QueueStore] = None,
        max_pending: int = 500,
        max_wait_seconds: float = 1800.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store or InMemoryQueueStore()
        self.max_pending = max_pending
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._available = asyncio.Event()

    def _ordered(self, entries: List[QueueEntry], now: float) -> List[QueueEntry]:
        overdue = sorted(
            (e for e in entries if now - e.created_at >= self.max_wait_seconds),
            key=lambda e: e.created_at,
        )
        rest = sorted(
            (e for e in entries if now - e.created_at < self.max_wait_seconds),
            key=lambda e: (-e.score(now), e.created_at),
        )
        return overdue + rest

    async def enqueue(
        self,
        job_id: str,
        owner: str,
        tier: Tier,
        job_type: JobType = JobType.TRANSCRIPTION,
        payload: Optional[Dict[str, Any]] = None,
        created_at: Optional[float] = None,
    ) -> str:
        """
        Add a job to the pending queue.

        Args:
            job_id: Job identifier
            owner: Identity key of the submitter
            tier: Submitter tier
            job_type: Kind of work requested
            payload: Extra data handed to the worker on dequeue
            created_at: Original submission time, for jobs recovered after a restart

        Returns:
            The job id

        Raises:
            QueueFullError: If the queue is at capacity
        """
        async with self._lock:
            pending = await self.store.all()
            if len(pending) >= self.max_pending:
                raise QueueFullError(f"Queue is full ({self.max_pending} pending jobs)")
            entry = QueueEntry(
                job_id=job_id,
                owner=owner,
                tier=tier,
                job_type=job_type,
                priority=base_priority(tier, job_type),
                created_at=created_at if created_at is not None else self._clock(),
                payload=payload or {},
            )
            await self.store.add(entry)
            self._available.set()

        logger.info(f"Enqueued job {job_id} (tier={tier.value}, type={job_type.value}, priority={entry.priority})")
        return job_id

    async def dequeue(self) -> Optional[QueueEntry]:
        """Remove and return the highest scoring entry, or None when empty."""
        async with self._lock:
            entries = await self.store.all()
            if not entries:
                self._available.clear()
                return None
            now = self._clock()
            entry = self._ordered(entries, now)[0]
            await self.store.remove(entry.job_id)
            if len(entries) == 1:
                self._available.clear()

        logger.debug(f"Dequeued job {entry.job_id} after {now - entry.created_at:.1f}s")
        return entry

    async def wait_for_entry(self, timeout: Optional[float] = None) -> bool:
        """Suspend until something is enqueued. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._available.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def position_of(self, job_id: str) -> int:
        """1-based position in drain order, -1 if not pending."""
        entries = await self.store.all()
        ordered = self._ordered(entries, self._clock())
        for index, entry in enumerate(ordered):
            if entry.job_id == job_id:
                return index + 1
        return -1

    async def estimated_wait_seconds(self, job_id: str) -> Optional[int]:
        position = await self.position_of(job_id)
        if position < 0:
            return None
        return (position - 1) * SECONDS_PER_JOB_ESTIMATE

    async def cancel(self, job_id: str, owner: str) -> bool:
        """
        Remove a pending job on behalf of its owner.

        Returns:
            True if the entry was pending and owned by ``owner``
        """
        async with self._lock:
            entry = await self.store.get(job_id)
            if entry is None or entry.owner != owner:
                return False
            await self.store.remove(job_id)
        logger.info(f"Cancelled pending job {job_id}")
        return True

    async def get_stats(self) -> QueueStats:
        entries = await self.store.all()
        now = self._clock()
        by_tier = {tier.value: 0 for tier in Tier}
        for entry in entries:
            by_tier[entry.tier.value] += 1
        oldest = max((now - e.created_at for e in entries), default=None)
        return QueueStats(total_pending=len(entries), by_tier=by_tier, oldest_pending_age_seconds=oldest)


class TierConcurrencyLimiter:
    """Counting semaphore per tier, acquired before dispatch."""

    def __init__(self, limits: Optional[Dict[Tier, int]] = None):
        self.limits = dict(DEFAULT_TIER_CONCURRENCY)
        if limits:
            self.limits.update(limits)
        self._semaphores = {tier: asyncio.Semaphore(n) for tier, n in self.limits.items()}
        self._active = {tier: 0 for tier in self.limits}

    @asynccontextmanager
    async def slot(self, tier: Tier):
        """Hold one concurrency slot for ``tier``; waits asynchronously when full."""
        semaphore = self._semaphores[tier]
        async with semaphore:
            self._active[tier] += 1
            try:
                yield
            finally:
                self._active[tier] -= 1

    def active(self, tier: Tier) -> int:
        return self._active[tier]

    def available(self, tier: Tier) -> int:
        return self.limits[tier] - self._active[tier]
