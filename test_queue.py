#!/usr/bin/env python3
"""
Test Suite for the Priority Job Queue

Tests tier/type ordering, age boost, the maximum wait bound, cancellation,
capacity and per-tier concurrency slots.
"""

import asyncio
import random

import pytest

from core.error_handling import QueueFullError
from core.models import JobType, Tier
from core.queue import (
    MAX_AGE_BOOST,
    PriorityJobQueue,
    TierConcurrencyLimiter,
    age_boost,
    base_priority,
)

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now


async def drain(queue: PriorityJobQueue):
    order = []
    while True:
        entry = await queue.dequeue()
        if entry is None:
            return order
        order.append(entry.job_id)


class TestPriorities:

    def test_base_priority(self):
        assert base_priority(Tier.PREMIUM, JobType.TRANSCRIPTION) == 15
        assert base_priority(Tier.PRO, JobType.SUMMARY) == 8
        assert base_priority(Tier.FREE, JobType.CHAPTER_GENERATION) == -1

    def test_age_boost_is_bounded(self):
        assert age_boost(0) == 0
        assert age_boost(600) == pytest.approx(1.0)
        assert age_boost(10 * 3600) == MAX_AGE_BOOST
        assert age_boost(-30) == 0


class TestPriorityJobQueue:

    def test_higher_tier_first_then_fifo(self):
        clock = FakeClock()
        queue = PriorityJobQueue(clock=clock)

        async def scenario():
            await queue.enqueue("free-1", "a", Tier.FREE)
            await queue.enqueue("pro-1", "b", Tier.PRO)
            await queue.enqueue("free-2", "c", Tier.FREE)
            await queue.enqueue("pro-2", "d", Tier.PRO)
            return await drain(queue)

        assert asyncio.run(scenario()) == ["pro-1", "pro-2", "free-1", "free-2"]

    def test_job_type_weight(self):
        queue = PriorityJobQueue(clock=FakeClock())

        async def scenario():
            await queue.enqueue("summary", "a", Tier.BASIC, JobType.SUMMARY)
            await queue.enqueue("chapters", "a", Tier.BASIC, JobType.CHAPTER_GENERATION)
            await queue.enqueue("transcript", "a", Tier.BASIC, JobType.TRANSCRIPTION)
            return await drain(queue)

        assert asyncio.run(scenario()) == ["transcript", "chapters", "summary"]

    def test_age_boost_lets_old_jobs_catch_up(self):
        clock = FakeClock()
        queue = PriorityJobQueue(max_wait_seconds=7200, clock=clock)

        async def scenario():
            await queue.enqueue("old-free", "a", Tier.FREE, created_at=T0 - 3600)
            await queue.enqueue("new-basic", "b", Tier.BASIC)
            await queue.enqueue("new-pro", "c", Tier.PRO)
            return await drain(queue)

        # Boost caps at 5, tying the free job with basic; the earlier submission wins the tie
        assert asyncio.run(scenario()) == ["new-pro", "old-free", "new-basic"]

    def test_max_wait_bound_jumps_the_line(self):
        queue = PriorityJobQueue(max_wait_seconds=600, clock=FakeClock())

        async def scenario():
            await queue.enqueue("premium", "a", Tier.PREMIUM)
            await queue.enqueue("starved", "b", Tier.FREE, JobType.SUMMARY, created_at=T0 - 700)
            return await drain(queue)

        assert asyncio.run(scenario()) == ["starved", "premium"]

    @pytest.mark.parametrize("seed", [3, 11, 99])
    def test_dequeue_scores_never_increase(self, seed):
        rng = random.Random(seed)
        clock = FakeClock()
        queue = PriorityJobQueue(max_wait_seconds=10 ** 9, clock=clock)

        async def scenario():
            for i in range(40):
                await queue.enqueue(
                    f"job-{i}", "owner",
                    rng.choice(list(Tier)),
                    rng.choice(list(JobType)),
                    created_at=T0 - rng.uniform(0, 7200),
                )
            scores = []
            while True:
                entry = await queue.dequeue()
                if entry is None:
                    return scores
                scores.append(entry.score(clock.now))

        scores = asyncio.run(scenario())
        assert len(scores) == 40
        assert all(a >= b for a, b in zip(scores, scores[1:]))

    def test_position_and_estimated_wait(self):
        queue = PriorityJobQueue(clock=FakeClock())

        async def scenario():
            await queue.enqueue("first", "a", Tier.PRO)
            await queue.enqueue("second", "b", Tier.FREE)
            return (
                await queue.position_of("second"),
                await queue.estimated_wait_seconds("second"),
                await queue.position_of("missing"),
                await queue.estimated_wait_seconds("missing"),
            )

        assert asyncio.run(scenario()) == (2, 10, -1, None)

    def test_cancel_requires_owner(self):
        queue = PriorityJobQueue(clock=FakeClock())

        async def scenario():
            await queue.enqueue("job", "owner-a", Tier.FREE)
            foreign = await queue.cancel("job", "owner-b")
            own = await queue.cancel("job", "owner-a")
            again = await queue.cancel("job", "owner-a")
            return foreign, own, again, await queue.dequeue()

        assert asyncio.run(scenario()) == (False, True, False, None)

    def test_queue_full(self):
        queue = PriorityJobQueue(max_pending=2, clock=FakeClock())

        async def scenario():
            await queue.enqueue("a", "o", Tier.FREE)
            await queue.enqueue("b", "o", Tier.FREE)
            await queue.enqueue("c", "o", Tier.PREMIUM)

        with pytest.raises(QueueFullError):
            asyncio.run(scenario())

    def test_wait_for_entry(self):
        queue = PriorityJobQueue(clock=FakeClock())

        async def scenario():
            empty = await queue.wait_for_entry(0.01)

            async def later():
                await asyncio.sleep(0.01)
                await queue.enqueue("late", "o", Tier.FREE)

            task = asyncio.create_task(later())
            woke = await queue.wait_for_entry(1.0)
            await task
            return empty, woke

        assert asyncio.run(scenario()) == (False, True)

    def test_stats(self):
        clock = FakeClock()
        queue = PriorityJobQueue(clock=clock)

        async def scenario():
            await queue.enqueue("a", "o", Tier.FREE, created_at=T0 - 30)
            await queue.enqueue("b", "o", Tier.PRO)
            return await queue.get_stats()

        stats = asyncio.run(scenario())
        assert stats.total_pending == 2
        assert stats.by_tier["free"] == 1
        assert stats.by_tier["pro"] == 1
        assert stats.oldest_pending_age_seconds == pytest.approx(30)


class TestTierConcurrencyLimiter:

    def _peak(self, limiter: TierConcurrencyLimiter, tier: Tier, jobs: int) -> int:
        peak = 0

        async def job():
            nonlocal peak
            async with limiter.slot(tier):
                peak = max(peak, limiter.active(tier))
                await asyncio.sleep(0.01)

        async def scenario():
            await asyncio.gather(*(job() for _ in range(jobs)))

        asyncio.run(scenario())
        return peak

    def test_free_tier_runs_one_at_a_time(self):
        limiter = TierConcurrencyLimiter()
        assert self._peak(limiter, Tier.FREE, 4) == 1
        assert limiter.available(Tier.FREE) == 1

    def test_configured_limits(self):
        limiter = TierConcurrencyLimiter({Tier.PRO: 3})
        assert self._peak(limiter, Tier.PRO, 6) == 3
        assert limiter.limits[Tier.PREMIUM] == 8
