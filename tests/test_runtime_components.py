from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from nebi_bot.ai.health import HealthCounters, HealthStats  # noqa: E402
from nebi_bot.ai.rate_limiter import RateLimiter  # noqa: E402
from nebi_bot.ai.workers import PoolSaturatedError, WorkerPool  # noqa: E402


class _FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_rate_limiter_blocks_within_cooldown_and_reopens() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(15, clock=clock)

    assert limiter.allow("g1", "u1") is True
    clock.now += 5
    assert limiter.allow("g1", "u1") is False
    assert limiter.remaining("g1", "u1") == pytest.approx(10.0)
    assert limiter.allow("g1", "u2") is True
    assert limiter.allow("g2", "u1") is True

    clock.now += 10
    assert limiter.allow("g1", "u1") is True
    assert limiter.remaining("g1", "nobody") == 0.0


def test_rate_limiter_rejection_does_not_extend_cooldown() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(10, clock=clock)

    limiter.allow("g1", "u1")
    for _ in range(5):
        clock.now += 1
        assert limiter.allow("g1", "u1") is False
    clock.now += 5
    assert limiter.allow("g1", "u1") is True


def test_rate_limiter_zero_cooldown_always_allows() -> None:
    limiter = RateLimiter(0, clock=_FakeClock())

    assert all(limiter.allow("g1", "u1") for _ in range(5))
    assert len(limiter) == 0
    assert limiter.remaining("g1", "u1") == 0.0


def test_rate_limiter_stays_bounded() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(60, max_entries=3, clock=clock)

    for index in range(10):
        clock.now += 1
        assert limiter.allow("g1", f"u{index}") is True
        assert len(limiter) <= 3

    # u9 is still tracked, u0 was evicted and starts fresh.
    assert limiter.allow("g1", "u9") is False
    assert limiter.allow("g1", "u0") is True


def test_rate_limiter_prune_drops_expired_entries() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(10, clock=clock)
    limiter.allow("g1", "u1")
    clock.now += 6
    limiter.allow("g1", "u2")
    clock.now += 5

    assert limiter.prune() == 1
    assert len(limiter) == 1
    assert limiter.allow("g1", "u2") is False


def test_health_counters_average_over_requests() -> None:
    counters = HealthCounters()
    assert counters.avg_latency_ms == 0

    for latency in (100, 200, 301):
        counters.record_request()
        counters.record_latency(latency)
    counters.record_error()

    assert counters.avg_latency_ms == 200
    assert counters.total_errors == 1
    zeroed = HealthStats.zeroed()
    assert (zeroed.total_requests, zeroed.queue_depth, zeroed.completed_tasks) == (0, 0, 0)


def test_worker_pool_runs_jobs_and_reports_stats() -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        pool = WorkerPool("test", workers=2, queue_size=10)
        await pool.start()

        async def double(value: int) -> int:
            await asyncio.sleep(0)
            return value * 2

        futures = [pool.submit(lambda value=value: double(value), kind="math") for value in range(4)]
        results = await asyncio.gather(*futures)
        await pool.join()
        stats = pool.stats()
        await pool.close()
        return results, stats, pool.running

    results, stats, running = asyncio.run(scenario())

    assert results == [0, 2, 4, 6]
    assert stats.completed_tasks == 4
    assert stats.queue_depth == 0
    assert stats.active_workers == 0
    assert running is False


def test_worker_pool_propagates_job_exceptions() -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        pool = WorkerPool("test", workers=1, queue_size=2)
        await pool.start()

        async def broken() -> None:
            raise RuntimeError("boom")

        future = pool.submit(broken)
        try:
            with pytest.raises(RuntimeError, match="boom"):
                await future
        finally:
            await pool.close()

    asyncio.run(scenario())


def test_worker_pool_rejects_when_queue_is_full_and_cancels_on_close() -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        pool = WorkerPool("test", workers=1, queue_size=1)
        gate = asyncio.Event()
        await pool.start()

        running = pool.submit(gate.wait, kind="blocker")
        while pool.stats().active_workers == 0:
            await asyncio.sleep(0.01)
        queued = pool.submit(gate.wait, kind="queued")

        with pytest.raises(PoolSaturatedError):
            pool.submit(gate.wait, kind="overflow")

        await pool.close()
        return running, queued

    running, queued = asyncio.run(scenario())

    assert running.cancelled()
    assert queued.cancelled()
