"""Tests for the concurrency-degrading load simulator."""

import asyncio
import random

import pytest

from perfsim.schemas import LoadTestRequest
from perfsim.simulators.load import SLEEP_PER_CYCLE_MS, DegradingLoadSimulator


SCHEDULING_SLACK_MS = 50


def light_request(**overrides) -> LoadTestRequest:
    values = dict(
        work_iterations=0,
        buffer_size_kb=64,
        baseline_delay_ms=100,
        soft_limit=2,
        degradation_factor=100,
    )
    values.update(overrides)
    return LoadTestRequest(**values)


def test_defaults_match_documented_values():
    defaults = DegradingLoadSimulator.defaults()
    assert defaults.work_iterations == 200
    assert defaults.buffer_size_kb == 20000
    assert defaults.baseline_delay_ms == 500
    assert defaults.soft_limit == 25
    assert defaults.degradation_factor == 500


@pytest.mark.asyncio
async def test_delay_grows_with_concurrency_past_soft_limit():
    simulator = DegradingLoadSimulator()
    request = light_request()

    results = await asyncio.gather(*(simulator.execute_work(request) for _ in range(5)))
    by_concurrency = sorted(results, key=lambda r: r.concurrent_requests_at_start)

    assert [r.concurrent_requests_at_start for r in by_concurrency] == [1, 2, 3, 4, 5]
    for result in by_concurrency:
        expected = 100 + max(0, result.concurrent_requests_at_start - 2) * 100
        assert result.degradation_delay_applied_ms == expected - 100
        assert result.elapsed_ms >= expected
        # At most one extra work cycle (no CPU spin here, just the sleep) past the target.
        assert result.elapsed_ms < expected + SLEEP_PER_CYCLE_MS + SCHEDULING_SLACK_MS
        assert result.work_completed
        assert result.memory_allocated_bytes == 64 * 1024

    assert simulator.current_concurrent == 0


@pytest.mark.asyncio
async def test_cpu_work_is_accounted():
    simulator = DegradingLoadSimulator()
    result = await simulator.execute_work(light_request(work_iterations=100, baseline_delay_ms=50))

    # 100 iterations -> 10ms spin per cycle
    assert result.work_iterations_completed >= 10


@pytest.mark.asyncio
async def test_synthetic_failure_propagates_and_is_counted():
    simulator = DegradingLoadSimulator(
        exception_threshold_seconds=-1,
        exception_probability=1.0,
        rng=random.Random(7),
    )

    with pytest.raises(Exception):
        await simulator.execute_work(light_request())

    stats = simulator.current_stats()
    assert stats.total_exceptions_thrown == 1
    assert stats.total_requests_processed == 1
    assert stats.current_concurrent_requests == 0


@pytest.mark.asyncio
async def test_no_failures_before_threshold():
    simulator = DegradingLoadSimulator(exception_probability=1.0)
    result = await simulator.execute_work(light_request())
    assert result.exception_thrown is False


@pytest.mark.asyncio
async def test_period_stats_flush_and_reset():
    received = []
    simulator = DegradingLoadSimulator(stats_interval_seconds=10, stats_sink=received.append)

    assert simulator.flush_period_stats() is None

    await asyncio.gather(*(simulator.execute_work(light_request()) for _ in range(3)))
    data = simulator.flush_period_stats()

    assert data is not None
    assert data.requests_completed == 3
    assert data.peak_concurrent == 3
    assert data.requests_per_second == pytest.approx(0.3)
    assert data.max_response_time_ms >= 100
    assert received == [data]

    assert simulator.flush_period_stats() is None
    assert simulator.current_stats().total_requests_processed == 3


@pytest.mark.asyncio
async def test_broadcast_loop_pushes_to_sink():
    received = []
    simulator = DegradingLoadSimulator(stats_interval_seconds=0.05)
    simulator.set_stats_sink(received.append)
    simulator.start_broadcasting()

    await simulator.execute_work(light_request(baseline_delay_ms=10))
    await asyncio.sleep(0.2)
    await simulator.stop_broadcasting()

    assert len(received) == 1
    assert received[0].requests_completed == 1
