"""Tests for event-loop blocking and slow requests."""

import asyncio
import time

import pytest

from perfsim.events import EventLog
from perfsim.registry import SimulationRegistry
from perfsim.schemas import SimulationStatus
from perfsim.simulators.scheduler_block import SchedulerBlockSimulator
from perfsim.simulators.slow_request import SlowRequestSimulator


@pytest.mark.asyncio
@pytest.mark.slow
async def test_block_runs_for_full_duration_and_completes():
    simulator = SchedulerBlockSimulator(SimulationRegistry(), EventLog(echo=False))

    started = time.monotonic()
    sim = await simulator.block(2, chunk_ms=200)
    elapsed = time.monotonic() - started

    assert sim.status is SimulationStatus.COMPLETED
    assert elapsed >= 2.0
    assert elapsed < 2.0 + 0.2 + 0.5


@pytest.mark.asyncio
async def test_block_yields_between_chunks():
    simulator = SchedulerBlockSimulator(SimulationRegistry(), EventLog(echo=False))
    ticks = []

    async def heartbeat():
        while True:
            ticks.append(time.monotonic())
            await asyncio.sleep(0)

    task = asyncio.create_task(heartbeat())
    await asyncio.sleep(0)
    ticks.clear()
    await simulator.block(0.5, chunk_ms=50)
    task.cancel()

    # Roughly one heartbeat per chunk, not zero.
    assert len(ticks) >= 3


@pytest.mark.asyncio
async def test_block_failure_marks_failed(monkeypatch):
    registry = SimulationRegistry()
    simulator = SchedulerBlockSimulator(registry, EventLog(echo=False))

    def explode(seconds):
        raise RuntimeError("hash engine broke")

    monkeypatch.setattr("perfsim.simulators.scheduler_block.burn_for", explode)

    with pytest.raises(RuntimeError):
        await simulator.block(1)

    [sim] = registry.list_all()
    assert sim.status is SimulationStatus.FAILED


@pytest.mark.asyncio
@pytest.mark.parametrize("pattern", ["sleep", "threadpool"])
async def test_slow_request_completes(pattern):
    registry = SimulationRegistry()
    simulator = SlowRequestSimulator(registry, EventLog(echo=False))

    started = time.monotonic()
    sim = await simulator.delay(0.2, pattern)

    assert time.monotonic() - started >= 0.2
    assert sim.status is SimulationStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancelled_slow_request_is_failed():
    registry = SimulationRegistry()
    simulator = SlowRequestSimulator(registry, EventLog(echo=False))

    task = asyncio.create_task(simulator.delay(5))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    [sim] = registry.list_all()
    assert sim.status is SimulationStatus.FAILED
