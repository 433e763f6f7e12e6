"""Tests for multi-process CPU pressure simulations.

These spawn real worker processes; durations are kept short.
"""

import asyncio
import multiprocessing
import time

import pytest

from perfsim.events import EventLog
from perfsim.registry import SimulationRegistry
from perfsim.schemas import SimulationStatus
from perfsim.simulators.cpu import CpuPressureSimulator, WorkerGroup, worker_count_for


def ignore_stop(stop_event):
    while True:
        time.sleep(0.05)


class RefusingProcess:
    def __init__(self, *args, **kwargs):
        self.pid = None

    def start(self):
        raise RuntimeError("process table is full")


class FlakyContext:
    """Multiprocessing context whose Nth process refuses to start."""

    def __init__(self, fail_on: int):
        self.base = multiprocessing.get_context()
        self.fail_on = fail_on
        self.created = []

    def Event(self):
        return self.base.Event()

    def Process(self, *args, **kwargs):
        if len(self.created) + 1 == self.fail_on:
            proc = RefusingProcess()
        else:
            proc = self.base.Process(*args, **kwargs)
        self.created.append(proc)
        return proc


def make_simulator(core_count: int = 4, **kwargs) -> CpuPressureSimulator:
    return CpuPressureSimulator(
        SimulationRegistry(),
        EventLog(echo=False),
        core_count=core_count,
        grace_seconds=0.2,
        **kwargs,
    )


@pytest.mark.parametrize(
    "percent,cores,expected",
    [(50, 4, 2), (100, 4, 4), (1, 4, 1), (10, 8, 1), (30, 8, 2), (75, 2, 2)],
)
def test_worker_count_rounds_half_up_with_floor_of_one(percent, cores, expected):
    assert worker_count_for(percent, cores) == expected


@pytest.mark.asyncio
async def test_stop_terminates_every_worker():
    simulator = make_simulator()
    sim = await simulator.start(50, 30)
    handles = simulator.worker_handles(sim.id)

    assert sim.status is SimulationStatus.ACTIVE
    assert len(handles) == 2
    assert all(proc.is_alive() for proc in handles)

    stopped = await simulator.stop(sim.id)

    assert stopped.status is SimulationStatus.STOPPED
    assert not any(proc.is_alive() for proc in handles)
    assert simulator.worker_handles(sim.id) == []
    assert await simulator.stop(sim.id) is None


@pytest.mark.asyncio
@pytest.mark.slow
async def test_expiry_completes_and_reaps_workers():
    simulator = make_simulator()
    sim = await simulator.start(50, 0.5)
    handles = simulator.worker_handles(sim.id)
    assert len(handles) == 2

    deadline = time.monotonic() + 5
    while simulator.registry.get(sim.id).status is SimulationStatus.ACTIVE:
        assert time.monotonic() < deadline, "simulation never expired"
        await asyncio.sleep(0.1)

    assert simulator.registry.get(sim.id).status is SimulationStatus.COMPLETED
    assert not any(proc.is_alive() for proc in handles)
    assert not simulator.has_active_simulations()


@pytest.mark.asyncio
async def test_stop_all_stops_every_simulation():
    simulator = make_simulator(core_count=2)
    first = await simulator.start(50, 30)
    second = await simulator.start(50, 30)

    await simulator.stop_all()

    for sim_id in (first.id, second.id):
        assert simulator.registry.get(sim_id).status is SimulationStatus.STOPPED


def test_stubborn_worker_is_force_killed():
    simulator = make_simulator()
    ctx = multiprocessing.get_context()
    group = WorkerGroup(stop_event=ctx.Event())
    proc = ctx.Process(target=ignore_stop, args=(group.stop_event,), daemon=True)
    proc.start()
    group.processes.append(proc)

    simulator._terminate_group("stubborn", group)

    assert not proc.is_alive()
    assert not any(e.event == "WORKER_KILL_FAILED" for e in simulator.events.recent())


@pytest.mark.asyncio
async def test_no_workers_spawned_marks_failed(monkeypatch):
    simulator = make_simulator()
    monkeypatch.setattr(
        simulator,
        "_spawn_group",
        lambda simulation_id, group, count: None,
    )

    sim = await simulator.start(50, 30)

    assert sim.status is SimulationStatus.FAILED
    assert any(e.event == "SIMULATION_FAILED" for e in simulator.events.recent())


@pytest.mark.asyncio
async def test_spawn_error_reaps_started_workers_and_fails():
    ctx = FlakyContext(fail_on=2)
    simulator = make_simulator(mp_context=ctx)

    with pytest.raises(RuntimeError):
        await simulator.start(100, 30)

    [sim] = simulator.registry.list_all()
    assert sim.status is SimulationStatus.FAILED
    started = [proc for proc in ctx.created if not isinstance(proc, RefusingProcess)]
    assert len(started) == 1
    assert not any(proc.is_alive() for proc in started)
    assert simulator.worker_handles(sim.id) == []
    assert await simulator.stop(sim.id) is None


@pytest.mark.asyncio
async def test_concurrent_stops_have_one_winner_that_reaps():
    simulator = make_simulator()
    sim = await simulator.start(50, 30)
    handles = simulator.worker_handles(sim.id)

    first, second = await asyncio.gather(simulator.stop(sim.id), simulator.stop(sim.id))

    winners = [result for result in (first, second) if result is not None]
    assert len(winners) == 1
    assert winners[0].status is SimulationStatus.STOPPED
    assert not any(proc.is_alive() for proc in handles)


@pytest.mark.asyncio
@pytest.mark.slow
async def test_stop_racing_expiry_settles_once():
    simulator = make_simulator()
    sim = await simulator.start(50, 0.2)
    handles = simulator.worker_handles(sim.id)

    await asyncio.sleep(0.2)
    result = await simulator.stop(sim.id)

    def settled():
        return [
            e for e in simulator.events.recent()
            if e.event in ("SIMULATION_STOPPED", "SIMULATION_COMPLETED")
        ]

    deadline = time.monotonic() + 5
    while not settled():
        assert time.monotonic() < deadline, "neither stop path finished"
        await asyncio.sleep(0.05)

    assert not any(proc.is_alive() for proc in handles)

    final = simulator.registry.get(sim.id)
    if result is None:
        assert final.status is SimulationStatus.COMPLETED
    else:
        assert result.status is SimulationStatus.STOPPED
        assert final.status is SimulationStatus.STOPPED
    await asyncio.sleep(0.3)
    assert len(settled()) == 1


@pytest.mark.asyncio
async def test_stop_returns_only_after_workers_exit():
    simulator = make_simulator()
    sim = await simulator.start(100, 30)
    handles = simulator.worker_handles(sim.id)

    stopped = await simulator.stop(sim.id)

    assert stopped is not None
    assert not any(proc.is_alive() for proc in handles)
