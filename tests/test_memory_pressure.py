"""Tests for retained memory allocations."""

import pytest

from perfsim.events import EventLog
from perfsim.registry import SimulationRegistry
from perfsim.schemas import NO_EXPIRY, SimulationStatus
from perfsim.simulators.memory import MemoryPressureSimulator


def make_simulator(**kwargs) -> MemoryPressureSimulator:
    return MemoryPressureSimulator(SimulationRegistry(), EventLog(echo=False), **kwargs)


@pytest.mark.asyncio
async def test_allocate_and_release_totals():
    simulator = make_simulator()

    first = await simulator.allocate(100)
    await simulator.wait_for_allocation(first.id)
    assert simulator.total_allocated_mb() == 100

    second = await simulator.allocate(50)
    await simulator.wait_for_allocation(second.id)
    assert simulator._fill_tasks == {}
    assert simulator.total_allocated_mb() == 150
    assert simulator.allocation_size_mb(second.id) == 50

    result = simulator.release(first.id)
    assert result.was_actually_allocated
    assert result.released_mb == 100
    assert result.simulation.status is SimulationStatus.STOPPED
    assert simulator.total_allocated_mb() == 50

    simulator.release_all()
    assert simulator.total_allocated_mb() == 0


@pytest.mark.asyncio
async def test_release_is_idempotent():
    simulator = make_simulator()
    sim = await simulator.allocate(10)
    await simulator.wait_for_allocation(sim.id)

    first = simulator.release(sim.id)
    after_first = simulator.total_allocated_mb()
    second = simulator.release(sim.id)

    assert first.was_actually_allocated is True
    assert second.was_actually_allocated is False
    assert second.released_mb == 0
    assert second.simulation is None
    assert simulator.total_allocated_mb() == after_first == 0


@pytest.mark.asyncio
async def test_allocations_never_expire():
    simulator = make_simulator()
    sim = await simulator.allocate(1)

    assert sim.scheduled_end_at == NO_EXPIRY
    assert [s.id for s in simulator.active_allocations()] == [sim.id]
    simulator.release(sim.id)


@pytest.mark.asyncio
async def test_release_without_registry_record_still_frees_buffers():
    simulator = make_simulator()
    sim = await simulator.allocate(5)
    await simulator.wait_for_allocation(sim.id)
    simulator.registry.remove(sim.id)

    result = simulator.release(sim.id)

    assert result.was_actually_allocated
    assert result.released_mb == 5
    assert result.simulation is None
    assert simulator.total_allocated_mb() == 0


@pytest.mark.asyncio
async def test_release_unknown_id_is_success():
    result = make_simulator().release("does-not-exist")
    assert result.was_actually_allocated is False


@pytest.mark.asyncio
async def test_memory_error_marks_simulation_failed(monkeypatch):
    simulator = make_simulator(batch_mb=1)

    def refuse(*args, **kwargs):
        raise MemoryError("no more")

    monkeypatch.setattr("perfsim.simulators.memory.bytearray", refuse, raising=False)
    sim = await simulator.allocate(3)
    await simulator.wait_for_allocation(sim.id)

    assert simulator.registry.get(sim.id).status is SimulationStatus.FAILED
    assert simulator.total_allocated_mb() == 0
    assert simulator.active_count() == 0
    assert simulator._fill_tasks == {}
