"""Memory pressure simulator.

Allocates and retains memory on the Python object heap (``bytearray``), so the
pressure is visible both to the garbage collector and as resident set growth.
Allocations never auto-expire: they stay until ``release()`` is called.
"""

from __future__ import annotations

import asyncio
import gc
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..events import EventLog
from ..registry import SimulationRegistry
from ..schemas import MemoryPressureParams, ReleaseResult, Simulation, SimulationKind


BYTES_PER_MB = 1024 * 1024

DEFAULT_BATCH_MB = 8
"""Megabytes allocated between yields to the event loop."""

_FILL_BYTE = b"\xa5"


@dataclass
class Allocation:
    """Retained buffers for one simulation id (the only reference to them)."""

    requested_mb: int
    chunks: List[bytearray] = field(default_factory=list)
    size_bytes: int = 0

    def drop(self) -> int:
        released = self.size_bytes
        self.chunks.clear()
        self.size_bytes = 0
        return released


class MemoryPressureSimulator:
    """Allocate, track and release retained memory blocks."""

    def __init__(
        self,
        registry: SimulationRegistry,
        events: EventLog,
        *,
        batch_mb: int = DEFAULT_BATCH_MB,
        collect: Callable[[], object] = gc.collect,
    ) -> None:
        self.registry = registry
        self.events = events
        self.batch_bytes = max(1, batch_mb) * BYTES_PER_MB
        self._collect = collect
        self._allocations: Dict[str, Allocation] = {}
        self._fill_tasks: Dict[str, asyncio.Task] = {}

    async def allocate(self, size_mb: int) -> Simulation:
        """Register an allocation and start filling it in the background.

        The registry entry exists before the memory does; use
        ``wait_for_allocation()`` to wait for the fill to finish.
        """
        params = MemoryPressureParams(size_mb=size_mb)
        simulation = self.registry.create(SimulationKind.MEMORY_PRESSURE, params, None)

        allocation = Allocation(requested_mb=params.size_mb)
        self._allocations[simulation.id] = allocation
        self._fill_tasks[simulation.id] = asyncio.create_task(
            self._fill(simulation.id, allocation),
            name=f"memory-fill-{simulation.id}",
        )
        return simulation

    async def wait_for_allocation(self, simulation_id: str) -> None:
        """Block until the background fill for ``simulation_id`` has finished."""
        task = self._fill_tasks.get(simulation_id)
        if task is not None:
            # asyncio.wait never raises, even if release() cancelled the fill.
            await asyncio.wait({task})

    def release(self, simulation_id: str) -> ReleaseResult:
        """Drop the buffers for ``simulation_id`` and stop its simulation.

        Safe to call repeatedly and on unknown ids. The side table and the
        registry are reconciled independently: a missing registry record does
        not prevent freeing the buffers, and vice versa.
        """
        task = self._fill_tasks.pop(simulation_id, None)
        if task is not None and not task.done():
            task.cancel()

        allocation = self._allocations.pop(simulation_id, None)
        released_bytes = 0
        if allocation is not None:
            released_bytes = allocation.drop()
            self._collect()

        simulation = self.registry.stop(simulation_id)
        released_mb = released_bytes // BYTES_PER_MB

        if allocation is not None or simulation is not None:
            self.events.info(
                "MEMORY_RELEASED",
                f"Released {released_mb}MB of memory",
                simulation_id=simulation_id,
                simulation_kind=SimulationKind.MEMORY_PRESSURE,
                details={"sizeMb": released_mb},
            )

        return ReleaseResult(
            released_mb=released_mb,
            was_actually_allocated=allocation is not None,
            simulation=simulation,
        )

    def release_all(self) -> None:
        ids = set(self._allocations) | {sim.id for sim in self.active_allocations()}
        for simulation_id in ids:
            self.release(simulation_id)

    def total_allocated_mb(self) -> int:
        return sum(a.size_bytes for a in self._allocations.values()) // BYTES_PER_MB

    def allocation_size_mb(self, simulation_id: str) -> Optional[int]:
        allocation = self._allocations.get(simulation_id)
        return allocation.size_bytes // BYTES_PER_MB if allocation else None

    def active_allocations(self) -> List[Simulation]:
        return self.registry.list_active_by_kind(SimulationKind.MEMORY_PRESSURE)

    def active_count(self) -> int:
        return len(self._allocations)

    async def _fill(self, simulation_id: str, allocation: Allocation) -> None:
        try:
            await self._fill_batches(simulation_id, allocation)
        finally:
            if self._fill_tasks.get(simulation_id) is asyncio.current_task():
                del self._fill_tasks[simulation_id]

    async def _fill_batches(self, simulation_id: str, allocation: Allocation) -> None:
        remaining = allocation.requested_mb * BYTES_PER_MB
        try:
            while remaining > 0:
                size = min(self.batch_bytes, remaining)
                # Filled with a non-zero byte so every page is actually resident.
                allocation.chunks.append(bytearray(_FILL_BYTE) * size)
                allocation.size_bytes += size
                remaining -= size
                await asyncio.sleep(0)
        except MemoryError as exc:
            allocation.drop()
            if self._allocations.get(simulation_id) is allocation:
                del self._allocations[simulation_id]
            self._collect()
            self.registry.fail(simulation_id)
            self.events.error(
                "SIMULATION_FAILED",
                f"Failed to allocate {allocation.requested_mb}MB: {exc!r}",
                simulation_id=simulation_id,
                simulation_kind=SimulationKind.MEMORY_PRESSURE,
            )
            return

        self.events.info(
            "MEMORY_ALLOCATED",
            f"Allocated {allocation.requested_mb}MB of memory",
            simulation_id=simulation_id,
            simulation_kind=SimulationKind.MEMORY_PRESSURE,
            details={
                "sizeMb": allocation.requested_mb,
                "sizeBytes": allocation.requested_mb * BYTES_PER_MB,
            },
        )
