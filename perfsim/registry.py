"""
SimulationRegistry: the single owner of every simulation record.

The registry is the only mutable state shared between simulators, so every
read and write goes through one lock. Callers never receive the stored record,
only deep copies, which keeps the lifecycle state machine in one place:

    create()   -> ACTIVE (optional auto-expiry timer armed)
    complete() -> COMPLETED  (expiry timer fired / work finished)
    stop()     -> STOPPED    (user request)
    fail()     -> FAILED     (simulator work raised)

Terminal states never change again. A transition requested on an unknown or
already-terminal id returns ``None``, so repeated stops are harmless no-ops and
a stop racing an expiry has exactly one winner.

Usage pattern:
    registry = SimulationRegistry()
    sim = registry.create(SimulationKind.CPU_STRESS, params, duration_seconds=30)
    ...
    registry.stop(sim.id)   # -> Simulation(status=STOPPED)
    registry.stop(sim.id)   # -> None
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from datetime import timedelta
from typing import Dict, List, Optional
from uuid import uuid4

from .schemas import (
    NO_EXPIRY,
    Simulation,
    SimulationKind,
    SimulationParameters,
    SimulationStatus,
    utcnow,
)


DEFAULT_MAX_TERMINAL_RECORDS = 500
"""Terminal records kept for inspection before the oldest are trimmed."""


class SimulationRegistry:
    """Thread-safe in-memory store of simulation records and expiry timers.

    Auto-expiry timers are armed with ``loop.call_later`` on the running event
    loop. ``create()`` called outside a running loop (plain synchronous code)
    stores the record without a timer; the owning simulator is then
    responsible for completing it.
    """

    def __init__(self, *, max_terminal_records: int = DEFAULT_MAX_TERMINAL_RECORDS) -> None:
        self._lock = threading.Lock()
        self._simulations: Dict[str, Simulation] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._terminal_ids: deque[str] = deque()
        self._max_terminal_records = max_terminal_records

    # ------------------------------------------------------------------
    # Creation & queries
    # ------------------------------------------------------------------

    def create(
        self,
        kind: SimulationKind,
        parameters: SimulationParameters,
        duration_seconds: Optional[float] = None,
        *,
        auto_complete: bool = True,
    ) -> Simulation:
        """Register a new ACTIVE simulation and return a copy of it.

        Args:
            kind: Simulation family
            parameters: Validated, kind-specific parameters
            duration_seconds: Time until auto-expiry; ``None`` means never
                (memory allocations)
            auto_complete: Arm a registry-owned timer that completes the
                record after ``duration_seconds``. Simulators that manage
                their own expiry pass ``False``.
        """
        now = utcnow()
        scheduled_end_at = (
            NO_EXPIRY if duration_seconds is None else now + timedelta(seconds=duration_seconds)
        )
        simulation = Simulation(
            id=str(uuid4()),
            kind=kind,
            parameters=parameters,
            status=SimulationStatus.ACTIVE,
            started_at=now,
            stopped_at=None,
            scheduled_end_at=scheduled_end_at,
        )

        with self._lock:
            self._simulations[simulation.id] = simulation
            if auto_complete and duration_seconds is not None:
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    loop = None
                if loop is not None:
                    self._timers[simulation.id] = loop.call_later(
                        duration_seconds, self.complete, simulation.id
                    )
            return simulation.model_copy(deep=True)

    def get(self, simulation_id: str) -> Optional[Simulation]:
        with self._lock:
            simulation = self._simulations.get(simulation_id)
            return simulation.model_copy(deep=True) if simulation else None

    def list_all(self) -> List[Simulation]:
        with self._lock:
            return [sim.model_copy(deep=True) for sim in self._simulations.values()]

    def list_active(self) -> List[Simulation]:
        with self._lock:
            return [
                sim.model_copy(deep=True)
                for sim in self._simulations.values()
                if sim.status is SimulationStatus.ACTIVE
            ]

    def list_active_by_kind(self, kind: SimulationKind) -> List[Simulation]:
        return [sim for sim in self.list_active() if sim.kind == kind]

    def count(self) -> int:
        """Number of ACTIVE simulations."""
        with self._lock:
            return sum(
                1 for sim in self._simulations.values() if sim.status is SimulationStatus.ACTIVE
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def stop(self, simulation_id: str) -> Optional[Simulation]:
        return self._transition(simulation_id, SimulationStatus.STOPPED)

    def complete(self, simulation_id: str) -> Optional[Simulation]:
        return self._transition(simulation_id, SimulationStatus.COMPLETED)

    def fail(self, simulation_id: str) -> Optional[Simulation]:
        return self._transition(simulation_id, SimulationStatus.FAILED)

    def _transition(
        self, simulation_id: str, status: SimulationStatus
    ) -> Optional[Simulation]:
        with self._lock:
            simulation = self._simulations.get(simulation_id)
            if simulation is None or simulation.status is not SimulationStatus.ACTIVE:
                return None

            simulation.status = status
            simulation.stopped_at = utcnow()

            timer = self._timers.pop(simulation_id, None)
            if timer is not None:
                timer.cancel()

            self._terminal_ids.append(simulation_id)
            self._trim_terminal()
            return simulation.model_copy(deep=True)

    def _trim_terminal(self) -> None:
        # Caller holds the lock.
        while len(self._terminal_ids) > self._max_terminal_records:
            self._simulations.pop(self._terminal_ids.popleft(), None)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def remove(self, simulation_id: str) -> bool:
        """Drop a record from the index regardless of its status."""
        with self._lock:
            timer = self._timers.pop(simulation_id, None)
            if timer is not None:
                timer.cancel()
            return self._simulations.pop(simulation_id, None) is not None

    def clear(self) -> None:
        """Remove every record and cancel every timer (test/reset use)."""
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._simulations.clear()
            self._terminal_ids.clear()
