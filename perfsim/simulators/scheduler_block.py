"""Scheduler (event loop) blocking simulator.

Blocking the loop stops *all* I/O in the service: no responses go out, no
timers fire, no telemetry is emitted. ``block()`` burns the loop with
synchronous PBKDF2 rounds in ``chunk_ms`` slices and yields once between
slices. During each yield queued I/O flushes, so probes show "mostly blocked,
occasional recovery" in real time instead of total silence until the end.

Unlike the other simulators this one has no stop operation: it runs to
completion and only then returns to its caller.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from typing import Optional

from ..config import Limits
from ..events import EventLog
from ..registry import SimulationRegistry
from ..schemas import SchedulerBlockParams, Simulation, SimulationKind


PBKDF2_ROUNDS = 1000
"""Rounds per synchronous hashing call (a few ms each)."""


def burn_for(seconds: float) -> None:
    """Occupy the calling thread with PBKDF2 work for ``seconds``."""
    end = time.monotonic() + seconds
    while time.monotonic() < end:
        hashlib.pbkdf2_hmac("sha512", b"password", b"salt", PBKDF2_ROUNDS, 64)


class SchedulerBlockSimulator:
    def __init__(self, registry: SimulationRegistry, events: EventLog) -> None:
        self.registry = registry
        self.events = events

    async def block(
        self, duration_seconds: float, chunk_ms: Optional[int] = None
    ) -> Simulation:
        """Block the running event loop for ``duration_seconds``.

        Returns the COMPLETED record. If the blocking work raises, the
        simulation is marked FAILED and the error propagates.
        """
        params = SchedulerBlockParams(
            duration_seconds=duration_seconds,
            chunk_ms=Limits.DEFAULT_CHUNK_MS if chunk_ms is None else chunk_ms,
        )
        simulation = self.registry.create(
            SimulationKind.SCHEDULER_BLOCK,
            params,
            params.duration_seconds,
            auto_complete=False,
        )
        self.events.warn(
            "SIMULATION_STARTED",
            f"Event loop blocking started for {params.duration_seconds}s "
            f"({params.chunk_ms}ms chunks) - server will be mostly unresponsive",
            simulation_id=simulation.id,
            simulation_kind=SimulationKind.SCHEDULER_BLOCK,
            details={"durationSeconds": params.duration_seconds, "chunkMs": params.chunk_ms},
        )

        try:
            await self._block_chunked(params.duration_seconds, params.chunk_ms / 1000)
        except BaseException as exc:
            self.registry.fail(simulation.id)
            self.events.error(
                "SIMULATION_FAILED",
                f"Event loop blocking failed: {exc}",
                simulation_id=simulation.id,
                simulation_kind=SimulationKind.SCHEDULER_BLOCK,
            )
            raise

        completed = self.registry.complete(simulation.id)
        self.events.info(
            "SIMULATION_COMPLETED",
            "Event loop blocking completed",
            simulation_id=simulation.id,
            simulation_kind=SimulationKind.SCHEDULER_BLOCK,
        )
        return completed or self.registry.get(simulation.id) or simulation

    @staticmethod
    async def _block_chunked(total_seconds: float, chunk_seconds: float) -> None:
        end = time.monotonic() + total_seconds
        while True:
            burn_for(min(chunk_seconds, end - time.monotonic()))
            if time.monotonic() >= end:
                return
            # One loop iteration: ready callbacks and socket I/O get to run.
            await asyncio.sleep(0)
