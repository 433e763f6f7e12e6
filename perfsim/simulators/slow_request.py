"""Slow request simulator.

Holds a single response open for ``delay_seconds``. Two patterns produce
different signatures:

- ``sleep``: ``asyncio.sleep``; the loop stays free, only this caller waits
- ``threadpool``: PBKDF2 work on a default-executor thread; enough of these
  saturate the pool and queue unrelated ``to_thread`` work behind them
"""

from __future__ import annotations

import asyncio

from ..events import EventLog
from ..registry import SimulationRegistry
from ..schemas import Simulation, SimulationKind, SlowRequestParams, SlowRequestPattern
from .scheduler_block import burn_for


class SlowRequestSimulator:
    def __init__(self, registry: SimulationRegistry, events: EventLog) -> None:
        self.registry = registry
        self.events = events

    async def delay(
        self, delay_seconds: float, pattern: SlowRequestPattern = "sleep"
    ) -> Simulation:
        params = SlowRequestParams(delay_seconds=delay_seconds, pattern=pattern)
        simulation = self.registry.create(
            SimulationKind.SLOW_REQUEST, params, params.delay_seconds, auto_complete=False
        )
        self.events.info(
            "SIMULATION_STARTED",
            f"Slow request started: {params.delay_seconds}s delay ({params.pattern})",
            simulation_id=simulation.id,
            simulation_kind=SimulationKind.SLOW_REQUEST,
            details={"delaySeconds": params.delay_seconds, "pattern": params.pattern},
        )

        try:
            if params.pattern == "threadpool":
                await asyncio.to_thread(burn_for, params.delay_seconds)
            else:
                await asyncio.sleep(params.delay_seconds)
        except BaseException as exc:
            # Cancellation (client went away) counts as a failure too.
            self.registry.fail(simulation.id)
            self.events.error(
                "SIMULATION_FAILED",
                f"Slow request failed: {exc!r}",
                simulation_id=simulation.id,
                simulation_kind=SimulationKind.SLOW_REQUEST,
            )
            raise

        completed = self.registry.complete(simulation.id)
        self.events.info(
            "SIMULATION_COMPLETED",
            "Slow request completed",
            simulation_id=simulation.id,
            simulation_kind=SimulationKind.SLOW_REQUEST,
        )
        return completed or self.registry.get(simulation.id) or simulation
