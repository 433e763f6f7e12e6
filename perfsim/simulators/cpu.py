"""CPU pressure simulator.

Spawns OS processes that each pin one core at ~100% by hashing in a tight
loop. The interpreter lock rules out threads here: only separate processes
give the OS scheduler something to spread across physical cores.

Lifecycle per simulation id:
1. ``start()`` registers the simulation, publishes an empty worker group,
   spawns ``N`` workers into it sharing one stop event and arms an expiry task
2. ``stop()`` (user) or the expiry task (timer) attempts its registry
   transition; the single winner sets the stop event, waits out the grace
   window and force-kills stragglers
3. A spawn that fails or is cancelled part-way tears down the workers it
   already started and marks the simulation FAILED
"""

from __future__ import annotations

import asyncio
import hashlib
import multiprocessing
import os
import time
from dataclasses import dataclass, field
from multiprocessing.context import BaseContext
from typing import Any, Dict, List, Optional

from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_fixed

from ..config import Config
from ..events import EventLog
from ..registry import SimulationRegistry
from ..schemas import CpuStressParams, Simulation, SimulationKind


HASHES_PER_STOP_CHECK = 10_000
"""Digests computed between stop-flag checks (~a few ms of work)."""

FORCE_KILL_ATTEMPTS = 3


def burn_cpu(stop_event: Any) -> None:
    """Worker entry point: hash until ``stop_event`` is set."""
    counter = 0
    while not stop_event.is_set():
        for _ in range(HASHES_PER_STOP_CHECK):
            hashlib.sha256(b"burn%d" % counter).digest()
            counter += 1


def worker_count_for(target_load_percent: int, core_count: int) -> int:
    """Number of one-core workers needed to approximate ``target_load_percent``.

    Rounds half up and never goes below one worker: one core for the whole
    duration is the smallest unit of load this simulator produces.
    """
    return max(1, int(target_load_percent / 100 * core_count + 0.5))


@dataclass
class WorkerGroup:
    """Worker processes owned by one simulation.

    The group is published before any worker starts, so every stop path can
    find it; setting ``stop_event`` also halts a spawn still in progress.
    """

    stop_event: Any
    processes: List[multiprocessing.process.BaseProcess] = field(default_factory=list)
    spawner: Optional[asyncio.Future] = None

    def alive(self) -> List[multiprocessing.process.BaseProcess]:
        return [proc for proc in list(self.processes) if proc.is_alive()]


class CpuPressureSimulator:
    """Start and stop multi-core CPU burn simulations.

    The registry transition decides who tears a simulation down: ``stop()``
    and the expiry task each attempt theirs first, and only the winner pops
    the worker group and terminates it. Losers return without touching the
    workers.
    """

    def __init__(
        self,
        registry: SimulationRegistry,
        events: EventLog,
        *,
        core_count: Optional[int] = None,
        grace_seconds: Optional[float] = None,
        mp_context: Optional[BaseContext] = None,
    ) -> None:
        self.registry = registry
        self.events = events
        self.core_count = core_count or os.cpu_count() or 1
        self.grace_seconds = (
            grace_seconds if grace_seconds is not None else Config.CPU_STOP_GRACE_MS / 1000
        )
        self._ctx = mp_context or multiprocessing.get_context()
        self._workers: Dict[str, WorkerGroup] = {}
        self._expiry_tasks: Dict[str, asyncio.Task] = {}

    async def start(self, target_load_percent: int, duration_seconds: float) -> Simulation:
        """Start burning ``target_load_percent`` of the host's cores.

        Returns the ACTIVE record once the workers are running; a FAILED
        record is returned if not a single worker could be spawned. Any other
        spawn error (or cancellation) terminates the workers already started,
        fails the record and propagates.
        """
        params = CpuStressParams(
            target_load_percent=target_load_percent, duration_seconds=duration_seconds
        )
        simulation = self.registry.create(
            SimulationKind.CPU_STRESS, params, duration_seconds, auto_complete=False
        )
        requested = worker_count_for(params.target_load_percent, self.core_count)

        self.events.info(
            "SIMULATION_STARTED",
            f"CPU stress started at {params.target_load_percent}% for "
            f"{params.duration_seconds}s ({requested} of {self.core_count} cores)",
            simulation_id=simulation.id,
            simulation_kind=SimulationKind.CPU_STRESS,
            details={
                "targetLoadPercent": params.target_load_percent,
                "durationSeconds": params.duration_seconds,
                "workers": requested,
            },
        )

        group = WorkerGroup(stop_event=self._ctx.Event())
        self._workers[simulation.id] = group
        group.spawner = asyncio.ensure_future(
            asyncio.to_thread(self._spawn_group, simulation.id, group, requested)
        )
        try:
            await asyncio.shield(group.spawner)
        except BaseException as exc:
            await self._release_workers(simulation.id)
            self._fail(simulation.id, f"CPU stress failed while spawning workers: {exc!r}")
            raise

        if not group.processes:
            await self._release_workers(simulation.id)
            failed = self._fail(
                simulation.id, "CPU stress failed: no worker process could be started"
            )
            return failed or self.registry.get(simulation.id) or simulation

        if self._workers.get(simulation.id) is not group:
            # Stopped while the workers were still spawning; stop() reaped them.
            return self.registry.get(simulation.id) or simulation

        self._expiry_tasks[simulation.id] = asyncio.create_task(
            self._expire_after(simulation.id, params.duration_seconds),
            name=f"cpu-expiry-{simulation.id}",
        )
        return self.registry.get(simulation.id) or simulation

    async def stop(self, simulation_id: str) -> Optional[Simulation]:
        """Stop a running simulation; ``None`` for unknown or finished ids.

        Returns only after every worker of the simulation has exited.
        """
        simulation = self.registry.stop(simulation_id)
        if simulation is None:
            return None

        task = self._expiry_tasks.pop(simulation_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        await self._release_workers(simulation_id)
        self.events.info(
            "SIMULATION_STOPPED",
            "CPU stress simulation stopped by user",
            simulation_id=simulation_id,
            simulation_kind=SimulationKind.CPU_STRESS,
        )
        return simulation

    async def stop_all(self) -> None:
        for simulation in self.active_simulations():
            await self.stop(simulation.id)

    def active_simulations(self) -> List[Simulation]:
        return self.registry.list_active_by_kind(SimulationKind.CPU_STRESS)

    def has_active_simulations(self) -> bool:
        return bool(self.active_simulations())

    def worker_handles(self, simulation_id: str) -> List[multiprocessing.process.BaseProcess]:
        """Process handles of a running simulation (empty once released)."""
        group = self._workers.get(simulation_id)
        return list(group.processes) if group else []

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _expire_after(self, simulation_id: str, duration_seconds: float) -> None:
        await asyncio.sleep(duration_seconds)
        self._expiry_tasks.pop(simulation_id, None)
        simulation = self.registry.complete(simulation_id)
        if simulation is None:
            return

        await self._release_workers(simulation_id)
        self.events.info(
            "SIMULATION_COMPLETED",
            "CPU stress simulation completed",
            simulation_id=simulation_id,
            simulation_kind=SimulationKind.CPU_STRESS,
        )

    async def _release_workers(self, simulation_id: str) -> None:
        group = self._workers.pop(simulation_id, None)
        if group is None:
            return
        group.stop_event.set()
        if group.spawner is not None:
            # Never raises; the spawn error (if any) belongs to start().
            await asyncio.wait({group.spawner})
        await asyncio.to_thread(self._terminate_group, simulation_id, group)

    def _fail(self, simulation_id: str, message: str) -> Optional[Simulation]:
        failed = self.registry.fail(simulation_id)
        if failed:
            self.events.error(
                "SIMULATION_FAILED",
                message,
                simulation_id=simulation_id,
                simulation_kind=SimulationKind.CPU_STRESS,
            )
        return failed

    def _spawn_group(self, simulation_id: str, group: WorkerGroup, count: int) -> None:
        for index in range(count):
            if group.stop_event.is_set():
                return
            proc = self._ctx.Process(
                target=burn_cpu,
                args=(group.stop_event,),
                name=f"perfsim-cpu-{simulation_id[:8]}-{index}",
                daemon=True,
            )
            try:
                proc.start()
            except OSError as exc:
                # A reduced worker count is tolerated rather than retried.
                self.events.error(
                    "WORKER_SPAWN_FAILED",
                    f"Failed to spawn CPU worker {index}: {exc}",
                    simulation_id=simulation_id,
                    simulation_kind=SimulationKind.CPU_STRESS,
                )
                continue
            group.processes.append(proc)

    def _terminate_group(self, simulation_id: str, group: WorkerGroup) -> None:
        """Signal, wait out the grace window, then force-kill what is left."""
        group.stop_event.set()
        deadline = time.monotonic() + self.grace_seconds
        for proc in list(group.processes):
            proc.join(timeout=max(0.0, deadline - time.monotonic()))

        for proc in group.alive():
            still_alive = Retrying(
                retry=retry_if_result(bool),
                stop=stop_after_attempt(FORCE_KILL_ATTEMPTS),
                wait=wait_fixed(0.05),
                retry_error_callback=lambda state: state.outcome.result(),
            )(_force_kill, proc)
            if still_alive:
                self.events.error(
                    "WORKER_KILL_FAILED",
                    f"CPU worker pid={proc.pid} survived {FORCE_KILL_ATTEMPTS} kill attempts",
                    simulation_id=simulation_id,
                    simulation_kind=SimulationKind.CPU_STRESS,
                )


def _force_kill(proc: multiprocessing.process.BaseProcess) -> bool:
    """SIGKILL ``proc`` and report whether it is still alive afterwards."""
    proc.kill()
    proc.join(timeout=0.5)
    return proc.is_alive()
