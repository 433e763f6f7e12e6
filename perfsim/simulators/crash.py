"""Crash trigger: deliberate, unrecoverable process termination.

Each failure mode leaves a different signature for operators to recognise:

- ``trigger_abort``: SIGABRT and a core dump, no Python traceback
- ``trigger_stack_overflow``: ``RecursionError`` traceback, exit code 70
- ``trigger_unhandled_fault``: ``RuntimeError`` traceback, exit code 1
- ``trigger_memory_exhaustion``: RSS climbs until the OOM killer sends
  SIGKILL, or a ``MemoryError`` traceback with exit code 137

Every trigger logs first and performs the destructive action a moment later
(``defer_seconds``), so the caller usually receives its acknowledgement
before the process dies. Usually, not always: a client may still see a reset
connection.
"""

from __future__ import annotations

import asyncio
import os
import sys
import traceback
from typing import Callable, List, Optional

from ..events import EventLog
from ..schemas import SimulationKind


DEFAULT_DEFER_SECONDS = 0.05
OOM_CHUNK_BYTES = 100 * 1024 * 1024

EXIT_UNHANDLED_FAULT = 1
EXIT_STACK_OVERFLOW = 70
EXIT_MEMORY_EXHAUSTION = 137


def _allocate_chunk() -> bytearray:
    return bytearray(b"\x01") * OOM_CHUNK_BYTES


class CrashTrigger:
    """Terminate the current process via one of four failure modes.

    ``abort`` and ``hard_exit`` are injectable so tests can observe the
    terminal action without dying.
    """

    def __init__(
        self,
        events: EventLog,
        *,
        defer_seconds: float = DEFAULT_DEFER_SECONDS,
        abort: Callable[[], None] = os.abort,
        hard_exit: Callable[[int], None] = os._exit,
    ) -> None:
        self.events = events
        self.defer_seconds = defer_seconds
        self._abort = abort
        self._hard_exit = hard_exit

    def trigger_abort(self) -> None:
        self._announce(SimulationKind.CRASH_ABORT, "FailFast (SIGABRT)", "os.abort()")
        self._defer(self._abort)

    def trigger_stack_overflow(self) -> None:
        self._announce(
            SimulationKind.CRASH_STACK_OVERFLOW, "stack overflow", "infinite recursion"
        )
        self.events.warn(
            "CRASH_WARNING",
            "Stack overflow crashes may not auto-recover; a manual restart may be required.",
            simulation_kind=SimulationKind.CRASH_STACK_OVERFLOW,
        )
        self._defer(self._overflow_stack)

    def trigger_unhandled_fault(self) -> None:
        self._announce(
            SimulationKind.CRASH_UNHANDLED_FAULT, "unhandled exception", "uncaught RuntimeError"
        )
        self._defer(self._raise_unhandled)

    def trigger_memory_exhaustion(self) -> None:
        self._announce(
            SimulationKind.CRASH_MEMORY_EXHAUSTION,
            "memory exhaustion",
            "unbounded 100MB allocations",
        )
        self.events.warn(
            "CRASH_WARNING",
            "Out of memory crashes may not auto-recover; a manual restart may be required.",
            simulation_kind=SimulationKind.CRASH_MEMORY_EXHAUSTION,
        )
        self._defer(self._exhaust_memory)

    # ------------------------------------------------------------------
    # Terminal actions
    # ------------------------------------------------------------------

    def _overflow_stack(self) -> None:
        def recurse(depth: int) -> int:
            return recurse(depth + 1) + 1

        try:
            recurse(0)
        except RecursionError as exc:
            self._die_unhandled(exc, EXIT_STACK_OVERFLOW)

    def _raise_unhandled(self) -> None:
        try:
            raise RuntimeError("Intentional crash: unhandled exception simulation")
        except RuntimeError as exc:
            self._die_unhandled(exc, EXIT_UNHANDLED_FAULT)

    def _exhaust_memory(self) -> None:
        hoard: List[bytearray] = []
        try:
            while True:
                hoard.append(_allocate_chunk())
        except MemoryError as exc:
            hoard.clear()
            self._die_unhandled(exc, EXIT_MEMORY_EXHAUSTION)

    def _die_unhandled(self, exc: BaseException, exit_code: int) -> None:
        # asyncio would swallow an exception escaping a callback, so report it
        # the way the interpreter reports an uncaught one and exit ourselves.
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        sys.stderr.flush()
        self._hard_exit(exit_code)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _announce(self, kind: SimulationKind, label: str, method: str) -> None:
        self.events.error(
            "SIMULATION_STARTED",
            f"Crash simulation initiated: {label}",
            simulation_kind=kind,
            details={"method": method},
        )

    def _defer(self, action: Callable[[], None]) -> None:
        try:
            loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            action()
        else:
            loop.call_later(self.defer_seconds, action)
