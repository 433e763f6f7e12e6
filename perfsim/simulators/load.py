"""Degrading load simulator for load-test integration.

Each inbound request calls ``execute_work()``. Latency and memory footprint
grow with the number of requests in flight:

1. Increment the shared concurrency counter
2. Hold ``buffer_size_kb`` for the whole call, half on the Python heap
   (collector pressure) and half in an anonymous ``mmap`` (resident memory)
3. total = baseline_delay_ms + max(0, concurrent - soft_limit) * degradation_factor
4. Alternate CPU spin (``work_iterations / 10`` ms), buffer touches and a
   short sleep until ``total`` has elapsed
5. Past the exception threshold each loop iteration has an independent
   chance of raising one of a pool of synthetic failures
6. Decrement the counter and update statistics no matter how the call ends

The failure chance is per iteration, not per second, so the observed error
rate depends on the loop cadence (itself a function of ``work_iterations``).
"""

from __future__ import annotations

import asyncio
import mmap
import random
import threading
import time
from typing import Callable, List, Optional

from ..config import Config
from ..logging_utils import log_info, log_warning
from ..schemas import LoadTestRequest, LoadTestResult, LoadTestStats, LoadTestStatsData


EXCEPTION_THRESHOLD_SECONDS = 120.0
EXCEPTION_PROBABILITY = 0.20
SLEEP_PER_CYCLE_MS = 50
PAGE_SIZE = 4096


SYNTHETIC_FAILURES: List[Callable[[], Exception]] = [
    # Application logic
    lambda: RuntimeError("Operation is not valid due to the current state of the object"),
    lambda: ValueError("Value does not fall within the expected range"),
    lambda: TypeError("'NoneType' object is not subscriptable"),
    lambda: AttributeError("'NoneType' object has no attribute 'value'"),
    lambda: IndexError("list index out of range"),
    lambda: KeyError("The given key was not present in the dictionary"),
    # I/O and network
    lambda: TimeoutError("The operation has timed out"),
    lambda: ConnectionResetError("Unable to read data from the transport connection"),
    lambda: ConnectionRefusedError("An error occurred while sending the request"),
    # Math and format
    lambda: ZeroDivisionError("division by zero"),
    lambda: UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"),
    lambda: OverflowError("Arithmetic operation resulted in an overflow"),
    # Cancellation
    lambda: InterruptedError("The operation was aborted"),
    lambda: BrokenPipeError("The operation was canceled"),
    # Resource exhaustion
    lambda: MemoryError("Insufficient memory to continue execution"),
    lambda: RecursionError("maximum recursion depth exceeded"),
]


StatsSink = Callable[[LoadTestStatsData], None]


def _spin(milliseconds: float) -> None:
    end = time.monotonic() + milliseconds / 1000
    while time.monotonic() < end:
        pass


def _touch(buffer) -> None:
    """Write one byte per page so the buffer stays resident."""
    if buffer is None:
        return
    for offset in range(0, len(buffer), PAGE_SIZE):
        buffer[offset] ^= 0xFF


class DegradingLoadSimulator:
    """Per-request work whose cost scales with concurrency.

    Not tied to the simulation registry: it tracks live concurrency itself and
    keeps two sets of statistics, lifetime (never reset) and period (reset
    each time they are flushed to the stats sink).
    """

    def __init__(
        self,
        *,
        exception_threshold_seconds: float = EXCEPTION_THRESHOLD_SECONDS,
        exception_probability: float = EXCEPTION_PROBABILITY,
        rng: Optional[random.Random] = None,
        stats_interval_seconds: Optional[float] = None,
        stats_sink: Optional[StatsSink] = None,
    ) -> None:
        self.exception_threshold_seconds = exception_threshold_seconds
        self.exception_probability = exception_probability
        self.stats_interval_seconds = (
            stats_interval_seconds
            if stats_interval_seconds is not None
            else float(Config.LOAD_STATS_INTERVAL_SECONDS)
        )
        self._rng = rng or random.Random()
        self._stats_sink = stats_sink
        self._lock = threading.Lock()
        self._broadcast_task: Optional[asyncio.Task] = None

        # Lifetime counters
        self._concurrent = 0
        self._total_processed = 0
        self._total_exceptions = 0
        self._total_response_ms = 0.0

        # Period counters
        self._reset_period()

    def set_stats_sink(self, sink: Optional[StatsSink]) -> None:
        self._stats_sink = sink

    @staticmethod
    def defaults() -> LoadTestRequest:
        return LoadTestRequest()

    @property
    def current_concurrent(self) -> int:
        return self._concurrent

    # ------------------------------------------------------------------
    # Main algorithm
    # ------------------------------------------------------------------

    async def execute_work(self, request: Optional[LoadTestRequest] = None) -> LoadTestResult:
        """Run one request's worth of degrading work.

        Synthetic failures propagate to the caller unchanged.
        """
        params = request or LoadTestRequest()

        with self._lock:
            self._concurrent += 1
            current = self._concurrent
            self._period_peak = max(self._period_peak, current)

        start = time.monotonic()
        total_cpu_ms = 0.0
        heap_buffer: Optional[bytearray] = None
        native_buffer: Optional[mmap.mmap] = None

        try:
            total_bytes = params.buffer_size_kb * 1024
            heap_bytes = total_bytes // 2
            native_bytes = total_bytes - heap_bytes
            heap_buffer = bytearray(heap_bytes)
            if native_bytes > 0:
                native_buffer = mmap.mmap(-1, native_bytes)
            _touch(heap_buffer)
            _touch(native_buffer)

            degradation_ms = max(0, current - params.soft_limit) * params.degradation_factor
            total_ms = params.baseline_delay_ms + degradation_ms
            cpu_ms_per_cycle = params.work_iterations / 10

            while self._elapsed_ms(start) < total_ms:
                if cpu_ms_per_cycle > 0:
                    _spin(cpu_ms_per_cycle)
                    total_cpu_ms += cpu_ms_per_cycle

                _touch(heap_buffer)
                _touch(native_buffer)

                self._maybe_raise_synthetic_failure(start)

                remaining_ms = total_ms - self._elapsed_ms(start)
                sleep_ms = min(SLEEP_PER_CYCLE_MS, max(0.0, remaining_ms))
                if sleep_ms > 0:
                    await asyncio.sleep(sleep_ms / 1000)

            _touch(heap_buffer)
            _touch(native_buffer)

            return LoadTestResult(
                elapsed_ms=int(self._elapsed_ms(start)),
                concurrent_requests_at_start=current,
                degradation_delay_applied_ms=degradation_ms,
                work_iterations_completed=total_cpu_ms,
                memory_allocated_bytes=total_bytes,
                work_completed=True,
            )
        except Exception as exc:
            with self._lock:
                self._total_exceptions += 1
                self._period_exceptions += 1
            log_warning(
                f"[LoadTest] Exception after {int(self._elapsed_ms(start))}ms: "
                f"{type(exc).__name__} - {exc}"
            )
            raise
        finally:
            elapsed_ms = self._elapsed_ms(start)
            with self._lock:
                self._concurrent -= 1
                self._total_processed += 1
                self._total_response_ms += elapsed_ms
                self._period_completed += 1
                self._period_response_sum += elapsed_ms
                self._period_max_response = max(self._period_max_response, int(elapsed_ms))
            if native_buffer is not None:
                native_buffer.close()
            heap_buffer = None

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def current_stats(self) -> LoadTestStats:
        with self._lock:
            average = (
                self._total_response_ms / self._total_processed if self._total_processed else 0.0
            )
            return LoadTestStats(
                current_concurrent_requests=self._concurrent,
                total_requests_processed=self._total_processed,
                total_exceptions_thrown=self._total_exceptions,
                average_response_time_ms=round(average, 2),
            )

    def flush_period_stats(self) -> Optional[LoadTestStatsData]:
        """Emit the current period to the sink and start a new one.

        Returns ``None`` (and emits nothing) when no request completed
        during the period.
        """
        with self._lock:
            completed = self._period_completed
            if completed == 0:
                return None
            data = LoadTestStatsData(
                current_concurrent=self._concurrent,
                peak_concurrent=self._period_peak,
                requests_completed=completed,
                avg_response_time_ms=round(self._period_response_sum / completed, 2),
                max_response_time_ms=self._period_max_response,
                requests_per_second=round(completed / self.stats_interval_seconds, 2),
                exception_count=self._period_exceptions,
            )
            self._reset_period()

        log_info(
            f"[LoadTest] Period stats: {data.requests_completed} requests, "
            f"{data.avg_response_time_ms:.1f}ms avg, {data.max_response_time_ms}ms max, "
            f"{data.requests_per_second:.2f} RPS"
        )
        if self._stats_sink is not None:
            self._stats_sink(data)
        return data

    def start_broadcasting(self) -> None:
        """Flush period stats every ``stats_interval_seconds`` on the running loop."""
        if self._broadcast_task is None or self._broadcast_task.done():
            self._broadcast_task = asyncio.create_task(
                self._broadcast_loop(), name="load-stats-broadcast"
            )

    async def stop_broadcasting(self) -> None:
        task, self._broadcast_task = self._broadcast_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _broadcast_loop(self) -> None:
        while True:
            await asyncio.sleep(self.stats_interval_seconds)
            self.flush_period_stats()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reset_period(self) -> None:
        self._period_completed = 0
        self._period_response_sum = 0.0
        self._period_max_response = 0
        self._period_peak = 0
        self._period_exceptions = 0

    def _maybe_raise_synthetic_failure(self, start: float) -> None:
        elapsed_seconds = time.monotonic() - start
        if elapsed_seconds <= self.exception_threshold_seconds:
            return
        if self._rng.random() < self.exception_probability:
            failure = self._rng.choice(SYNTHETIC_FAILURES)()
            log_warning(
                f"[LoadTest] Throwing random exception after {elapsed_seconds:.1f}s: "
                f"{type(failure).__name__}: {failure}"
            )
            raise failure

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.monotonic() - start) * 1000
