"""System metrics collection (psutil).

``MetricsCollector.snapshot()`` is cheap enough to call on every
``/api/metrics`` request. While running, the collector also samples every
``METRICS_INTERVAL_MS`` into a short history and pushes each sample to its
subscribers.

Event-loop lag comes from a heartbeat task that sleeps a fixed interval and
records how late it woke up; while the loop is blocked the heartbeat cannot
run, so the next sample reports the whole stall.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections import deque
from typing import Callable, Deque, List, Optional

import psutil

from .config import Config
from .schemas import SystemMetrics


BYTES_PER_MB = 1024 * 1024
HEARTBEAT_INTERVAL_SECONDS = 0.1
HISTORY_SIZE = 240

MetricsListener = Callable[[SystemMetrics], None]


class MetricsCollector:
    def __init__(
        self,
        *,
        process: Optional[psutil.Process] = None,
        sample_interval_seconds: Optional[float] = None,
        heartbeat_interval_seconds: float = HEARTBEAT_INTERVAL_SECONDS,
    ) -> None:
        self.process = process or psutil.Process(os.getpid())
        self.sample_interval_seconds = (
            sample_interval_seconds
            if sample_interval_seconds is not None
            else Config.METRICS_INTERVAL_MS / 1000
        )
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.event_loop_lag_ms = 0.0
        self.history: Deque[SystemMetrics] = deque(maxlen=HISTORY_SIZE)
        self._listeners: List[MetricsListener] = []
        self._started = time.monotonic()
        self._tasks: List[asyncio.Task] = []

        # First cpu_percent() calls always return 0.0; prime the counters.
        self.process.cpu_percent(interval=None)
        psutil.cpu_percent(interval=None)

    def subscribe(self, listener: MetricsListener) -> None:
        self._listeners.append(listener)

    def snapshot(self) -> SystemMetrics:
        memory = self.process.memory_info()
        system_memory = psutil.virtual_memory()
        return SystemMetrics(
            process_cpu_percent=self.process.cpu_percent(interval=None),
            system_cpu_percent=psutil.cpu_percent(interval=None),
            core_count=psutil.cpu_count() or 1,
            rss_mb=round(memory.rss / BYTES_PER_MB, 2),
            vms_mb=round(memory.vms / BYTES_PER_MB, 2),
            system_total_mb=round(system_memory.total / BYTES_PER_MB, 2),
            system_available_mb=round(system_memory.available / BYTES_PER_MB, 2),
            system_memory_percent=system_memory.percent,
            thread_count=self.process.num_threads(),
            event_loop_lag_ms=round(self.event_loop_lag_ms, 2),
            uptime_seconds=round(time.monotonic() - self._started, 2),
        )

    def sample(self) -> SystemMetrics:
        """Take a snapshot, record it in ``history`` and notify subscribers."""
        metrics = self.snapshot()
        self.history.append(metrics)
        for listener in list(self._listeners):
            listener(metrics)
        return metrics

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start the heartbeat and the periodic sampler on the running loop."""
        if self.is_running:
            return
        self._tasks = [
            asyncio.create_task(self._heartbeat_loop(), name="loop-heartbeat"),
            asyncio.create_task(self._sample_loop(), name="metrics-sampler"),
        ]

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _heartbeat_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            expected = loop.time() + self.heartbeat_interval_seconds
            await asyncio.sleep(self.heartbeat_interval_seconds)
            self.event_loop_lag_ms = max(0.0, (loop.time() - expected) * 1000)

    async def _sample_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sample_interval_seconds)
            self.sample()
