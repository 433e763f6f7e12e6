"""Service container.

One instance of every component, constructed once at startup and passed to
whoever needs it. Nothing in Perfsim is a module-level singleton; tests build
their own ``Services`` with whatever overrides they need.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional

from .config import Config
from .events import EventLog
from .logging_utils import log_info
from .metrics import MetricsCollector
from .probe import ProbeSettings, ResponsivenessProbe
from .registry import SimulationRegistry
from .schemas import LoadTestStatsData, ProbeResult
from .simulators import (
    CpuPressureSimulator,
    CrashTrigger,
    DegradingLoadSimulator,
    MemoryPressureSimulator,
    SchedulerBlockSimulator,
    SlowRequestSimulator,
)


RECENT_PROBE_RESULTS = 600
"""Probe results retained for /api/telemetry (one minute at the default rate)."""


@dataclass
class Services:
    registry: SimulationRegistry
    events: EventLog
    cpu: CpuPressureSimulator
    memory: MemoryPressureSimulator
    scheduler: SchedulerBlockSimulator
    slow: SlowRequestSimulator
    load: DegradingLoadSimulator
    crash: CrashTrigger
    metrics: MetricsCollector
    probe: Optional[ResponsivenessProbe] = None
    probe_results: Deque[ProbeResult] = field(
        default_factory=lambda: deque(maxlen=RECENT_PROBE_RESULTS)
    )
    last_load_stats: Optional[LoadTestStatsData] = None

    @classmethod
    def build(
        cls,
        *,
        registry: Optional[SimulationRegistry] = None,
        events: Optional[EventLog] = None,
        probe: Optional[ResponsivenessProbe] = None,
        **overrides,
    ) -> "Services":
        """Wire every component around one registry and one event log.

        Keyword overrides replace individual components (tests pass a
        ``CrashTrigger`` that does not kill the process, for example).
        """
        registry = registry or SimulationRegistry()
        events = events or EventLog()
        components = {
            "cpu": CpuPressureSimulator(registry, events),
            "memory": MemoryPressureSimulator(registry, events),
            "scheduler": SchedulerBlockSimulator(registry, events),
            "slow": SlowRequestSimulator(registry, events),
            "load": DegradingLoadSimulator(),
            "crash": CrashTrigger(events),
            "metrics": MetricsCollector(),
        }
        components.update(overrides)
        services = cls(registry=registry, events=events, probe=probe, **components)
        services.load.set_stats_sink(services.record_load_stats)
        if probe is not None:
            probe.subscribe(services.record_probe_result)
        return services

    @classmethod
    def with_probe(cls, port: int, **overrides) -> "Services":
        probe = ResponsivenessProbe(ProbeSettings.for_port(port)) if Config.PROBE_ENABLED else None
        return cls.build(probe=probe, **overrides)

    def record_probe_result(self, result: ProbeResult) -> None:
        self.probe_results.append(result)

    def record_load_stats(self, data: LoadTestStatsData) -> None:
        self.last_load_stats = data

    async def startup(self) -> None:
        self.metrics.start()
        self.load.start_broadcasting()
        if self.probe is not None:
            self.probe.start()
            log_info(f"Responsiveness probe started against {self.probe.settings.url}")

    async def shutdown(self) -> None:
        if self.probe is not None:
            self.probe.stop()
        await self.cpu.stop_all()
        self.memory.release_all()
        await self.load.stop_broadcasting()
        await self.metrics.stop()
        self.registry.clear()
