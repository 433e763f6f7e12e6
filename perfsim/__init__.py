"""
Perfsim - performance pathology fault-injection service.

Deliberately induces CPU saturation, memory pressure, event-loop blocking,
slow responses, degrading load and process crashes, while an out-of-process
probe measures how responsive the service stays.

All components are constructed explicitly and injected (see ``Services``);
there is no global state.
"""

__version__ = "0.1.0"

# Core state
from .registry import SimulationRegistry
from .events import EventLog

# Simulators
from .simulators import (
    CpuPressureSimulator,
    CrashTrigger,
    DegradingLoadSimulator,
    MemoryPressureSimulator,
    SchedulerBlockSimulator,
    SlowRequestSimulator,
)

# Telemetry
from .metrics import MetricsCollector
from .probe import ProbeSettings, ResponsivenessProbe

# Wiring
from .services import Services
from .errors import PerfsimError, SimulationNotFoundError

# Core schemas
from .schemas import (
    Simulation,
    SimulationKind,
    SimulationStatus,
    SimulationParameters,
    CpuStressParams,
    MemoryPressureParams,
    SchedulerBlockParams,
    SlowRequestParams,
    CrashParams,
    ReleaseResult,
    LoadTestRequest,
    LoadTestResult,
    LoadTestStats,
    LoadTestStatsData,
    ProbeResult,
    EventLogEntry,
    SystemMetrics,
)

__all__ = [
    # Core state
    "SimulationRegistry",
    "EventLog",
    # Simulators
    "CpuPressureSimulator",
    "CrashTrigger",
    "DegradingLoadSimulator",
    "MemoryPressureSimulator",
    "SchedulerBlockSimulator",
    "SlowRequestSimulator",
    # Telemetry
    "MetricsCollector",
    "ProbeSettings",
    "ResponsivenessProbe",
    # Wiring
    "Services",
    "PerfsimError",
    "SimulationNotFoundError",
    # Schemas
    "Simulation",
    "SimulationKind",
    "SimulationStatus",
    "SimulationParameters",
    "CpuStressParams",
    "MemoryPressureParams",
    "SchedulerBlockParams",
    "SlowRequestParams",
    "CrashParams",
    "ReleaseResult",
    "LoadTestRequest",
    "LoadTestResult",
    "LoadTestStats",
    "LoadTestStatsData",
    "ProbeResult",
    "EventLogEntry",
    "SystemMetrics",
]
