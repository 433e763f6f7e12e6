"""
Pydantic schemas for the Perfsim fault-injection service.

All records exchanged between the simulators, the registry, the probe sidecar
and the HTTP adapter are defined here.

Design Philosophy:
- Parameters are a closed, discriminated union keyed by ``kind`` so dispatch
  code can match exhaustively instead of poking at an open dict
- Every model serialises to camelCase JSON with ISO-8601 timestamps
  (``model_dump(mode="json", by_alias=True)``), the shape dashboards consume
- Field constraints double as the validation layer: building a parameter model
  from bad input raises ``ValidationError`` before any simulator state exists
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from perfsim.config import Limits


def utcnow() -> datetime:
    """Timezone-aware "now" used for every timestamp in the service."""
    return datetime.now(timezone.utc)


# Memory allocations never auto-expire. Adding a duration to "now" would
# overflow, so the registry stores this sentinel directly.
NO_EXPIRY = datetime.max.replace(tzinfo=timezone.utc)


class CamelModel(BaseModel):
    """Base model emitting camelCase keys while accepting snake_case input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Simulation Enums
# ============================================================================


class SimulationKind(str, Enum):
    """Fault-injection operation families."""

    CPU_STRESS = "CPU_STRESS"
    MEMORY_PRESSURE = "MEMORY_PRESSURE"
    SCHEDULER_BLOCK = "SCHEDULER_BLOCK"
    SLOW_REQUEST = "SLOW_REQUEST"
    CRASH_ABORT = "CRASH_ABORT"
    CRASH_STACK_OVERFLOW = "CRASH_STACK_OVERFLOW"
    CRASH_UNHANDLED_FAULT = "CRASH_UNHANDLED_FAULT"
    CRASH_MEMORY_EXHAUSTION = "CRASH_MEMORY_EXHAUSTION"


class SimulationStatus(str, Enum):
    """Lifecycle states. Only ACTIVE may transition; the rest are terminal."""

    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    STOPPED = "STOPPED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not SimulationStatus.ACTIVE


# ============================================================================
# Parameter Variants
# ============================================================================


class CpuStressParams(CamelModel):
    """Burn ``target_load_percent`` of the host's cores for ``duration_seconds``."""

    kind: Literal["CPU_STRESS"] = "CPU_STRESS"
    target_load_percent: int = Field(
        ..., ge=Limits.MIN_CPU_LOAD_PERCENT, le=Limits.MAX_CPU_LOAD_PERCENT
    )
    duration_seconds: float = Field(..., gt=0, le=Limits.MAX_DURATION_SECONDS)


class MemoryPressureParams(CamelModel):
    """Retain ``size_mb`` megabytes until explicitly released."""

    kind: Literal["MEMORY_PRESSURE"] = "MEMORY_PRESSURE"
    size_mb: int = Field(..., ge=Limits.MIN_MEMORY_MB, le=Limits.MAX_MEMORY_MB)


class SchedulerBlockParams(CamelModel):
    """Monopolise the event loop for ``duration_seconds`` in ``chunk_ms`` slices."""

    kind: Literal["SCHEDULER_BLOCK"] = "SCHEDULER_BLOCK"
    duration_seconds: float = Field(..., gt=0, le=Limits.MAX_DURATION_SECONDS)
    chunk_ms: int = Field(default=Limits.DEFAULT_CHUNK_MS)

    @field_validator("chunk_ms")
    @classmethod
    def _clamp_chunk(cls, value: int) -> int:
        # Out-of-range chunk sizes are clamped rather than rejected: tiny chunks
        # stop blocking, huge ones starve the probe completely.
        return max(Limits.MIN_CHUNK_MS, min(Limits.MAX_CHUNK_MS, value))


SlowRequestPattern = Literal["sleep", "threadpool"]


class SlowRequestParams(CamelModel):
    """Hold a single response open for ``delay_seconds``."""

    kind: Literal["SLOW_REQUEST"] = "SLOW_REQUEST"
    delay_seconds: float = Field(..., gt=0, le=Limits.MAX_DURATION_SECONDS)
    pattern: SlowRequestPattern = "sleep"


class CrashParams(CamelModel):
    """Process-terminating failure mode."""

    kind: Literal[
        "CRASH_ABORT",
        "CRASH_STACK_OVERFLOW",
        "CRASH_UNHANDLED_FAULT",
        "CRASH_MEMORY_EXHAUSTION",
    ]


SimulationParameters = Annotated[
    Union[
        CpuStressParams,
        MemoryPressureParams,
        SchedulerBlockParams,
        SlowRequestParams,
        CrashParams,
    ],
    Field(discriminator="kind"),
]


# ============================================================================
# Simulation Record
# ============================================================================


class Simulation(CamelModel):
    """One fault-injection instance tracked from start to terminal state.

    Records are owned by ``SimulationRegistry``; everything outside the registry
    only ever sees copies, so mutating a returned record has no effect on the
    registry's view.
    """

    id: str = Field(..., description="Opaque unique identifier")
    kind: SimulationKind
    parameters: SimulationParameters
    status: SimulationStatus = SimulationStatus.ACTIVE
    started_at: datetime
    stopped_at: Optional[datetime] = None
    scheduled_end_at: datetime

    @property
    def expires(self) -> bool:
        return self.scheduled_end_at != NO_EXPIRY


class ReleaseResult(CamelModel):
    """Outcome of a memory release.

    ``was_actually_allocated`` is False for unknown or already-released ids;
    callers treat both outcomes as success.
    """

    released_mb: int = 0
    was_actually_allocated: bool = False
    simulation: Optional[Simulation] = None


# ============================================================================
# Degrading Load Schemas
# ============================================================================


class LoadTestRequest(CamelModel):
    """Per-request knobs for the degrading load endpoint."""

    work_iterations: int = Field(default=200, ge=0, description="CPU intensity")
    buffer_size_kb: int = Field(default=20000, ge=0, description="Memory held per request")
    baseline_delay_ms: int = Field(default=500, ge=0, description="Minimum latency")
    soft_limit: int = Field(default=25, ge=1, description="Concurrency before degradation")
    degradation_factor: int = Field(default=500, ge=0, description="ms per excess request")


class LoadTestResult(CamelModel):
    elapsed_ms: int
    concurrent_requests_at_start: int
    degradation_delay_applied_ms: int
    work_iterations_completed: float
    memory_allocated_bytes: int
    work_completed: bool
    exception_thrown: bool = False
    exception_type: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class LoadTestStats(CamelModel):
    """Lifetime counters (never reset)."""

    current_concurrent_requests: int
    total_requests_processed: int
    total_exceptions_thrown: int
    average_response_time_ms: float


class LoadTestStatsData(CamelModel):
    """Rolling-period payload pushed to the stats sink."""

    current_concurrent: int
    peak_concurrent: int
    requests_completed: int
    avg_response_time_ms: float
    max_response_time_ms: int
    requests_per_second: float
    exception_count: int
    timestamp: datetime = Field(default_factory=utcnow)


# ============================================================================
# Telemetry Schemas
# ============================================================================


class ProbeResult(CamelModel):
    """One round-trip measurement from the responsiveness probe.

    A failed probe (timeout, refused connection) is a valid result: it is the
    evidence that a blocking simulation is working.
    """

    latency_ms: float
    timestamp: datetime
    success: bool
    error: Optional[str] = None
    load_test_active: bool = False
    load_test_concurrent: int = 0


EventLevel = Literal["info", "warn", "error"]


class EventLogEntry(CamelModel):
    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    level: EventLevel = "info"
    event: str
    message: str
    simulation_id: Optional[str] = None
    simulation_kind: Optional[SimulationKind] = None
    details: Optional[Dict[str, Any]] = None


class SystemMetrics(CamelModel):
    """Point-in-time health snapshot of the service process."""

    timestamp: datetime = Field(default_factory=utcnow)
    process_cpu_percent: float
    system_cpu_percent: float
    core_count: int
    rss_mb: float
    vms_mb: float
    system_total_mb: float
    system_available_mb: float
    system_memory_percent: float
    thread_count: int
    event_loop_lag_ms: float
    uptime_seconds: float
