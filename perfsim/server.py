"""HTTP adapter.

A thin FastAPI layer over ``Services``: it parses and validates input, calls
one core operation and serialises the result. Everything interesting happens
in the simulators.
"""

from __future__ import annotations

import json
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from . import __version__
from .errors import SimulationNotFoundError
from .schemas import (
    CpuStressParams,
    LoadTestRequest,
    MemoryPressureParams,
    SchedulerBlockParams,
    SimulationKind,
    SimulationStatus,
    SlowRequestPattern,
    utcnow,
)
from .services import Services


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _dump_all(models: List[BaseModel]) -> List[Dict[str, Any]]:
    return [_dump(model) for model in models]


def _crash_modes(services: Services) -> Dict[str, Callable[[], None]]:
    return {
        "failfast": services.crash.trigger_abort,
        "stackoverflow": services.crash.trigger_stack_overflow,
        "exception": services.crash.trigger_unhandled_fault,
        "oom": services.crash.trigger_memory_exhaustion,
    }


def create_app(services: Services) -> FastAPI:
    """Build the FastAPI app bound to ``services``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.startup()
        try:
            yield
        finally:
            await services.shutdown()

    app = FastAPI(title="Perfsim", version=__version__, lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(SimulationNotFoundError)
    async def not_found(request: Request, exc: SimulationNotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=404, content={"error": str(exc), "simulationId": exc.simulation_id}
        )

    @app.exception_handler(ValidationError)
    async def invalid_parameters(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "error": "Invalid simulation parameters",
                "detail": json.loads(exc.json(include_url=False)),
            },
        )

    # ------------------------------------------------------------------
    # Health & metrics
    # ------------------------------------------------------------------

    @app.get("/api/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "version": __version__,
            "activeSimulations": services.registry.count(),
        }

    @app.get("/api/metrics")
    async def metrics():
        payload = _dump(services.metrics.snapshot())
        payload["activeSimulations"] = services.registry.count()
        payload["allocatedMemoryMb"] = services.memory.total_allocated_mb()
        return payload

    @app.get("/api/metrics/probe")
    async def probe():
        # Polled every 100ms by the sidecar: keep it allocation-light.
        concurrent = services.load.current_concurrent
        return {
            "ts": int(time.time() * 1000),
            "loadTest": {"active": concurrent > 0, "concurrent": concurrent},
        }

    @app.get("/api/telemetry")
    async def telemetry(limit: Annotated[int, Query(ge=1, le=600)] = 60):
        probes = list(services.probe_results)[-limit:]
        samples = list(services.metrics.history)[-limit:]
        return {
            "probes": _dump_all(probes),
            "metrics": _dump_all(samples),
            "loadStats": _dump(services.last_load_stats) if services.last_load_stats else None,
            "loadTest": _dump(services.load.current_stats()),
        }

    # ------------------------------------------------------------------
    # Simulations
    # ------------------------------------------------------------------

    @app.get("/api/simulations")
    async def list_simulations(
        kind: Optional[SimulationKind] = None,
        status: Optional[SimulationStatus] = None,
    ):
        simulations = services.registry.list_all()
        if kind is not None:
            simulations = [sim for sim in simulations if sim.kind == kind]
        if status is not None:
            simulations = [sim for sim in simulations if sim.status == status]
        return {"simulations": _dump_all(simulations), "count": len(simulations)}

    @app.post("/api/simulations/cpu", status_code=201)
    async def start_cpu(params: CpuStressParams):
        simulation = await services.cpu.start(params.target_load_percent, params.duration_seconds)
        return _dump(simulation)

    @app.get("/api/simulations/cpu")
    async def list_cpu():
        return {"simulations": _dump_all(services.cpu.active_simulations())}

    @app.delete("/api/simulations/cpu/{simulation_id}")
    async def stop_cpu(simulation_id: str):
        simulation = await services.cpu.stop(simulation_id)
        if simulation is None:
            raise SimulationNotFoundError(simulation_id)
        return _dump(simulation)

    @app.post("/api/simulations/memory", status_code=201)
    async def allocate_memory(params: MemoryPressureParams):
        simulation = await services.memory.allocate(params.size_mb)
        return _dump(simulation)

    @app.get("/api/simulations/memory")
    async def list_memory():
        return {
            "simulations": _dump_all(services.memory.active_allocations()),
            "totalAllocatedMb": services.memory.total_allocated_mb(),
        }

    @app.delete("/api/simulations/memory/{simulation_id}")
    async def release_memory(simulation_id: str):
        # Idempotent: releasing an unknown id is a success that freed nothing.
        return _dump(services.memory.release(simulation_id))

    @app.post("/api/simulations/eventloop")
    async def block_event_loop(params: SchedulerBlockParams):
        simulation = await services.scheduler.block(params.duration_seconds, params.chunk_ms)
        return _dump(simulation)

    @app.get("/api/simulations/slow")
    async def slow_request(
        delay_seconds: Annotated[float, Query(alias="delaySeconds", gt=0)] = 5.0,
        pattern: SlowRequestPattern = "sleep",
    ):
        simulation = await services.slow.delay(delay_seconds, pattern)
        return _dump(simulation)

    @app.post("/api/simulations/crash/{mode}", status_code=202)
    async def crash(mode: str):
        trigger = _crash_modes(services).get(mode.lower())
        if trigger is None:
            return JSONResponse(
                status_code=404,
                content={
                    "error": f"Unknown crash mode '{mode}'",
                    "modes": sorted(_crash_modes(services)),
                },
            )
        trigger()
        return {"message": f"Crash '{mode}' scheduled; the process is about to terminate"}

    # ------------------------------------------------------------------
    # Admin & load test
    # ------------------------------------------------------------------

    @app.get("/api/admin/events")
    async def recent_events(limit: Annotated[int, Query(ge=1)] = 50):
        return {"events": _dump_all(services.events.recent(limit))}

    @app.get("/api/loadtest")
    async def load_test(
        work_iterations: Annotated[int, Query(alias="workIterations", ge=0)] = 200,
        buffer_size_kb: Annotated[int, Query(alias="bufferSizeKb", ge=0)] = 20000,
        baseline_delay_ms: Annotated[int, Query(alias="baselineDelayMs", ge=0)] = 500,
        soft_limit: Annotated[int, Query(alias="softLimit", ge=1)] = 25,
        degradation_factor: Annotated[int, Query(alias="degradationFactor", ge=0)] = 500,
    ):
        request = LoadTestRequest(
            work_iterations=work_iterations,
            buffer_size_kb=buffer_size_kb,
            baseline_delay_ms=baseline_delay_ms,
            soft_limit=soft_limit,
            degradation_factor=degradation_factor,
        )
        # Synthetic failures propagate: a 500 is the intended outcome.
        return _dump(await services.load.execute_work(request))

    @app.get("/api/loadtest/stats")
    async def load_test_stats():
        return _dump(services.load.current_stats())

    return app
