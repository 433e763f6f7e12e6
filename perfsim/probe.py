"""Responsiveness probe sidecar.

The probe has to keep measuring while the service it measures is blocked, so
it never shares the service's event loop (or even its interpreter lock): it
runs in its own process with its own asyncio loop.

Flow:
    sidecar process                          service process
    ---------------                          ---------------
    ProbeLoop --HTTP GET /api/metrics/probe--> FastAPI app
        |
        +--ProbeResult dicts--> multiprocessing.Queue --> relay thread --> listeners

Scheduling is rate-based: tick ``n`` fires at ``start + n * interval`` no
matter how long earlier probes take. Each probe runs on its own executor
thread with a bounded timeout, so a hung request never delays the next one.
Failures (timeouts, refused connections) are emitted like any other result;
they are the signal that a blocking simulation is working.
"""

from __future__ import annotations

import asyncio
import json
import math
import multiprocessing
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from multiprocessing.context import BaseContext
from typing import Any, Callable, Dict, List, Optional
from urllib import error, request

from .config import Config
from .logging_utils import log_error, log_info, log_warning
from .schemas import ProbeResult, utcnow


PROBE_PATH = "/api/metrics/probe"
PROBE_HEADER = "X-Sidecar-Probe"

ProbeListener = Callable[[ProbeResult], None]


@dataclass(frozen=True)
class ProbeSettings:
    """Where and how often to probe."""

    url: str
    interval_seconds: float = Config.PROBE_INTERVAL_MS / 1000
    timeout_seconds: float = Config.PROBE_TIMEOUT_MS / 1000
    summary_interval_seconds: float = 60.0

    @classmethod
    def for_port(cls, port: int, host: str = "127.0.0.1", **overrides: Any) -> "ProbeSettings":
        return cls(url=f"http://{host}:{port}{PROBE_PATH}", **overrides)

    @property
    def max_in_flight(self) -> int:
        # Enough threads for every probe that can be outstanding within one timeout.
        return max(4, math.ceil(self.timeout_seconds / self.interval_seconds) + 1)


def perform_probe_request(url: str, timeout: float) -> Dict[str, Any]:
    """Execute the blocking probe request and return the decoded JSON body.

    Non-JSON bodies decode to ``{}``; transport errors propagate.
    """
    req = request.Request(url, headers={PROBE_HEADER: "true"}, method="GET")
    with request.urlopen(req, timeout=timeout) as resp:
        raw = resp.read()
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _describe_failure(exc: BaseException) -> str:
    if isinstance(exc, TimeoutError):
        return "timeout"
    if isinstance(exc, error.HTTPError):
        return f"HTTP {exc.code}"
    if isinstance(exc, error.URLError):
        if isinstance(exc.reason, TimeoutError):
            return "timeout"
        return str(exc.reason)
    return f"{type(exc).__name__}: {exc}"


class ProbeLoop:
    """Fixed-rate probe scheduler. Runs inside the sidecar's event loop."""

    def __init__(
        self,
        settings: ProbeSettings,
        emit: ProbeListener,
        *,
        fetch: Callable[[str, float], Dict[str, Any]] = perform_probe_request,
    ) -> None:
        self.settings = settings
        self._emit = emit
        self._fetch = fetch
        self.probe_count = 0
        self.error_count = 0
        self.last_latency_ms = 0.0
        self.load_test_active = False
        self.load_test_concurrent = 0

    async def run(self, should_stop: Callable[[], bool]) -> None:
        loop = asyncio.get_running_loop()
        executor = ThreadPoolExecutor(
            max_workers=self.settings.max_in_flight, thread_name_prefix="probe"
        )
        pending: set[asyncio.Task] = set()
        log_info(
            f"[Sidecar] Monitoring {self.settings.url} every "
            f"{self.settings.interval_seconds * 1000:.0f}ms "
            f"(timeout {self.settings.timeout_seconds * 1000:.0f}ms)"
        )

        next_at = loop.time()
        next_summary = next_at + self.settings.summary_interval_seconds
        try:
            while not should_stop():
                task = asyncio.create_task(self._probe_once(executor))
                pending.add(task)
                task.add_done_callback(pending.discard)

                next_at += self.settings.interval_seconds
                delay = next_at - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)

                if loop.time() >= next_summary:
                    next_summary += self.settings.summary_interval_seconds
                    log_info(
                        f"[Sidecar] Probes: {self.probe_count} ok, {self.error_count} errors, "
                        f"last: {self.last_latency_ms:.0f}ms"
                    )
        finally:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            executor.shutdown(wait=False, cancel_futures=True)

    async def _probe_once(self, executor: ThreadPoolExecutor) -> None:
        loop = asyncio.get_running_loop()
        timestamp = utcnow()
        started = time.perf_counter()
        try:
            body = await loop.run_in_executor(
                executor, self._fetch, self.settings.url, self.settings.timeout_seconds
            )
        except Exception as exc:
            latency_ms = (time.perf_counter() - started) * 1000
            self.error_count += 1
            result = ProbeResult(
                latency_ms=round(latency_ms, 2),
                timestamp=timestamp,
                success=False,
                error=_describe_failure(exc),
                load_test_active=self.load_test_active,
                load_test_concurrent=self.load_test_concurrent,
            )
            # Failures are expected during load tests; keep the console quiet then.
            if not self.load_test_active:
                log_warning(f"[Sidecar] Probe failed after {latency_ms:.0f}ms: {result.error}")
        else:
            latency_ms = (time.perf_counter() - started) * 1000
            self.probe_count += 1
            load_test = body.get("loadTest")
            if isinstance(load_test, dict):
                self.load_test_active = bool(load_test.get("active"))
                self.load_test_concurrent = int(load_test.get("concurrent") or 0)
            result = ProbeResult(
                latency_ms=round(latency_ms, 2),
                timestamp=timestamp,
                success=True,
                load_test_active=self.load_test_active,
                load_test_concurrent=self.load_test_concurrent,
            )

        self.last_latency_ms = latency_ms
        self._emit(result)


def run_probe_sidecar(settings: ProbeSettings, channel: Any, stop_event: Any) -> None:
    """Sidecar process entry point: probe until ``stop_event`` is set."""

    def emit(result: ProbeResult) -> None:
        channel.put(result.model_dump(mode="json", by_alias=True))

    try:
        asyncio.run(ProbeLoop(settings, emit).run(stop_event.is_set))
    except KeyboardInterrupt:
        pass


class ResponsivenessProbe:
    """Owns the sidecar process and relays its results to listeners.

    Usage:
        probe = ResponsivenessProbe(ProbeSettings.for_port(3000))
        probe.subscribe(lambda result: print(result.latency_ms))
        probe.start()
        ...
        probe.stop()
    """

    def __init__(
        self,
        settings: ProbeSettings,
        *,
        listeners: Optional[List[ProbeListener]] = None,
        mp_context: Optional[BaseContext] = None,
    ) -> None:
        self.settings = settings
        self._listeners: List[ProbeListener] = list(listeners or [])
        self._ctx = mp_context or multiprocessing.get_context()
        self._process: Optional[multiprocessing.process.BaseProcess] = None
        self._channel: Any = None
        self._stop_event: Any = None
        self._relay: Optional[threading.Thread] = None

    def subscribe(self, listener: ProbeListener) -> None:
        self._listeners.append(listener)

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._channel = self._ctx.Queue()
        self._stop_event = self._ctx.Event()
        self._process = self._ctx.Process(
            target=run_probe_sidecar,
            args=(self.settings, self._channel, self._stop_event),
            name="perfsim-probe",
            daemon=True,
        )
        self._process.start()
        self._relay = threading.Thread(target=self._relay_results, name="probe-relay", daemon=True)
        self._relay.start()

    def stop(self, timeout: float = 2.0) -> None:
        if self._process is None:
            return
        self._stop_event.set()
        self._process.join(timeout)
        if self._process.is_alive():
            self._process.kill()
            self._process.join(timeout)
        # Sentinel ends the relay loop.
        self._channel.put(None)
        if self._relay is not None:
            self._relay.join(timeout)
        self._process = None
        self._relay = None

    def _relay_results(self) -> None:
        channel = self._channel
        while True:
            payload = channel.get()
            if payload is None:
                return
            result = ProbeResult.model_validate(payload)
            for listener in list(self._listeners):
                try:
                    listener(result)
                except Exception as exc:
                    log_error(f"[Sidecar] Probe listener failed: {exc!r}")
