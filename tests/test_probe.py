"""Tests for the responsiveness probe.

A stdlib HTTP server stands in for the service so the probe can be pointed at
something healthy, something hung, or nothing at all.
"""

import asyncio
import json
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from perfsim.events import EventLog
from perfsim.probe import PROBE_PATH, ProbeLoop, ProbeSettings, ResponsivenessProbe
from perfsim.registry import SimulationRegistry
from perfsim.schemas import ProbeResult, utcnow
from perfsim.simulators.scheduler_block import SchedulerBlockSimulator


def make_handler(delay: float = 0.0, concurrent: int = 0):
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            if delay:
                time.sleep(delay)
            body = json.dumps(
                {"ts": int(time.time() * 1000), "loadTest": {"active": concurrent > 0, "concurrent": concurrent}}
            ).encode()
            try:
                self.send_response(200)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
            except (BrokenPipeError, ConnectionResetError):
                pass

        def log_message(self, format, *args):
            pass

    return Handler


@pytest.fixture
def serve():
    servers = []

    def start(delay: float = 0.0, concurrent: int = 0) -> str:
        server = ThreadingHTTPServer(("127.0.0.1", 0), make_handler(delay, concurrent))
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return f"http://127.0.0.1:{server.server_address[1]}{PROBE_PATH}"

    yield start
    for server in servers:
        server.shutdown()
        server.server_close()


def unused_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def run_for(loop_runner: ProbeLoop, seconds: float) -> None:
    deadline = time.monotonic() + seconds
    await loop_runner.run(lambda: time.monotonic() >= deadline)


def test_settings_for_port_targets_probe_endpoint():
    settings = ProbeSettings.for_port(4321)
    assert settings.url == f"http://127.0.0.1:4321{PROBE_PATH}"
    assert settings.max_in_flight >= 4


def test_thread_pool_covers_every_request_outstanding_within_timeout():
    settings = ProbeSettings(url="http://unused", interval_seconds=0.1, timeout_seconds=10)
    assert settings.max_in_flight == 101


@pytest.mark.asyncio
async def test_successful_probes_report_load_test_state(serve):
    url = serve(concurrent=3)
    results = []
    loop_runner = ProbeLoop(ProbeSettings(url=url, interval_seconds=0.05, timeout_seconds=1), results.append)

    await run_for(loop_runner, 0.5)

    assert len(results) >= 5
    assert all(r.success for r in results)
    assert results[-1].load_test_active is True
    assert results[-1].load_test_concurrent == 3


@pytest.mark.asyncio
async def test_refused_connection_is_emitted_as_failure():
    url = f"http://127.0.0.1:{unused_port()}{PROBE_PATH}"
    results = []
    loop_runner = ProbeLoop(ProbeSettings(url=url, interval_seconds=0.05, timeout_seconds=0.5), results.append)

    await run_for(loop_runner, 0.3)

    assert results
    assert not any(r.success for r in results)
    assert all(r.error for r in results)
    assert loop_runner.error_count == len(results)


@pytest.mark.asyncio
async def test_hung_target_times_out_without_stalling_schedule(serve):
    url = serve(delay=0.6)
    results = []
    settings = ProbeSettings(url=url, interval_seconds=0.05, timeout_seconds=0.2)
    loop_runner = ProbeLoop(settings, results.append)

    await run_for(loop_runner, 1.0)

    # Probes fire every 50ms even though each one hangs for 200ms.
    timed_out = [r for r in results if r.error == "timeout"]
    assert len(timed_out) >= 10
    assert all(r.latency_ms >= 150 for r in timed_out)
    spacing = [
        (b.timestamp - a.timestamp).total_seconds() for a, b in zip(timed_out, timed_out[1:])
    ]
    assert max(spacing) < 0.2


def test_relay_delivers_results_to_listeners():
    probe = ResponsivenessProbe(ProbeSettings(url="http://unused"))
    received = []
    probe.subscribe(received.append)

    class Channel:
        def __init__(self, items):
            self.items = list(items)

        def get(self):
            return self.items.pop(0)

    sample = ProbeResult(latency_ms=12.5, timestamp=utcnow(), success=False, error="timeout")
    probe._channel = Channel([sample.model_dump(mode="json", by_alias=True), None])
    probe._relay_results()

    assert received == [sample]


@pytest.mark.asyncio
@pytest.mark.slow
async def test_sidecar_keeps_probing_while_loop_is_blocked(serve):
    url = serve()
    received = []
    probe = ResponsivenessProbe(ProbeSettings(url=url, interval_seconds=0.1, timeout_seconds=1))
    probe.subscribe(received.append)
    probe.start()
    try:
        deadline = time.monotonic() + 10
        while not received:
            assert time.monotonic() < deadline, "sidecar never reported"
            await asyncio.sleep(0.1)

        before = len(received)
        blocker = SchedulerBlockSimulator(SimulationRegistry(), EventLog(echo=False))
        await blocker.block(3, chunk_ms=200)
        during = len(received) - before
    finally:
        probe.stop()

    assert not probe.is_running
    # ~30 probes at 100ms over 3s; allow generous slack for slow CI hosts.
    assert during >= 15


@pytest.mark.asyncio
async def test_latency_stays_bounded_when_many_requests_hang(serve):
    url = serve(delay=1.0)
    results = []
    # 30 requests outstanding at once: none may queue behind the others.
    settings = ProbeSettings(url=url, interval_seconds=0.01, timeout_seconds=0.3)
    loop_runner = ProbeLoop(settings, results.append)

    await run_for(loop_runner, 0.8)

    assert len(results) >= 20
    assert all(r.error == "timeout" for r in results)
    assert max(r.latency_ms for r in results) < 300 + 200
