"""
Perfsim Configuration

Loads configuration from environment variables with sensible defaults.
"""

import os
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


def _int_env(name: str, default: int) -> int:
    """Read an integer env var, falling back to ``default`` when unset or unparseable."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    """Application configuration loaded from environment variables."""

    # HTTP server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = _int_env("PORT", 3000)

    # Metrics collection / broadcast interval
    METRICS_INTERVAL_MS: int = _int_env("METRICS_INTERVAL_MS", 250)

    # Simulation bounds (no practical limit by default)
    MAX_SIMULATION_DURATION_SECONDS: int = _int_env("MAX_SIMULATION_DURATION_SECONDS", 86400)
    MAX_MEMORY_ALLOCATION_MB: int = _int_env("MAX_MEMORY_ALLOCATION_MB", 65536)

    # Event log ring buffer size
    EVENT_LOG_MAX_ENTRIES: int = _int_env("EVENT_LOG_MAX_ENTRIES", 100)

    # Responsiveness probe sidecar
    PROBE_ENABLED: bool = _bool_env("PROBE_ENABLED", True)
    PROBE_INTERVAL_MS: int = _int_env("PROBE_INTERVAL_MS", 100)
    PROBE_TIMEOUT_MS: int = _int_env("PROBE_TIMEOUT_MS", 10000)

    # Grace window before CPU workers are force-killed
    CPU_STOP_GRACE_MS: int = _int_env("CPU_STOP_GRACE_MS", 200)

    # Rolling load-test statistics period
    LOAD_STATS_INTERVAL_SECONDS: int = _int_env("LOAD_STATS_INTERVAL_SECONDS", 60)

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors for values that cannot work."""
        if not 0 < cls.PORT < 65536:
            raise ValueError(f"PORT must be between 1 and 65535 (got {cls.PORT})")

        if cls.PROBE_INTERVAL_MS <= 0:
            raise ValueError("PROBE_INTERVAL_MS must be positive")

        if cls.PROBE_TIMEOUT_MS <= 0:
            raise ValueError("PROBE_TIMEOUT_MS must be positive")

        if cls.EVENT_LOG_MAX_ENTRIES <= 0:
            raise ValueError("EVENT_LOG_MAX_ENTRIES must be positive")

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "Perfsim Configuration:",
            f"  Listen: {cls.HOST}:{cls.PORT}",
            f"  Metrics Interval: {cls.METRICS_INTERVAL_MS}ms",
            f"  Max Duration: {cls.MAX_SIMULATION_DURATION_SECONDS}s",
            f"  Max Allocation: {cls.MAX_MEMORY_ALLOCATION_MB}MB",
            f"  Probe: {'on' if cls.PROBE_ENABLED else 'off'} "
            f"(every {cls.PROBE_INTERVAL_MS}ms, timeout {cls.PROBE_TIMEOUT_MS}ms)",
        ]
        return "\n".join(lines)


class Limits:
    """Validation bounds for simulation parameters."""

    MIN_CPU_LOAD_PERCENT = 1
    MAX_CPU_LOAD_PERCENT = 100
    MAX_DURATION_SECONDS = Config.MAX_SIMULATION_DURATION_SECONDS
    MIN_MEMORY_MB = 1
    MAX_MEMORY_MB = Config.MAX_MEMORY_ALLOCATION_MB
    MIN_CHUNK_MS = 50
    MAX_CHUNK_MS = 2000
    DEFAULT_CHUNK_MS = 200
