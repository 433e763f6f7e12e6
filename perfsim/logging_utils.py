"""Logging utilities for Perfsim.

Provides color-coded console output so lifecycle events, warnings and crashes
stand out while a simulation is hammering the process.
"""

import os
from enum import Enum


class Color(Enum):
    """ANSI color codes for terminal output."""

    BLUE = "\033[94m"      # Lifecycle (started / stopped)
    YELLOW = "\033[93m"    # Warnings, degraded behaviour
    RED = "\033[91m"       # Errors, failures, crashes
    GREEN = "\033[92m"     # Completion
    CYAN = "\033[96m"      # Info/metadata

    # Formatting
    BOLD = "\033[1m"
    RESET = "\033[0m"


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap text in ANSI color codes if colors are enabled.

    Args:
        text: Text to colorize
        color: Color to apply
        bold: Whether to make text bold

    Returns:
        Colorized text if PERFSIM_NO_COLOR is not set, otherwise plain text
    """
    if os.getenv("PERFSIM_NO_COLOR"):
        return text

    prefix = color.value
    if bold:
        prefix = Color.BOLD.value + prefix

    return f"{prefix}{text}{Color.RESET.value}"


def log_lifecycle(message: str) -> None:
    """Log a simulation lifecycle transition (blue)."""
    print(colored(f"{LOG_TAG_LIFECYCLE} {message}", Color.BLUE), flush=True)


def log_warning(message: str) -> None:
    """Log a warning (yellow)."""
    print(colored(f"{LOG_TAG_WARNING} {message}", Color.YELLOW), flush=True)


def log_error(message: str) -> None:
    """Log an error or failure (red)."""
    print(colored(f"{LOG_TAG_ERROR} {message}", Color.RED), flush=True)


def log_success(message: str) -> None:
    """Log a success (green)."""
    print(colored(f"{LOG_TAG_SUCCESS} {message}", Color.GREEN), flush=True)


def log_info(message: str) -> None:
    """Log metadata/info (cyan)."""
    print(colored(f"{LOG_TAG_INFO} {message}", Color.CYAN), flush=True)


# Markers for operation types (color-blind accessible)
LOG_TAG_LIFECYCLE = "[•]"
LOG_TAG_WARNING = "[~]"
LOG_TAG_ERROR = "[!]"
LOG_TAG_SUCCESS = "[✓]"
LOG_TAG_INFO = "[i]"
