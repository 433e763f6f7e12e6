"""Fault-injection simulators."""

from .cpu import CpuPressureSimulator
from .crash import CrashTrigger
from .load import DegradingLoadSimulator
from .memory import MemoryPressureSimulator
from .scheduler_block import SchedulerBlockSimulator
from .slow_request import SlowRequestSimulator

__all__ = [
    "CpuPressureSimulator",
    "CrashTrigger",
    "DegradingLoadSimulator",
    "MemoryPressureSimulator",
    "SchedulerBlockSimulator",
    "SlowRequestSimulator",
]
