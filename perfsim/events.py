"""Structured event log for simulation lifecycle notifications.

Every simulator reports what it is doing here. Entries are kept in a bounded
ring buffer (oldest entries fall off), echoed to the console with colour tags,
and pushed to any subscribed broadcasters (dashboard relays, tests).
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from .config import Config
from .logging_utils import log_error, log_info, log_lifecycle, log_success, log_warning
from .schemas import EventLevel, EventLogEntry, SimulationKind


EventBroadcaster = Callable[[EventLogEntry], None]

_SUCCESS_EVENTS = {"SIMULATION_COMPLETED", "MEMORY_RELEASED"}
_LIFECYCLE_EVENTS = {"SIMULATION_STARTED", "SIMULATION_STOPPED", "MEMORY_ALLOCATED"}


class EventLog:
    """Bounded, thread-safe log of simulation events."""

    def __init__(self, max_entries: Optional[int] = None, *, echo: bool = True) -> None:
        self._entries: deque[EventLogEntry] = deque(
            maxlen=max_entries or Config.EVENT_LOG_MAX_ENTRIES
        )
        self._broadcasters: List[EventBroadcaster] = []
        self._lock = threading.Lock()
        self._echo = echo

    def subscribe(self, broadcaster: EventBroadcaster) -> None:
        self._broadcasters.append(broadcaster)

    def log(
        self,
        event: str,
        message: str,
        *,
        level: EventLevel = "info",
        simulation_id: Optional[str] = None,
        simulation_kind: Optional[SimulationKind] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> EventLogEntry:
        entry = EventLogEntry(
            id=str(uuid4()),
            level=level,
            event=event,
            message=message,
            simulation_id=simulation_id,
            simulation_kind=simulation_kind,
            details=details,
        )
        with self._lock:
            self._entries.append(entry)

        if self._echo:
            self._print(entry)

        for broadcaster in list(self._broadcasters):
            broadcaster(entry)
        return entry

    def info(self, event: str, message: str, **options: Any) -> EventLogEntry:
        return self.log(event, message, level="info", **options)

    def warn(self, event: str, message: str, **options: Any) -> EventLogEntry:
        return self.log(event, message, level="warn", **options)

    def error(self, event: str, message: str, **options: Any) -> EventLogEntry:
        return self.log(event, message, level="error", **options)

    def recent(self, limit: Optional[int] = None) -> List[EventLogEntry]:
        """Return up to ``limit`` entries, oldest first."""
        with self._lock:
            entries = list(self._entries)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def _print(entry: EventLogEntry) -> None:
        line = f"[{entry.timestamp.isoformat()}] {entry.event}: {entry.message}"
        if entry.level == "error":
            log_error(line)
        elif entry.level == "warn":
            log_warning(line)
        elif entry.event in _SUCCESS_EVENTS:
            log_success(line)
        elif entry.event in _LIFECYCLE_EVENTS:
            log_lifecycle(line)
        else:
            log_info(line)
