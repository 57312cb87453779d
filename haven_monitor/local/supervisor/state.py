import uuid
import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Deque, List, Optional

from haven_monitor.local.relay_config import RelayConfig
from haven_monitor.local.supervisor.classifier import LEVEL_ERROR, LEVEL_INFO, LEVEL_WARN

_LOGGING_LEVELS = {
    LEVEL_INFO: logging.INFO,
    LEVEL_WARN: logging.WARNING,
    LEVEL_ERROR: logging.ERROR,
}


@dataclass
class ProcessState:
    """
    Operational state published by the supervisor.

    `importing` and `booting` are never both true. `running` is true only while
    a worker process handle is alive.
    """
    running: bool = False
    booting: bool = False
    boot_status: str = ""
    importing: bool = False
    import_status: str = ""
    import_progress: float = 0.0
    locked: bool = False
    started_at: Optional[datetime] = None
    active_connections: int = 0
    events_stored: int = 0
    memory_mb: float = 0.0
    cpu_percent: float = 0.0

    def snapshot(self) -> "ProcessState":
        return replace(self)


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    level: str
    message: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def logging_level(self) -> int:
        return _LOGGING_LEVELS.get(self.level, logging.INFO)


@dataclass
class ImportRun:
    """
    Book-keeping for one requested import.

    `pending_config` is set when the import had to wait for a running worker to
    stop; it is the configuration the relay is restarted with afterwards.
    """
    start_date: Optional[date]
    pending_config: Optional[RelayConfig] = None


class LogBuffer:
    """A capped, thread-safe sequence of log entries; the oldest are evicted first."""

    def __init__(self, capacity: int) -> None:
        self._entries: Deque[LogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def snapshot(self, last: Optional[int] = None) -> List[LogEntry]:
        with self._lock:
            entries = list(self._entries)
        if last is not None:
            return entries[-last:] if last > 0 else []
        return entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
