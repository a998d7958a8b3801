"""
Logging setup and an in-memory buffer of recent log records.

Field devices rarely have a way to ship log files, so the last records are
kept in memory and served to the shell's diagnostics view.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class RecentLogBuffer(logging.Handler):
    """Logging handler keeping the newest ``capacity`` records."""

    def __init__(self, capacity: int = 1000, level: int = logging.NOTSET):
        super().__init__(level)
        self._entries: deque = deque(maxlen=capacity)
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                'level': record.levelname,
                'logger': record.name,
                'message': record.getMessage(),
            }
            if record.exc_info:
                entry['exception'] = logging.Formatter().formatException(record.exc_info)
            with self._entries_lock:
                self._entries.appendleft(entry)
        except Exception:
            self.handleError(record)

    def recent(self, limit: int = 50, level: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Newest-first log entries.

        Args:
            limit: Maximum number of entries returned
            level: Only entries with this level name (e.g. "ERROR")
        """
        with self._entries_lock:
            entries = list(self._entries)
        if level:
            entries = [e for e in entries if e['level'] == level.upper()]
        return entries[:limit]

    def resize(self, capacity: int) -> None:
        with self._entries_lock:
            if capacity != self._entries.maxlen:
                self._entries = deque(self._entries, maxlen=capacity)

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()


log_buffer = RecentLogBuffer()


def configure_logging(level: str = "INFO", buffer_size: Optional[int] = None) -> RecentLogBuffer:
    """Attach a console handler and the shared recent-log buffer to the package logger."""
    if buffer_size:
        log_buffer.resize(buffer_size)

    package_logger = logging.getLogger("fieldsync")
    package_logger.setLevel(level.upper())

    if not any(isinstance(h, RecentLogBuffer) for h in package_logger.handlers):
        package_logger.addHandler(log_buffer)

    if not any(type(h) is logging.StreamHandler for h in package_logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(console)

    return log_buffer
