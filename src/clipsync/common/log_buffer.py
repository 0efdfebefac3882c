"""
In-memory log ring buffer for a live log view
"""
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import List

from clipsync import config


@dataclass(frozen=True)
class LogEntry:
    timestamp: float
    level: str
    logger: str
    message: str


class RingBufferHandler(logging.Handler):
    """Logging handler that keeps the newest records in memory"""

    def __init__(self, capacity: int = config.LOG_BUFFER_SIZE, level=logging.NOTSET):
        super().__init__(level)
        self._entries = deque(maxlen=capacity)
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord):
        try:
            entry = LogEntry(
                timestamp=record.created,
                level=record.levelname,
                logger=record.name,
                message=record.getMessage()
            )
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)

    def entries(self) -> List[LogEntry]:
        """Buffered records, newest first"""
        with self._entries_lock:
            return list(reversed(self._entries))

    def clear(self):
        with self._entries_lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._entries_lock:
            return len(self._entries)
