"""
Recently seen content hashes

Used for loop prevention on the outbound path and duplicate suppression on
the inbound path. Entries expire after the retention window; expired entries
are pruned lazily before each lookup.
"""
import time
import threading
import logging
from typing import Callable, Dict, Optional

from clipsync import config

logger = logging.getLogger(__name__)


class RecentHashSet:
    """Mapping of content hash -> time last observed"""

    def __init__(self, retention: float = config.RETENTION_WINDOW,
                 clock: Callable[[], float] = time.monotonic):
        self.retention = retention
        self._clock = clock
        self._seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _prune_locked(self, now: float):
        cutoff = now - self.retention
        expired = [h for h, ts in self._seen.items() if ts < cutoff]
        for h in expired:
            del self._seen[h]

    def prune(self) -> int:
        """Drop expired entries, returning how many were removed"""
        with self._lock:
            before = len(self._seen)
            self._prune_locked(self._clock())
            return before - len(self._seen)

    def contains(self, content_hash: Optional[str]) -> bool:
        """Whether the hash was observed within the retention window"""
        if not content_hash:
            return False
        with self._lock:
            self._prune_locked(self._clock())
            return content_hash in self._seen

    def record(self, content_hash: Optional[str]):
        """Mark a hash as observed now"""
        if not content_hash:
            return
        with self._lock:
            self._seen[content_hash] = self._clock()

    def check_and_record(self, content_hash: Optional[str]) -> bool:
        """
        Atomically test and record a hash

        Returns:
            True if the hash was already present (a duplicate)
        """
        if not content_hash:
            return False
        with self._lock:
            now = self._clock()
            self._prune_locked(now)
            seen = content_hash in self._seen
            self._seen[content_hash] = now
            return seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
