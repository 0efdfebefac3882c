"""
Collaborator interfaces the sync engine calls out to

The engine never owns clipboard history, snippets or the file history; it
hands received content to these stores. The abstract classes define the
interface; the concrete classes are the reference implementations used by the
command-line agent.
"""
import json
import time
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Callable, List, Optional

from clipsync.common.protocol import ClipboardEntry, SnippetCollection

logger = logging.getLogger(__name__)


class ClipboardStore(ABC):
    """Receives clipboard items that arrived from peers"""

    @abstractmethod
    def apply_remote_item(self, entry: ClipboardEntry) -> None:
        """
        Apply an item received from a peer

        Args:
            entry: The received item; its content_hash is the locally
                recomputed one
        """
        pass


class SnippetStore(ABC):
    """Receives snippet collections that arrived from peers"""

    @abstractmethod
    def apply_remote_collection(self, collection: SnippetCollection) -> None:
        """Replace local snippets with a collection received from a peer"""
        pass


class FileHistoryStore(ABC):
    """Records file transfers for history and notifications"""

    @abstractmethod
    def record_received_file(self, name: str, path: Path, size: int, sender_name: str) -> None:
        pass

    @abstractmethod
    def record_sent_file(self, name: str, path: Path, size: int, peer_names: List[str]) -> None:
        pass

    @abstractmethod
    def record_failed_file(self, name: str, sender_name: str, reason: str) -> None:
        """A received transfer was abandoned (stale, write error, corrupt)"""
        pass


# ========== Reference implementations ==========

class HistoryClipboardStore(ClipboardStore):
    """
    Bounded clipboard history, newest first

    An item whose content hash is already in the history moves to the top
    instead of being added twice.
    """

    def __init__(self, limit: int = 50,
                 on_item: Optional[Callable[[ClipboardEntry], None]] = None):
        """
        Args:
            limit: Maximum number of items kept
            on_item: Called for every remote item, e.g. to place it on the
                system clipboard
        """
        self.limit = limit
        self.on_item = on_item
        self._items: List[ClipboardEntry] = []
        self._lock = threading.Lock()

    def add(self, entry: ClipboardEntry):
        """Insert an item at the top of the history"""
        with self._lock:
            if entry.content_hash is not None:
                self._items = [i for i in self._items if i.content_hash != entry.content_hash]
            self._items.insert(0, entry)
            del self._items[self.limit:]

    def apply_remote_item(self, entry: ClipboardEntry) -> None:
        self.add(entry)
        logger.info(f"Applied remote clipboard item: {entry.payload.title[:40]}")
        if self.on_item:
            self.on_item(entry)

    def items(self) -> List[ClipboardEntry]:
        with self._lock:
            return list(self._items)

    def clear(self):
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class JsonSnippetStore(SnippetStore):
    """Snippet collection persisted as a JSON file"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._collection = self._load()

    def _load(self) -> SnippetCollection:
        if not self.path.exists():
            return SnippetCollection()
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return SnippetCollection.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load snippets from {self.path}: {e}")
            return SnippetCollection()

    @property
    def collection(self) -> SnippetCollection:
        with self._lock:
            return self._collection

    def save(self, collection: SnippetCollection) -> bool:
        """Replace the stored collection and write it to disk"""
        with self._lock:
            self._collection = collection
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, 'w', encoding='utf-8') as f:
                    json.dump(collection.to_dict(), f, indent=2)
                return True
            except OSError as e:
                logger.error(f"Failed to save snippets: {e}")
                return False

    def apply_remote_collection(self, collection: SnippetCollection) -> None:
        self.save(collection)
        logger.info(f"Applied remote snippets: {len(collection.folders)} folder(s)")


@dataclass
class FileRecord:
    """One entry of the file history"""
    direction: str  # "received", "sent" or "failed"
    name: str
    size: int = 0
    path: Optional[str] = None
    peers: Optional[List[str]] = None
    reason: Optional[str] = None
    timestamp: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


class FileHistoryLog(FileHistoryStore):
    """In-memory file history, newest first"""

    def __init__(self, limit: int = 100):
        self.limit = limit
        self._records: List[FileRecord] = []
        self._lock = threading.Lock()

    def _add(self, record: FileRecord):
        record.timestamp = time.time()
        with self._lock:
            self._records.insert(0, record)
            del self._records[self.limit:]

    def record_received_file(self, name: str, path: Path, size: int, sender_name: str) -> None:
        self._add(FileRecord("received", name, size, str(path), [sender_name]))

    def record_sent_file(self, name: str, path: Path, size: int, peer_names: List[str]) -> None:
        self._add(FileRecord("sent", name, size, str(path), list(peer_names)))

    def record_failed_file(self, name: str, sender_name: str, reason: str) -> None:
        self._add(FileRecord("failed", name, peers=[sender_name], reason=reason))

    def records(self) -> List[FileRecord]:
        with self._lock:
            return list(self._records)
