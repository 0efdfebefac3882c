"""
Chunked file transfer

Sender side:
- ChunkedFileReader: read a file in size-tiered chunks without loading it
  into memory
- build_chunk(): wrap a piece of file data in a FileChunk, compressing it when
  the file is plausibly text and the chunk is worth compressing

Receiver side:
- FileReceiver: the per-file state machine
  (no such transfer -> receiving -> completed), appending chunks to the
  destination file as they arrive in order
"""
import os
import time
import errno
import logging
import threading
from pathlib import Path, PurePath
from typing import Callable, Dict, Iterator, List, Optional, Tuple
from dataclasses import dataclass, field

from clipsync import config
from clipsync.common.compression import compress, decompress, should_compress
from clipsync.common.errors import ErrorCode, ProtocolError, StorageError
from clipsync.common.protocol import FileChunk, FileHeader

logger = logging.getLogger(__name__)

KB = 1024
MB = 1024 * KB

# Chunk size tiers
SMALL_FILE_LIMIT = 1 * MB
MEDIUM_FILE_LIMIT = 10 * MB
SMALL_CHUNK_SIZE = 256 * KB
MEDIUM_CHUNK_SIZE = 512 * KB
LARGE_CHUNK_SIZE = 1 * MB

# Sender throttle: delay proportional to chunk size, capped
THROTTLE_RATE = 10 * MB  # bytes per second of delay
MAX_CHUNK_DELAY = 0.1

# Content sniffing
SNIFF_SIZE = 1024
PRINTABLE_RATIO = 0.9

TEXT_EXTENSIONS = {
    '.txt', '.md', '.markdown', '.rst', '.csv', '.tsv', '.log',
    '.json', '.xml', '.yaml', '.yml', '.toml', '.ini', '.cfg', '.conf',
    '.html', '.htm', '.css', '.js', '.ts', '.jsx', '.tsx',
    '.py', '.rb', '.go', '.rs', '.c', '.h', '.cpp', '.hpp', '.java', '.kt',
    '.swift', '.m', '.sh', '.bash', '.zsh', '.ps1', '.bat', '.sql',
    '.svg', '.rtf', '.tex',
}

# Already compressed or opaque binary; never compressed
BINARY_EXTENSIONS = {
    '.zip', '.gz', '.tgz', '.bz2', '.xz', '.7z', '.rar', '.zst',
    '.jpg', '.jpeg', '.png', '.gif', '.webp', '.heic', '.bmp', '.tiff', '.ico',
    '.mp3', '.aac', '.m4a', '.flac', '.ogg', '.wav',
    '.mp4', '.mov', '.mkv', '.avi', '.webm',
    '.pdf', '.docx', '.xlsx', '.pptx', '.odt', '.epub',
    '.exe', '.dll', '.so', '.dylib', '.bin', '.iso', '.dmg', '.pkg', '.deb', '.rpm',
    '.jar', '.class', '.pyc', '.whl',
}

_COMMON_WHITESPACE = {0x09, 0x0A, 0x0D}


def choose_chunk_size(file_size: int) -> int:
    """Chunk size tier for a file of the given size"""
    if file_size <= SMALL_FILE_LIMIT:
        return SMALL_CHUNK_SIZE
    if file_size <= MEDIUM_FILE_LIMIT:
        return MEDIUM_CHUNK_SIZE
    return LARGE_CHUNK_SIZE


def inter_chunk_delay(chunk_bytes: int, cap: float = MAX_CHUNK_DELAY) -> float:
    """Seconds to pause after sending a chunk of chunk_bytes"""
    return min(chunk_bytes / THROTTLE_RATE, cap)


def _looks_like_text(sample: bytes) -> bool:
    if not sample:
        return True
    if b'\x00' in sample:
        return False
    printable = sum(1 for b in sample if 32 <= b <= 126 or b in _COMMON_WHITESPACE)
    return printable / len(sample) >= PRINTABLE_RATIO


def is_probably_text(path: Path) -> bool:
    """
    Whether a file is plausibly text and so worth compressing

    Known extensions decide first; anything else is sniffed from its first
    kilobyte.
    """
    suffix = Path(path).suffix.lower()
    if suffix in BINARY_EXTENSIONS:
        return False
    if suffix in TEXT_EXTENSIONS:
        return True

    try:
        with open(path, 'rb') as f:
            sample = f.read(SNIFF_SIZE)
    except OSError as e:
        logger.debug(f"Could not sniff {path}: {e}")
        return False
    return _looks_like_text(sample)


class ChunkedFileReader:
    """
    Read a file in chunks for memory-efficient streaming.

    Usage:
        reader = ChunkedFileReader(filepath)
        for chunk_index, data, is_last in reader.read_chunks():
            send(build_chunk(file_id, chunk_index, data, is_last, compressible))
    """

    def __init__(self, filepath: Path, chunk_size: Optional[int] = None):
        self.filepath = Path(filepath)
        self.file_size = self.filepath.stat().st_size
        self.chunk_size = chunk_size or choose_chunk_size(self.file_size)
        # An empty file still produces one (empty, last) chunk
        self.total_chunks = max(1, (self.file_size + self.chunk_size - 1) // self.chunk_size)

    def read_chunks(self) -> Iterator[Tuple[int, bytes, bool]]:
        """Yield (chunk_index, data, is_last) tuples"""
        with open(self.filepath, 'rb') as f:
            for chunk_index in range(self.total_chunks):
                data = f.read(self.chunk_size)
                yield chunk_index, data, chunk_index == self.total_chunks - 1


def build_chunk(file_id: str, chunk_index: int, data: bytes, is_last: bool,
                compressible: bool) -> FileChunk:
    """Create a FileChunk, compressed when that pays off"""
    if compressible and should_compress(data):
        compressed = compress(data)
        if compressed is not None:
            return FileChunk(file_id, chunk_index, compressed, is_last,
                             is_compressed=True, original_size=len(data))
    return FileChunk(file_id, chunk_index, data, is_last)


# ========== Receiver ==========

@dataclass
class PendingFileTransfer:
    """A file being received"""
    file_id: str
    file_name: str
    total_size: int
    sender_name: str
    destination_path: Path
    bytes_written: int = 0
    next_chunk_index: int = 0
    updated_at: float = field(default_factory=time.monotonic)


@dataclass
class CompletedFile:
    """A fully received file"""
    file_name: str
    path: Path
    size: int
    sender_name: str


def sanitize_file_name(name: str) -> str:
    """Reduce a sender-supplied name to a bare file name"""
    base = PurePath(name.replace('\\', '/')).name.strip()
    if base in ('', '.', '..'):
        return "received_file"
    return base


def get_unique_path(path: Path) -> Path:
    """Get a unique path if file already exists"""
    if not path.exists():
        return path

    stem = path.stem
    suffix = path.suffix
    counter = 1

    while path.exists():
        path = path.parent / f"{stem}_{counter}{suffix}"
        counter += 1

    return path


def _storage_error(action: str, path: Path, exc: OSError) -> StorageError:
    if exc.errno == errno.ENOSPC:
        code = ErrorCode.DISK_FULL
    elif exc.errno in (errno.EACCES, errno.EPERM):
        code = ErrorCode.PERMISSION_DENIED
    else:
        code = ErrorCode.WRITE_FAILED
    return StorageError(f"Failed to {action} {path}: {exc}", code)


class FileReceiver:
    """
    Receiver side of chunked file transfers

    Chunks must arrive in index order; a chunk that does not continue its
    transfer is rejected and the transfer is left as it was.
    """

    def __init__(self, download_dir: Path, clock: Callable[[], float] = time.monotonic):
        self.download_dir = Path(download_dir)
        self._clock = clock
        self._pending: Dict[str, PendingFileTransfer] = {}
        self._lock = threading.Lock()

    def __contains__(self, file_id: str) -> bool:
        with self._lock:
            return file_id in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def get(self, file_id: str) -> Optional[PendingFileTransfer]:
        with self._lock:
            return self._pending.get(file_id)

    def handle_header(self, header: FileHeader, sender_name: str) -> PendingFileTransfer:
        """
        Start receiving a file: pick a destination and create it empty

        Raises:
            ProtocolError: A transfer with this id is already in progress
            StorageError: The destination could not be created
        """
        with self._lock:
            if header.file_id in self._pending:
                raise ProtocolError(f"Duplicate header for transfer {header.file_id}")

            file_name = sanitize_file_name(header.file_name)
            try:
                self.download_dir.mkdir(parents=True, exist_ok=True)
                destination = get_unique_path(self.download_dir / file_name)
                with open(destination, 'wb'):
                    pass
            except OSError as e:
                raise _storage_error("create", self.download_dir / file_name, e)

            transfer = PendingFileTransfer(
                file_id=header.file_id,
                file_name=file_name,
                total_size=header.file_size,
                sender_name=sender_name,
                destination_path=destination,
                updated_at=self._clock()
            )
            self._pending[header.file_id] = transfer

        logger.info(f"Receiving {file_name} ({header.file_size} bytes) from {sender_name}")
        return transfer

    def handle_chunk(self, chunk: FileChunk) -> Optional[CompletedFile]:
        """
        Append one chunk to its transfer

        Returns:
            The completed file after the last chunk, otherwise None

        Raises:
            ProtocolError: Unknown transfer, out-of-order chunk or size overrun
            CompressionError: Chunk did not decompress to its original size
            StorageError: Writing failed; the transfer is abandoned
        """
        with self._lock:
            transfer = self._pending.get(chunk.file_id)
            if transfer is None:
                raise ProtocolError(f"Chunk {chunk.chunk_index} for unknown transfer {chunk.file_id}",
                                    ErrorCode.UNKNOWN_TRANSFER)

            if chunk.chunk_index != transfer.next_chunk_index:
                raise ProtocolError(
                    f"Chunk {chunk.chunk_index} of {transfer.file_name} out of order "
                    f"(expected {transfer.next_chunk_index})"
                )

            remaining = transfer.total_size - transfer.bytes_written
            if chunk.is_compressed and not 0 <= (chunk.original_size or 0) <= remaining:
                raise ProtocolError(
                    f"Chunk {chunk.chunk_index} claims {chunk.original_size} bytes, "
                    f"{remaining} left in {transfer.file_name}",
                    ErrorCode.CORRUPT_CHUNK
                )

            data = chunk.data
            if chunk.is_compressed:
                data = decompress(data, chunk.original_size)

            if transfer.bytes_written + len(data) > transfer.total_size:
                raise ProtocolError(f"Chunk {chunk.chunk_index} overruns {transfer.file_name}",
                                    ErrorCode.CORRUPT_CHUNK)

            try:
                with open(transfer.destination_path, 'ab') as f:
                    f.write(data)
            except OSError as e:
                self._abandon_locked(transfer)
                raise _storage_error("write", transfer.destination_path, e)

            transfer.bytes_written += len(data)
            transfer.next_chunk_index += 1
            transfer.updated_at = self._clock()
            logger.debug(f"Chunk {chunk.chunk_index} of {transfer.file_name}: "
                         f"{transfer.bytes_written}/{transfer.total_size} bytes")

            if not chunk.is_last:
                return None

            del self._pending[chunk.file_id]
            if transfer.bytes_written != transfer.total_size:
                self._delete_partial(transfer.destination_path)
                raise ProtocolError(
                    f"{transfer.file_name} ended at {transfer.bytes_written} of {transfer.total_size} bytes",
                    ErrorCode.CORRUPT_CHUNK
                )

        logger.info(f"Received {transfer.file_name} from {transfer.sender_name}")
        return CompletedFile(
            file_name=transfer.file_name,
            path=transfer.destination_path,
            size=transfer.bytes_written,
            sender_name=transfer.sender_name
        )

    def sweep_stale(self, timeout: float = config.STALE_TRANSFER_TIMEOUT) -> List[PendingFileTransfer]:
        """Abandon transfers that received nothing for timeout seconds"""
        now = self._clock()
        with self._lock:
            stale = [t for t in self._pending.values() if now - t.updated_at > timeout]
            for transfer in stale:
                self._abandon_locked(transfer)

        for transfer in stale:
            logger.warning(f"Abandoned stale transfer of {transfer.file_name} from {transfer.sender_name}")
        return stale

    def abandon(self, file_id: str) -> Optional[PendingFileTransfer]:
        """Drop a transfer and delete its partial file"""
        with self._lock:
            transfer = self._pending.get(file_id)
            if transfer:
                self._abandon_locked(transfer)
            return transfer

    def _abandon_locked(self, transfer: PendingFileTransfer):
        self._pending.pop(transfer.file_id, None)
        self._delete_partial(transfer.destination_path)

    @staticmethod
    def _delete_partial(path: Path):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to delete partial file {path}: {e}")
