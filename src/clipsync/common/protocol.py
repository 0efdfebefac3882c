"""
Wire protocol for clipsync

Every message is one SyncEnvelope carrying exactly one payload kind. The
envelope is serialized to JSON (binary fields base64-encoded), encrypted with
AES-256-GCM and length-prefixed:

┌──────────────┬──────────────┬─────────────────────┬──────────────┐
│ Length (4B)  │ Nonce (12B)  │ Ciphertext          │ Tag (16B)    │
│ big-endian   │              │ (JSON envelope)     │              │
└──────────────┴──────────────┴─────────────────────┴──────────────┘

The receiver answers every complete frame with a constant, unencrypted ack
frame, whatever it decided to do with the message.
"""
import json
import time
import base64
import struct
import logging
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import List, Optional, Union

from clipsync import config
from clipsync.common import hashing
from clipsync.common.crypto import encrypt, decrypt
from clipsync.common.errors import EncodingError, ProtocolError, ErrorCode

logger = logging.getLogger(__name__)

HEADER_SIZE = 4
MAX_MESSAGE_SIZE = config.MAX_MESSAGE_SIZE
MAX_BUFFER_SIZE = MAX_MESSAGE_SIZE + HEADER_SIZE
ACK = b"ACK"


def _safe_json_parse(data: bytes, expected_keys: Optional[List[str]] = None) -> tuple:
    """
    Parse JSON without raising

    Returns:
        (True, parsed) on success, (False, error message) otherwise
    """
    try:
        text = data.decode('utf-8')
    except UnicodeDecodeError as e:
        return False, f"Invalid UTF-8: {e}"

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        return False, f"Invalid JSON: {e}"

    if expected_keys:
        if not isinstance(parsed, dict):
            return False, "Invalid structure: expected an object"
        missing = [k for k in expected_keys if k not in parsed]
        if missing:
            return False, f"Missing keys: {', '.join(missing)}"

    return True, parsed


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def _b64decode(text: str) -> bytes:
    try:
        return base64.b64decode(text.encode('ascii'), validate=True)
    except (ValueError, UnicodeEncodeError) as e:
        raise ProtocolError(f"Invalid base64 field: {e}")


# ========== Clipboard items ==========

class PayloadKind:
    """Kinds of clipboard payload"""
    TEXT = "text"
    IMAGE = "image"
    RICH_TEXT = "rtf"
    PDF = "pdf"
    FILE_REF = "fileURL"

    BINARY = (IMAGE, RICH_TEXT, PDF)
    ALL = (TEXT, IMAGE, RICH_TEXT, PDF, FILE_REF)


@dataclass(frozen=True)
class ClipboardPayload:
    """One clipboard value: text, image, rich text, PDF or file reference"""
    kind: str
    value: Union[str, bytes]

    def __post_init__(self):
        if self.kind not in PayloadKind.ALL:
            raise ProtocolError(f"Unknown payload kind: {self.kind}")
        expects_bytes = self.kind in PayloadKind.BINARY
        if expects_bytes != isinstance(self.value, bytes):
            raise ProtocolError(f"Payload kind {self.kind} has value of type {type(self.value).__name__}")

    @classmethod
    def text(cls, value: str) -> 'ClipboardPayload':
        return cls(PayloadKind.TEXT, value)

    @classmethod
    def image(cls, value: bytes) -> 'ClipboardPayload':
        return cls(PayloadKind.IMAGE, value)

    @classmethod
    def rich_text(cls, value: bytes) -> 'ClipboardPayload':
        return cls(PayloadKind.RICH_TEXT, value)

    @classmethod
    def pdf(cls, value: bytes) -> 'ClipboardPayload':
        return cls(PayloadKind.PDF, value)

    @classmethod
    def file_ref(cls, path: str) -> 'ClipboardPayload':
        return cls(PayloadKind.FILE_REF, str(path))

    def content_hash(self) -> str:
        """
        Canonical hash of this payload

        Raises:
            EncodingError: For text that is not UTF-8 representable
        """
        if self.kind == PayloadKind.TEXT:
            return hashing.hash_text(self.value)
        if self.kind == PayloadKind.FILE_REF:
            return hashing.hash_file_ref(self.value)
        return hashing.hash_bytes(self.value)

    @property
    def title(self) -> str:
        """Short one-line description for menus and logs"""
        if self.kind == PayloadKind.TEXT:
            return self.value.strip().replace("\n", " ")
        if self.kind == PayloadKind.IMAGE:
            return "[Image]"
        if self.kind == PayloadKind.RICH_TEXT:
            return "[Rich Text]"
        if self.kind == PayloadKind.PDF:
            return "[PDF Document]"
        return f"[File] {PurePath(self.value).name}"

    def to_dict(self) -> dict:
        if isinstance(self.value, bytes):
            return {'kind': self.kind, 'value': _b64encode(self.value)}
        return {'kind': self.kind, 'value': self.value}

    @classmethod
    def from_dict(cls, data: dict) -> 'ClipboardPayload':
        kind = data.get('kind')
        value = data.get('value')
        if not isinstance(value, str):
            raise ProtocolError("Clipboard payload value must be a string")
        if kind in PayloadKind.BINARY:
            return cls(kind, _b64decode(value))
        return cls(kind, value)


@dataclass(frozen=True)
class ClipboardEntry:
    """A captured clipboard item. Immutable once constructed."""
    payload: ClipboardPayload
    created_at: float
    source_label: Optional[str] = None
    content_hash: Optional[str] = None  # None when the payload is not hashable

    @classmethod
    def capture(cls, payload: ClipboardPayload, source_label: Optional[str] = None,
                created_at: Optional[float] = None) -> 'ClipboardEntry':
        """Build an entry and compute its content hash"""
        try:
            content_hash = payload.content_hash()
        except EncodingError as e:
            logger.warning(f"Clipboard item cannot be de-duplicated: {e}")
            content_hash = None

        return cls(
            payload=payload,
            created_at=created_at if created_at is not None else time.time(),
            source_label=source_label,
            content_hash=content_hash
        )

    def to_dict(self) -> dict:
        return {
            'payload': self.payload.to_dict(),
            'created_at': self.created_at,
            'source_label': self.source_label,
            'content_hash': self.content_hash
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ClipboardEntry':
        return cls(
            payload=ClipboardPayload.from_dict(data['payload']),
            created_at=float(data.get('created_at', 0.0)),
            source_label=data.get('source_label'),
            content_hash=data.get('content_hash')
        )


# ========== Snippets ==========

@dataclass
class Snippet:
    id: str
    title: str
    content: str

    def to_dict(self) -> dict:
        return {'id': self.id, 'title': self.title, 'content': self.content}

    @classmethod
    def from_dict(cls, data: dict) -> 'Snippet':
        return cls(id=str(data['id']), title=data['title'], content=data['content'])


@dataclass
class SnippetFolder:
    id: str
    title: str
    snippets: List[Snippet] = field(default_factory=list)
    is_enabled: bool = True

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'title': self.title,
            'snippets': [s.to_dict() for s in self.snippets],
            'is_enabled': self.is_enabled
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'SnippetFolder':
        return cls(
            id=str(data['id']),
            title=data['title'],
            snippets=[Snippet.from_dict(s) for s in data.get('snippets', [])],
            is_enabled=bool(data.get('is_enabled', True))
        )


@dataclass
class SnippetCollection:
    """Ordered list of snippet folders, synced as a whole"""
    folders: List[SnippetFolder] = field(default_factory=list)

    def content_hash(self) -> str:
        return hashing.hash_snippet_folders(self.folders)

    def to_dict(self) -> dict:
        return {'folders': [f.to_dict() for f in self.folders]}

    @classmethod
    def from_dict(cls, data: dict) -> 'SnippetCollection':
        return cls(folders=[SnippetFolder.from_dict(f) for f in data.get('folders', [])])


# ========== Control and file transfer payloads ==========

@dataclass(frozen=True)
class Ping:
    """Liveness probe"""
    device_name: str
    timestamp: float = 0.0

    def to_dict(self) -> dict:
        return {'device_name': self.device_name, 'timestamp': self.timestamp}

    @classmethod
    def from_dict(cls, data: dict) -> 'Ping':
        return cls(device_name=data['device_name'], timestamp=float(data.get('timestamp', 0.0)))


@dataclass(frozen=True)
class Handshake:
    """Sent to a peer right after it is discovered"""
    device_name: str
    port: int = config.PORT
    version: str = config.PROTOCOL_VERSION

    def to_dict(self) -> dict:
        return {'device_name': self.device_name, 'port': self.port, 'version': self.version}

    @classmethod
    def from_dict(cls, data: dict) -> 'Handshake':
        return cls(
            device_name=data['device_name'],
            port=int(data.get('port', config.PORT)),
            version=str(data.get('version', config.PROTOCOL_VERSION))
        )


@dataclass(frozen=True)
class FileHeader:
    """Announces a file transfer; precedes all chunks of that file"""
    file_id: str
    file_name: str
    file_size: int

    def to_dict(self) -> dict:
        return {'file_id': self.file_id, 'file_name': self.file_name, 'file_size': self.file_size}

    @classmethod
    def from_dict(cls, data: dict) -> 'FileHeader':
        file_size = int(data['file_size'])
        if file_size < 0:
            raise ProtocolError(f"Negative file size: {file_size}")
        return cls(file_id=str(data['file_id']), file_name=data['file_name'], file_size=file_size)


@dataclass(frozen=True)
class FileChunk:
    """One piece of a file, optionally compressed"""
    file_id: str
    chunk_index: int
    data: bytes
    is_last: bool = False
    is_compressed: bool = False
    original_size: Optional[int] = None  # set when is_compressed

    def to_dict(self) -> dict:
        result = {
            'file_id': self.file_id,
            'chunk_index': self.chunk_index,
            'data': _b64encode(self.data),
            'is_last': self.is_last,
            'is_compressed': self.is_compressed
        }
        if self.is_compressed:
            result['original_size'] = self.original_size
        return result

    @classmethod
    def from_dict(cls, data: dict) -> 'FileChunk':
        is_compressed = bool(data.get('is_compressed', False))
        original_size = data.get('original_size')
        if is_compressed and original_size is None:
            raise ProtocolError("Compressed chunk without original_size")
        if original_size is not None and int(original_size) < 0:
            raise ProtocolError(f"Negative original_size: {original_size}")
        return cls(
            file_id=str(data['file_id']),
            chunk_index=int(data['chunk_index']),
            data=_b64decode(data['data']),
            is_last=bool(data.get('is_last', False)),
            is_compressed=is_compressed,
            original_size=int(original_size) if original_size is not None else None
        )


# ========== Envelope ==========

class MessageKind:
    """Discriminator of the envelope payload"""
    CLIPBOARD = "clipboard"
    SNIPPETS = "snippets"
    PING = "ping"
    HANDSHAKE = "handshake"
    FILE_HEADER = "file_header"
    FILE_CHUNK = "file_chunk"


PAYLOAD_TYPES = {
    MessageKind.CLIPBOARD: ClipboardEntry,
    MessageKind.SNIPPETS: SnippetCollection,
    MessageKind.PING: Ping,
    MessageKind.HANDSHAKE: Handshake,
    MessageKind.FILE_HEADER: FileHeader,
    MessageKind.FILE_CHUNK: FileChunk,
}


@dataclass(frozen=True)
class SyncEnvelope:
    """A single wire message with exactly one payload"""
    kind: str
    payload: object
    content_hash: Optional[str] = None
    origin: Optional[str] = None

    def __post_init__(self):
        expected = PAYLOAD_TYPES.get(self.kind)
        if expected is None:
            raise ProtocolError(f"Unknown message kind: {self.kind}")
        if not isinstance(self.payload, expected):
            raise ProtocolError(f"{self.kind} envelope carries {type(self.payload).__name__}")

    @classmethod
    def for_clipboard(cls, entry: ClipboardEntry, origin: str) -> 'SyncEnvelope':
        return cls(MessageKind.CLIPBOARD, entry, entry.content_hash, origin)

    @classmethod
    def for_snippets(cls, collection: SnippetCollection, origin: str,
                     content_hash: Optional[str] = None) -> 'SyncEnvelope':
        return cls(MessageKind.SNIPPETS, collection, content_hash or collection.content_hash(), origin)

    def to_dict(self) -> dict:
        return {
            'kind': self.kind,
            'payload': self.payload.to_dict(),
            'content_hash': self.content_hash,
            'origin': self.origin
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict()).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'SyncEnvelope':
        """
        Parse an envelope

        Raises:
            ProtocolError: On malformed JSON, unknown kind or bad payload
        """
        ok, parsed = _safe_json_parse(data, expected_keys=['kind', 'payload'])
        if not ok:
            raise ProtocolError(parsed)

        kind = parsed['kind']
        payload_type = PAYLOAD_TYPES.get(kind)
        if payload_type is None:
            raise ProtocolError(f"Unknown message kind: {kind}")
        if not isinstance(parsed['payload'], dict):
            raise ProtocolError(f"Payload of {kind} is not an object")

        try:
            payload = payload_type.from_dict(parsed['payload'])
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ProtocolError(f"Malformed {kind} payload: {e!r}")

        content_hash = parsed.get('content_hash')
        origin = parsed.get('origin')
        if content_hash is not None and not isinstance(content_hash, str):
            raise ProtocolError("content_hash must be a string")
        if origin is not None and not isinstance(origin, str):
            raise ProtocolError("origin must be a string")

        return cls(kind=kind, payload=payload, content_hash=content_hash, origin=origin)


# ========== Framing ==========

def frame(payload: bytes) -> bytes:
    """Prefix payload with its 4-byte big-endian length"""
    if len(payload) > MAX_MESSAGE_SIZE:
        raise ProtocolError(f"Message of {len(payload)} bytes exceeds limit", ErrorCode.MESSAGE_TOO_LARGE)
    return struct.pack('>I', len(payload)) + payload


class MessageBuilder:
    """Build framed protocol messages"""

    @staticmethod
    def build_envelope(envelope: SyncEnvelope, key: bytes) -> bytes:
        """Serialize, encrypt and frame an envelope"""
        package = encrypt(envelope.to_json(), key)
        return frame(package.to_bytes())

    @staticmethod
    def build_ack() -> bytes:
        return frame(ACK)


class MessageParser:
    """Reassemble frames from a byte stream and open envelopes"""

    def __init__(self, key: Optional[bytes] = None):
        self.buffer = bytearray()
        self.key = key

    def feed(self, data: bytes):
        """Feed data into the parser buffer"""
        if len(self.buffer) + len(data) > MAX_BUFFER_SIZE:
            self.buffer.clear()
            raise ProtocolError("Receive buffer overflow", ErrorCode.MESSAGE_TOO_LARGE)
        self.buffer.extend(data)

    def parse_one(self) -> Optional[bytes]:
        """
        Try to take one complete frame payload from the buffer

        Returns: payload bytes or None if incomplete
        """
        if len(self.buffer) < HEADER_SIZE:
            return None

        msg_len = struct.unpack('>I', self.buffer[:HEADER_SIZE])[0]
        if msg_len > MAX_MESSAGE_SIZE:
            self.buffer.clear()
            raise ProtocolError(f"Frame of {msg_len} bytes exceeds limit", ErrorCode.MESSAGE_TOO_LARGE)

        total_needed = HEADER_SIZE + msg_len
        if len(self.buffer) < total_needed:
            return None

        payload = bytes(self.buffer[HEADER_SIZE:total_needed])
        del self.buffer[:total_needed]
        return payload

    def open_envelope(self, payload: bytes) -> SyncEnvelope:
        """
        Decrypt and parse one frame payload

        Raises:
            DecryptError: Wrong key, tampered or truncated ciphertext
            ProtocolError: Decrypted bytes are not a valid envelope
        """
        plaintext = decrypt(payload, self.key)
        return SyncEnvelope.from_json(plaintext)
