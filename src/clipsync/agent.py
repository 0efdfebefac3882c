"""
Sync Engine - coordinates discovery, transport, dedup and file transfer

Outbound: local clipboard changes, snippet edits and files are encrypted and
sent to every authorized peer. Inbound: frames from the transport are
decrypted, checked against the allow-list and the recent-hash set, then handed
to the clipboard/snippet/file-history collaborators.

Threading:
- one inbound worker applies received messages in arrival order
- one outbound worker performs all sends, so the chunks of a file reach a
  peer strictly in order (each send waits for the receiver's ack)
- a maintenance thread sweeps stale transfers, prunes hashes and pings peers

Inbound and outbound run on separate workers so two devices sending to each
other at the same time do not wait on each other's acks forever.
"""
import time
import uuid
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from clipsync import config
from clipsync.common.errors import (
    ConnectError,
    DecryptError,
    EncodingError,
    ErrorCode,
    ProtocolError,
    SendError,
    StorageError,
    SyncError,
    format_error,
)
from clipsync.common.file_transfer import (
    MAX_CHUNK_DELAY,
    ChunkedFileReader,
    FileReceiver,
    build_chunk,
    inter_chunk_delay,
    is_probably_text,
)
from clipsync.common.peers import PeerDirectory, PeerIdentity
from clipsync.common.protocol import (
    ClipboardEntry,
    FileHeader,
    Handshake,
    MessageBuilder,
    MessageKind,
    MessageParser,
    Ping,
    SnippetCollection,
    SyncEnvelope,
)
from clipsync.common.recent import RecentHashSet
from clipsync.common.stores import ClipboardStore, FileHistoryStore, SnippetStore
from clipsync.common.transport import Transport
from clipsync.common.user_config import ConfigManager, format_size

logger = logging.getLogger(__name__)

Address = Tuple[str, int]


class SyncEngine:
    """
    Replicates clipboard items, snippets and files between authorized peers
    """

    def __init__(self,
                 config_manager: ConfigManager,
                 clipboard_store: ClipboardStore,
                 snippet_store: SnippetStore,
                 file_history: FileHistoryStore,
                 directory: Optional[PeerDirectory] = None,
                 transport: Optional[Transport] = None,
                 discovery=None,
                 recent: Optional[RecentHashSet] = None,
                 file_receiver: Optional[FileReceiver] = None,
                 key: Optional[bytes] = None,
                 chunk_delay_cap: float = MAX_CHUNK_DELAY,
                 stale_timeout: float = config.STALE_TRANSFER_TIMEOUT,
                 maintenance_interval: float = config.MAINTENANCE_INTERVAL,
                 on_peers_changed: Optional[Callable[[List[str]], None]] = None,
                 on_error: Optional[Callable[[SyncError], None]] = None):
        """
        Initialize the sync engine

        Args:
            config_manager: Source of device name, toggles, allow-list and key
            clipboard_store: Receives clipboard items from peers
            snippet_store: Receives snippet collections from peers
            file_history: Told about sent, received and failed files
            directory: Peer directory shared with discovery
            transport: Network transport; its on_message is taken over
            discovery: Optional PeerDiscovery started and stopped with the engine
            key: Fixed AES key; derived from the configured passphrase if omitted
            chunk_delay_cap: Upper bound of the pause between file chunks
            on_peers_changed: Called with sorted peer names when the set changes
            on_error: Called with errors the operator should see
        """
        self.config_manager = config_manager
        cfg = config_manager.get()

        self.clipboard_store = clipboard_store
        self.snippet_store = snippet_store
        self.file_history = file_history

        self.directory = directory if directory is not None else PeerDirectory(config_manager.is_allowed)
        self.directory.on_change = self._on_directory_changed
        self.transport = transport if transport is not None else Transport(cfg.port)
        self.transport.on_message = self._on_frame
        self.discovery = discovery
        self.recent = recent if recent is not None else RecentHashSet()
        self.file_receiver = (file_receiver if file_receiver is not None
                              else FileReceiver(Path(cfg.download_dir)))

        self.chunk_delay_cap = chunk_delay_cap
        self.stale_timeout = stale_timeout
        self.maintenance_interval = maintenance_interval
        self.on_peers_changed = on_peers_changed
        self.on_error = on_error

        self._fixed_key = key is not None
        self._key = key if key is not None else config_manager.encryption_key()
        config_manager.add_listener(self._on_config_changed)

        self._lock = threading.Lock()
        self._last_received_hash: Optional[str] = None
        self._last_received_payload = None
        self._known_peers = set(self.directory.snapshot())

        self._inbound: Optional[ThreadPoolExecutor] = None
        self._outbound: Optional[ThreadPoolExecutor] = None
        self._maintenance_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False

        self._handlers = {
            MessageKind.CLIPBOARD: self._handle_clipboard,
            MessageKind.SNIPPETS: self._handle_snippets,
            MessageKind.PING: self._handle_ping,
            MessageKind.HANDSHAKE: self._handle_handshake,
            MessageKind.FILE_HEADER: self._handle_file_header,
            MessageKind.FILE_CHUNK: self._handle_file_chunk,
        }

    # ========== Lifecycle ==========

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def device_name(self) -> str:
        return self.config_manager.get().device_name

    def start(self):
        """
        Start listening, discovery and the maintenance loop

        Raises:
            SyncError: If the transport cannot listen
        """
        if self._running:
            return

        if self._key is None:
            logger.warning(format_error(ErrorCode.NO_PASSPHRASE))

        self._inbound = ThreadPoolExecutor(max_workers=1, thread_name_prefix="clipsync-inbound")
        self._outbound = ThreadPoolExecutor(max_workers=1, thread_name_prefix="clipsync-outbound")

        try:
            self.transport.start()
        except SyncError as e:
            logger.error(format_error(e.code, str(e)))
            self._shutdown_workers()
            self._report_error(e)
            raise

        self._running = True

        if self.discovery:
            self.discovery.start()

        self._stop_event.clear()
        self._maintenance_thread = threading.Thread(target=self._maintenance_loop, daemon=True)
        self._maintenance_thread.start()

        logger.info(f"Sync engine started as {self.device_name} on port {self.transport.actual_port}")

    def stop(self):
        """Stop the engine; pending sends are finished first"""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()

        if self.discovery:
            self.discovery.stop()

        self.transport.stop()
        self._shutdown_workers()

        if self._maintenance_thread:
            self._maintenance_thread.join(timeout=2)
            self._maintenance_thread = None

        logger.info("Sync engine stopped")

    def _shutdown_workers(self):
        for executor in (self._inbound, self._outbound):
            if executor:
                executor.shutdown(wait=True)
        self._inbound = None
        self._outbound = None

    def peers(self) -> List[PeerIdentity]:
        """Currently known peers with their authorization"""
        return self.directory.peers()

    def _report_error(self, error: SyncError):
        if self.on_error:
            try:
                self.on_error(error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")

    def _on_config_changed(self, key: str, value):
        if key in ('passphrase', 'kdf_salt', '*') and not self._fixed_key:
            self._key = self.config_manager.encryption_key()
            logger.info("Encryption key updated")

    def _on_directory_changed(self, names: List[str]):
        with self._lock:
            added = [name for name in names if name not in self._known_peers]
            self._known_peers = set(names)

        for name in added:
            if self.directory.is_authorized(name):
                self._submit_outbound(self._send_handshake, name)

        if self.on_peers_changed:
            try:
                self.on_peers_changed(names)
            except Exception as e:
                logger.error(f"Peer change callback failed: {e}")

    # ========== Outbound ==========

    def broadcast_clipboard_item(self, entry: ClipboardEntry) -> int:
        """
        Send a locally captured clipboard item to all authorized peers

        Returns:
            Number of peers that acknowledged
        """
        cfg = self.config_manager.get()
        if not (cfg.sync_enabled and cfg.sync_text):
            return 0
        if not self._running:
            logger.debug("Engine not running, clipboard item not sent")
            return 0
        # Computed here; a caller-supplied hash may be missing or stale
        content_hash = self._local_hash(entry.payload.content_hash)
        if not self._should_broadcast(content_hash, entry.payload):
            return 0

        peers = self.directory.authorized_peers()
        if not peers:
            logger.debug("No authorized peers to send clipboard item to")
            return 0

        if entry.content_hash != content_hash:
            entry = replace(entry, content_hash=content_hash)
        frame = self._encode(SyncEnvelope.for_clipboard(entry, cfg.device_name))
        if frame is None:
            return 0
        return self._run_outbound(self._fan_out, frame, peers, f"clipboard item {entry.payload.title[:40]!r}")

    def broadcast_snippets(self, collection: SnippetCollection) -> int:
        """
        Send the local snippet collection to all authorized peers

        Returns:
            Number of peers that acknowledged
        """
        cfg = self.config_manager.get()
        if not (cfg.sync_enabled and cfg.sync_snippets):
            return 0
        if not self._running:
            logger.debug("Engine not running, snippets not sent")
            return 0

        content_hash = self._local_hash(collection.content_hash)
        if not self._should_broadcast(content_hash):
            return 0

        peers = self.directory.authorized_peers()
        if not peers:
            logger.debug("No authorized peers to send snippets to")
            return 0

        frame = self._encode(SyncEnvelope(MessageKind.SNIPPETS, collection, content_hash, cfg.device_name))
        if frame is None:
            return 0
        return self._run_outbound(self._fan_out, frame, peers, f"{len(collection.folders)} snippet folder(s)")

    def send_file(self, path: Path) -> int:
        """
        Send a file to all authorized peers in chunks

        Returns:
            Number of peers that received the whole file
        """
        cfg = self.config_manager.get()
        if not (cfg.sync_enabled and cfg.sync_files):
            return 0
        if not self._running:
            logger.debug("Engine not running, file not sent")
            return 0

        path = Path(path)
        if not path.is_file():
            logger.error(f"Not a file: {path}")
            return 0

        size = path.stat().st_size
        if size > cfg.max_file_size:
            logger.warning(format_error(ErrorCode.FILE_TOO_LARGE,
                                        f"{path.name} is {format_size(size)}, limit {format_size(cfg.max_file_size)}"))
            return 0

        peers = self.directory.authorized_peers()
        if not peers:
            logger.debug("No authorized peers to send file to")
            return 0

        return self._run_outbound(self._transfer_file, path, size, peers)

    @staticmethod
    def _local_hash(compute: Callable[[], str]) -> Optional[str]:
        try:
            return compute()
        except EncodingError as e:
            logger.warning(f"Item cannot be de-duplicated: {e}")
            return None

    def _should_broadcast(self, content_hash: Optional[str], payload=None) -> bool:
        """Loop prevention and sender-side dedup; records the hash"""
        if content_hash is None:
            # Unhashable items fall back to comparing the payload itself
            with self._lock:
                if payload is not None and payload == self._last_received_payload:
                    logger.debug("Not re-broadcasting unhashable item just received from a peer")
                    return False
            return True

        with self._lock:
            if content_hash == self._last_received_hash:
                logger.debug("Not re-broadcasting item just received from a peer")
                return False

        if self.recent.check_and_record(content_hash):
            logger.debug(f"Suppressing duplicate broadcast of {content_hash[:12]}")
            return False
        return True

    def _encode(self, envelope: SyncEnvelope) -> Optional[bytes]:
        key = self._key
        if key is None:
            logger.warning(f"Not sending {envelope.kind}: no passphrase configured")
            return None
        try:
            return MessageBuilder.build_envelope(envelope, key)
        except ProtocolError as e:
            logger.error(f"Cannot send {envelope.kind}: {e}")
            return None

    def _run_outbound(self, fn, *args) -> int:
        """Run fn on the outbound worker and wait for its result"""
        executor = self._outbound
        if executor is None:
            return 0
        try:
            return executor.submit(fn, *args).result()
        except RuntimeError as e:
            # Executor shut down by a concurrent stop()
            logger.debug(f"Outbound worker unavailable: {e}")
            return 0

    def _submit_outbound(self, fn, *args):
        executor = self._outbound
        if executor is None:
            return
        try:
            executor.submit(fn, *args)
        except RuntimeError as e:
            logger.debug(f"Outbound worker unavailable: {e}")

    def _send_to_peer(self, name: str, frame: bytes) -> bool:
        addresses = self.directory.addresses(name)
        try:
            address = self.transport.send(frame, addresses)
            logger.debug(f"Delivered {len(frame)} bytes to {name} at {address}")
            return True
        except ConnectError as e:
            logger.warning(f"Peer {name} unreachable: {e}")
        except SendError as e:
            logger.warning(f"Send to {name} failed: {e}")
        return False

    def _fan_out(self, frame: bytes, peers: List[str], label: str) -> int:
        delivered = sum(1 for name in peers if self._send_to_peer(name, frame))
        logger.info(f"Sent {label} to {delivered}/{len(peers)} peer(s)")
        return delivered

    def _transfer_file(self, path: Path, size: int, peers: List[str]) -> int:
        """Header then chunks, each chunk to every peer still in the transfer"""
        origin = self.device_name
        file_id = str(uuid.uuid4())

        header = self._encode(SyncEnvelope(MessageKind.FILE_HEADER,
                                           FileHeader(file_id, path.name, size), origin=origin))
        if header is None:
            return 0
        active = [name for name in peers if self._send_to_peer(name, header)]
        if not active:
            return 0

        compressible = is_probably_text(path)
        try:
            reader = ChunkedFileReader(path)
            logger.info(f"Sending {path.name} ({format_size(size)}) in {reader.total_chunks} chunk(s) "
                        f"of {format_size(reader.chunk_size)} to {', '.join(active)}")

            for chunk_index, data, is_last in reader.read_chunks():
                chunk = build_chunk(file_id, chunk_index, data, is_last, compressible)
                frame = self._encode(SyncEnvelope(MessageKind.FILE_CHUNK, chunk, origin=origin))
                if frame is None:
                    return 0

                active = [name for name in active if self._send_to_peer(name, frame)]
                if not active:
                    logger.warning(f"Transfer of {path.name} failed for all peers")
                    return 0

                if not is_last:
                    delay = inter_chunk_delay(len(data), self.chunk_delay_cap)
                    if delay > 0:
                        time.sleep(delay)
        except OSError as e:
            logger.error(f"Failed to read {path}: {e}")
            return 0

        self.file_history.record_sent_file(path.name, path, size, active)
        logger.info(f"Sent {path.name} to {len(active)}/{len(peers)} peer(s)")
        return len(active)

    def _send_handshake(self, name: str):
        handshake = Handshake(self.device_name, port=self.transport.actual_port)
        frame = self._encode(SyncEnvelope(MessageKind.HANDSHAKE, handshake, origin=self.device_name))
        if frame is not None and self._send_to_peer(name, frame):
            logger.info(f"Handshake with {name} complete")

    def _send_ping(self, name: str):
        ping = Ping(self.device_name, time.time())
        frame = self._encode(SyncEnvelope(MessageKind.PING, ping, origin=self.device_name))
        if frame is not None:
            self._send_to_peer(name, frame)

    # ========== Inbound ==========

    def _on_frame(self, payload: bytes, address: Address):
        """Transport callback; returns once the message has been handled"""
        executor = self._inbound
        if executor is None:
            return
        try:
            executor.submit(self.handle_payload, payload, address).result()
        except RuntimeError as e:
            logger.debug(f"Inbound worker unavailable: {e}")

    def handle_payload(self, payload: bytes, address: Optional[Address] = None) -> bool:
        """
        Decrypt, authorize, dedup and apply one received frame payload

        Returns:
            True if the message was applied
        """
        key = self._key
        if key is None:
            logger.warning(f"Dropping message from {address}: no passphrase configured")
            return False

        try:
            envelope = MessageParser(key).open_envelope(payload)
        except DecryptError as e:
            logger.warning(f"Dropping undecryptable message from {address}: {e}")
            return False
        except ProtocolError as e:
            logger.warning(f"Dropping malformed message from {address}: {e}")
            return False

        origin = envelope.origin
        if origin and origin == self.device_name:
            logger.debug(f"Ignoring {envelope.kind} from ourselves")
            return False

        if not self.directory.is_authorized(origin):
            logger.warning(f"Dropping {envelope.kind} from unauthorized origin {origin!r} at {address}")
            return False

        try:
            return self._handlers[envelope.kind](envelope, address)
        except Exception as e:
            logger.error(f"Error applying {envelope.kind} from {origin}: {e}")
            return False

    def _verified_hash(self, compute: Callable[[], str], claimed: Optional[str], origin: str) -> Optional[str]:
        """Recompute a received item's hash; the sender's value is only compared"""
        try:
            local = compute()
        except EncodingError as e:
            logger.warning(f"Item from {origin} cannot be de-duplicated: {e}")
            return None

        if claimed is None:
            logger.debug(f"No content hash from {origin}, using recomputed hash")
        elif claimed != local:
            logger.warning(f"Content hash from {origin} does not match its payload, using recomputed hash")
        return local

    def _accept_content(self, content_hash: Optional[str], origin: str, kind: str) -> bool:
        if self.recent.check_and_record(content_hash):
            logger.debug(f"Dropping duplicate {kind} from {origin}")
            return False
        if content_hash is not None:
            with self._lock:
                self._last_received_hash = content_hash
        return True

    def _handle_clipboard(self, envelope: SyncEnvelope, address: Optional[Address]) -> bool:
        if not self.config_manager.get().sync_text:
            logger.debug("Clipboard sync disabled, ignoring item")
            return False

        entry: ClipboardEntry = envelope.payload
        content_hash = self._verified_hash(entry.payload.content_hash, envelope.content_hash, envelope.origin)
        if not self._accept_content(content_hash, envelope.origin, envelope.kind):
            return False
        with self._lock:
            self._last_received_payload = entry.payload if content_hash is None else None

        self.clipboard_store.apply_remote_item(replace(entry, content_hash=content_hash))
        logger.info(f"Received clipboard item from {envelope.origin}")
        return True

    def _handle_snippets(self, envelope: SyncEnvelope, address: Optional[Address]) -> bool:
        if not self.config_manager.get().sync_snippets:
            logger.debug("Snippet sync disabled, ignoring collection")
            return False

        collection: SnippetCollection = envelope.payload
        content_hash = self._verified_hash(collection.content_hash, envelope.content_hash, envelope.origin)
        if not self._accept_content(content_hash, envelope.origin, envelope.kind):
            return False

        self.snippet_store.apply_remote_collection(collection)
        logger.info(f"Received {len(collection.folders)} snippet folder(s) from {envelope.origin}")
        return True

    def _handle_ping(self, envelope: SyncEnvelope, address: Optional[Address]) -> bool:
        self.directory.touch(envelope.origin)
        logger.debug(f"Ping from {envelope.origin}")
        return True

    def _handle_handshake(self, envelope: SyncEnvelope, address: Optional[Address]) -> bool:
        handshake: Handshake = envelope.payload
        if handshake.version != config.PROTOCOL_VERSION:
            logger.warning(f"{envelope.origin} speaks protocol {handshake.version}, "
                           f"we speak {config.PROTOCOL_VERSION}")
        # The connection comes from an ephemeral port; the handshake names the listening one
        peer_address = (address[0], handshake.port) if address else None
        self.directory.touch(envelope.origin, peer_address)
        logger.info(f"Handshake from {envelope.origin}")
        return True

    def _handle_file_header(self, envelope: SyncEnvelope, address: Optional[Address]) -> bool:
        header: FileHeader = envelope.payload
        if not self.config_manager.get().sync_files:
            logger.debug(f"File sync disabled, ignoring {header.file_name}")
            return False

        try:
            self.file_receiver.handle_header(header, envelope.origin)
            return True
        except StorageError as e:
            logger.error(format_error(e.code, str(e)))
            self.file_history.record_failed_file(header.file_name, envelope.origin, str(e))
            self._report_error(e)
        except ProtocolError as e:
            logger.warning(f"Rejected file header from {envelope.origin}: {e}")
        return False

    def _handle_file_chunk(self, envelope: SyncEnvelope, address: Optional[Address]) -> bool:
        chunk = envelope.payload
        transfer = self.file_receiver.get(chunk.file_id)
        if transfer is not None and transfer.sender_name != envelope.origin:
            logger.warning(f"Dropping chunk of {transfer.file_name} from {envelope.origin}, "
                           f"transfer belongs to {transfer.sender_name}")
            return False

        try:
            completed = self.file_receiver.handle_chunk(chunk)
        except StorageError as e:
            logger.error(format_error(e.code, str(e)))
            self.file_history.record_failed_file(transfer.file_name, envelope.origin, str(e))
            self._report_error(e)
            return False
        except ProtocolError as e:
            logger.warning(f"Dropping chunk {chunk.chunk_index} from {envelope.origin}: {e}")
            if transfer is not None and chunk.file_id not in self.file_receiver:
                self.file_history.record_failed_file(transfer.file_name, envelope.origin, str(e))
            return False

        if completed is not None:
            self.file_history.record_received_file(completed.file_name, completed.path,
                                                   completed.size, completed.sender_name)
        return True

    # ========== Maintenance ==========

    def run_maintenance(self):
        """Evict stale transfers, prune old hashes and ping authorized peers"""
        for transfer in self.file_receiver.sweep_stale(self.stale_timeout):
            self.file_history.record_failed_file(transfer.file_name, transfer.sender_name,
                                                 "Transfer timed out")

        pruned = self.recent.prune()
        if pruned:
            logger.debug(f"Pruned {pruned} expired content hash(es)")

        for name in self.directory.authorized_peers():
            self._submit_outbound(self._send_ping, name)

    def _maintenance_loop(self):
        while not self._stop_event.wait(self.maintenance_interval):
            try:
                self.run_maintenance()
            except Exception as e:
                logger.error(f"Maintenance error: {e}")
