"""
TCP transport for framed envelopes

One request per connection: the sender connects, writes a single
length-prefixed frame and waits for the receiver's ack frame; the receiver
reads exactly one frame, hands the payload to on_message, writes the ack and
closes. Since send() only returns after the ack, consecutive sends to the same
peer are processed by the receiver in order.
"""
import socket
import logging
import threading
from typing import Callable, Iterable, Optional, Tuple

from clipsync import config
from clipsync.common.errors import ConnectError, ErrorCode, ProtocolError, SendError, SyncError
from clipsync.common.protocol import ACK, MessageBuilder, MessageParser

logger = logging.getLogger(__name__)

Address = Tuple[str, int]


class Transport:
    """
    Listens for inbound frames and sends outbound ones

    Frames are opaque here; decryption and authorization happen in the
    on_message callback.
    """

    def __init__(self, port: int = config.PORT,
                 on_message: Optional[Callable[[bytes, Address], None]] = None,
                 host: Optional[str] = None,
                 connect_timeout: float = config.CONNECT_TIMEOUT,
                 ack_timeout: float = config.ACK_TIMEOUT,
                 read_timeout: float = config.READ_TIMEOUT):
        """
        Args:
            port: Port to listen on (0 picks a free one)
            on_message: Called with (frame payload, remote address) for each
                inbound frame; the ack is written after it returns
            host: Interface to bind, None for all IPv4 and IPv6 interfaces
        """
        self.port = port
        self.on_message = on_message
        self.host = host
        self.connect_timeout = connect_timeout
        self.ack_timeout = ack_timeout
        self.read_timeout = read_timeout

        self._server_socket: Optional[socket.socket] = None
        self._server_thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def actual_port(self) -> int:
        """Bound port, useful when started with port 0"""
        if self._server_socket:
            return self._server_socket.getsockname()[1]
        return self.port

    # ========== Server ==========

    def start(self):
        """
        Bind the listening socket and start accepting connections

        Raises:
            SyncError: If the port cannot be bound
        """
        if self._running:
            return

        try:
            self._server_socket = self._bind()
        except OSError as e:
            raise SyncError(f"Cannot listen on port {self.port}: {e}", ErrorCode.PORT_IN_USE)

        self._server_socket.settimeout(1.0)  # For clean shutdown
        self._running = True

        self._server_thread = threading.Thread(target=self._server_loop, daemon=True)
        self._server_thread.start()
        logger.info(f"Transport listening on port {self.actual_port}")

    def _bind(self) -> socket.socket:
        if self.host is None and socket.has_dualstack_ipv6():
            return socket.create_server(('', self.port), family=socket.AF_INET6,
                                        dualstack_ipv6=True, backlog=5)

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host or '0.0.0.0', self.port))
            sock.listen(5)
        except OSError:
            sock.close()
            raise
        return sock

    def stop(self):
        """Stop accepting connections"""
        if not self._running:
            return
        self._running = False

        if self._server_socket:
            try:
                self._server_socket.close()
            except OSError as e:
                logger.debug(f"Error closing server socket: {e}")

        if self._server_thread:
            self._server_thread.join(timeout=2)

        self._server_socket = None
        self._server_thread = None
        logger.info("Transport stopped")

    def _server_loop(self):
        """Main server loop accepting connections"""
        while self._running:
            try:
                client_socket, addr = self._server_socket.accept()
                logger.debug(f"Connection from {addr}")

                handler = threading.Thread(
                    target=self._handle_client,
                    args=(client_socket, addr),
                    daemon=True
                )
                handler.start()
            except socket.timeout:
                continue
            except OSError as e:
                if self._running:
                    logger.error(f"Server error: {e}")

    def _handle_client(self, client_socket: socket.socket, addr: tuple):
        """Read one frame, dispatch it, ack and close"""
        address = (addr[0], addr[1])
        parser = MessageParser()

        try:
            client_socket.settimeout(self.read_timeout)
            payload = self._read_frame(client_socket, parser)
            if payload is None:
                logger.debug(f"Connection from {address} closed before a full frame")
                return

            if self.on_message:
                try:
                    self.on_message(payload, address)
                except Exception as e:
                    logger.error(f"Error dispatching message from {address}: {e}")

            # Same ack whatever happened to the message
            client_socket.sendall(MessageBuilder.build_ack())

        except ProtocolError as e:
            logger.warning(f"Rejected frame from {address}: {e}")
        except socket.timeout:
            logger.warning(f"Connection timeout from {address}")
        except OSError as e:
            logger.error(f"Error handling client {address}: {e}")
        finally:
            client_socket.close()

    @staticmethod
    def _read_frame(sock: socket.socket, parser: MessageParser) -> Optional[bytes]:
        while True:
            payload = parser.parse_one()
            if payload is not None:
                return payload

            data = sock.recv(config.BUFFER_SIZE)
            if not data:
                return None
            parser.feed(data)

    # ========== Client ==========

    def send(self, frame: bytes, addresses: Iterable[Address]) -> Address:
        """
        Deliver one frame to a peer and wait for its ack

        Addresses are tried in order; the next one is only used when the
        connection itself could not be established.

        Returns:
            The address that acknowledged

        Raises:
            ConnectError: No address accepted a connection
            SendError: Connected, but the frame was not acknowledged
        """
        last_error: Optional[Exception] = None
        tried = 0

        for address in addresses:
            tried += 1
            try:
                sock = socket.create_connection(address, timeout=self.connect_timeout)
            except OSError as e:
                logger.debug(f"Connect to {address} failed: {e}")
                last_error = e
                continue

            try:
                self._deliver(sock, frame, address)
                return address
            finally:
                sock.close()

        if tried == 0:
            raise ConnectError("Peer has no known addresses", ErrorCode.PEER_UNREACHABLE)
        raise ConnectError(f"All {tried} address(es) unreachable: {last_error}", ErrorCode.PEER_UNREACHABLE)

    def _deliver(self, sock: socket.socket, frame: bytes, address: Address):
        parser = MessageParser()
        try:
            sock.settimeout(self.ack_timeout)
            sock.sendall(frame)
            reply = self._read_frame(sock, parser)
        except socket.timeout:
            raise SendError(f"No ack from {address} within {self.ack_timeout}s", ErrorCode.CONNECTION_TIMEOUT)
        except ProtocolError as e:
            raise SendError(f"Invalid reply from {address}: {e}")
        except OSError as e:
            raise SendError(f"Send to {address} failed: {e}")

        if reply != ACK:
            raise SendError(f"Connection to {address} closed without ack")
