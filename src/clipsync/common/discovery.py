"""
Peer discovery using mDNS/Zeroconf (Bonjour)

Advertises this device as "<device name>._clipboard-sync._tcp.local." and
browses for other advertisers of the same service type. Every resolution is
written to the PeerDirectory with all of the peer's addresses (IPv4 first,
then IPv6); peers that stop advertising are removed again.
"""
import socket
import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from zeroconf import IPVersion, ServiceBrowser, ServiceInfo, ServiceStateChange, Zeroconf

from clipsync import config
from clipsync.common.errors import DiscoveryError, ErrorCode, format_error
from clipsync.common.peers import PeerDirectory

logger = logging.getLogger(__name__)

RESOLVE_TIMEOUT_MS = 3000


class PeerDiscovery:
    """
    Handles peer discovery and advertisement using mDNS
    """

    def __init__(self, directory: PeerDirectory, device_name: str,
                 port: int = config.PORT,
                 service_type: str = config.SERVICE_TYPE,
                 on_error: Optional[Callable[[DiscoveryError], None]] = None,
                 retry_delay: float = config.PUBLISH_RETRY_DELAY,
                 zeroconf_factory: Callable[[], Zeroconf] = Zeroconf,
                 browser_factory: Callable[..., ServiceBrowser] = ServiceBrowser):
        """
        Initialize peer discovery

        Args:
            directory: Where discovered peers are recorded
            device_name: Our own advertised name (used to skip ourselves)
            port: Port the transport listens on
            service_type: mDNS service type to advertise and browse
            on_error: Called when advertisement fails for good
            retry_delay: Seconds to wait before the single publish retry
        """
        self.directory = directory
        self.device_name = device_name
        self.port = port
        self.service_type = service_type
        self.on_error = on_error
        self.retry_delay = retry_delay
        self._zeroconf_factory = zeroconf_factory
        self._browser_factory = browser_factory

        self.zeroconf: Optional[Zeroconf] = None
        self.browser: Optional[ServiceBrowser] = None
        self.service_info: Optional[ServiceInfo] = None
        self.published = False
        self._instances: Dict[str, str] = {}  # mDNS instance name -> device name
        self._running = False
        self._lock = threading.RLock()

    @property
    def is_running(self) -> bool:
        return self._running

    def _get_local_ips(self) -> List[str]:
        """Local addresses to advertise, primary interface first"""
        ips = []
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            # Doesn't actually connect, just determines the local interface
            s.connect(('8.8.8.8', 80))
            ips.append(s.getsockname()[0])
        except OSError:
            pass
        finally:
            s.close()

        try:
            for info in socket.getaddrinfo(socket.gethostname(), None):
                ip = info[4][0]
                if ip.startswith('127.') or ip == '::1' or ip in ips:
                    continue
                ips.append(ip)
        except socket.gaierror:
            pass

        return ips or ['127.0.0.1']

    def _instance_name(self) -> str:
        return f"{self.device_name}.{self.service_type}"

    # ========== Advertisement ==========

    def _publish(self) -> bool:
        """Register our service, retrying once after retry_delay"""
        self.service_info = ServiceInfo(
            self.service_type,
            self._instance_name(),
            parsed_addresses=self._get_local_ips(),
            port=self.port,
            properties={'name': self.device_name, 'version': config.PROTOCOL_VERSION},
        )

        last_error: Optional[Exception] = None
        for attempt in range(2):
            try:
                self.zeroconf.register_service(self.service_info)
                logger.info(f"Registered service: {self._instance_name()} on port {self.port}")
                return True
            except Exception as e:
                last_error = e
                if attempt == 0:
                    logger.warning(f"Failed to register service: {e}, retrying in {self.retry_delay}s")
                    time.sleep(self.retry_delay)

        error = DiscoveryError(f"Could not advertise {self._instance_name()}: {last_error}",
                               ErrorCode.PUBLISH_FAILED)
        logger.error(format_error(ErrorCode.PUBLISH_FAILED, str(last_error)))
        if self.on_error:
            self.on_error(error)
        return False

    # ========== Browsing ==========

    def _browse(self):
        try:
            self.browser = self._browser_factory(
                self.zeroconf,
                self.service_type,
                handlers=[self._on_service_state_change]
            )
        except Exception as e:
            # No peers until the network stack recovers; not fatal
            self.browser = None
            logger.error(format_error(ErrorCode.BROWSE_FAILED, str(e)))

    def _on_service_state_change(self, zeroconf: Zeroconf, service_type: str,
                                 name: str, state_change: ServiceStateChange):
        """Handle service state changes"""
        try:
            if state_change in (ServiceStateChange.Added, ServiceStateChange.Updated):
                info = zeroconf.get_service_info(service_type, name, RESOLVE_TIMEOUT_MS)
                if info:
                    self._handle_service_found(name, info)
                else:
                    logger.debug(f"Could not resolve {name}")
            elif state_change == ServiceStateChange.Removed:
                self._handle_service_lost(name)
        except Exception as e:
            logger.error(f"Error handling service change for {name}: {e}")

    def _peer_name(self, instance_name: str, info: ServiceInfo) -> str:
        """Device name from the TXT record, falling back to the instance label"""
        properties = info.properties or {}
        raw = properties.get(b'name')
        if raw:
            return raw.decode('utf-8', errors='replace')
        suffix = f".{self.service_type}"
        if instance_name.endswith(suffix):
            return instance_name[:-len(suffix)]
        return instance_name

    def _handle_service_found(self, instance_name: str, info: ServiceInfo):
        """Handle a discovered or re-resolved peer"""
        peer_name = self._peer_name(instance_name, info)

        # Skip our own advertisement
        if peer_name == self.device_name:
            return

        hosts = info.parsed_addresses(IPVersion.V4Only) + info.parsed_scoped_addresses(IPVersion.V6Only)
        if not hosts:
            logger.debug(f"Peer {peer_name} resolved without addresses")
            return

        with self._lock:
            self._instances[instance_name] = peer_name

        self.directory.upsert(peer_name, [(host, info.port) for host in hosts])

    def _handle_service_lost(self, instance_name: str):
        """Handle a peer that stopped advertising"""
        with self._lock:
            peer_name = self._instances.pop(instance_name, None)
        if peer_name:
            logger.info(f"Lost peer: {peer_name}")
            self.directory.remove(peer_name)

    # ========== Lifecycle ==========

    def start(self, advertise: bool = True) -> bool:
        """
        Start peer discovery and advertisement

        Args:
            advertise: Publish our own service (False only browses)

        Returns:
            True if our service was advertised
        """
        with self._lock:
            if self._running:
                return self.published

            self.zeroconf = self._zeroconf_factory()
            self.published = self._publish() if advertise else False
            self._browse()
            self._running = True

        logger.info("Peer discovery started")
        return self.published

    def stop(self):
        """Stop peer discovery"""
        with self._lock:
            if not self._running:
                return

            if self.browser:
                try:
                    self.browser.cancel()
                except Exception as e:
                    logger.debug(f"Browser cancel failed: {e}")
                self.browser = None

            if self.zeroconf:
                if self.published and self.service_info:
                    try:
                        self.zeroconf.unregister_service(self.service_info)
                    except Exception as e:
                        logger.debug(f"Unregister failed: {e}")
                self.zeroconf.close()
                self.zeroconf = None

            self.published = False
            self._instances.clear()
            self._running = False

        self.directory.clear()
        logger.info("Peer discovery stopped")

    def restart(self, device_name: Optional[str] = None) -> bool:
        """Re-advertise, e.g. after the device name changed"""
        with self._lock:
            self.stop()
            if device_name:
                self.device_name = device_name
            logger.info(f"Restarting discovery as {self.device_name}")
            return self.start()
