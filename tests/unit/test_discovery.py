"""
Unit tests for discovery.py - mDNS advertisement and browsing

Zeroconf itself is replaced by an in-memory fake; ServiceInfo records are
real so address ordering and TXT parsing go through the library.
"""
import pytest
from zeroconf import ServiceInfo, ServiceStateChange

from clipsync.common.discovery import PeerDiscovery
from clipsync.common.errors import DiscoveryError, ErrorCode
from clipsync.common.peers import PeerDirectory

SERVICE_TYPE = "_clipboard-sync._tcp.local."


class FakeZeroconf:
    def __init__(self, register_failures=0):
        self.register_failures = register_failures
        self.register_attempts = 0
        self.registered = []
        self.unregistered = []
        self.services = {}
        self.closed = False

    def register_service(self, info):
        self.register_attempts += 1
        if self.register_attempts <= self.register_failures:
            raise OSError("multicast unavailable")
        self.registered.append(info)

    def unregister_service(self, info):
        self.unregistered.append(info)

    def get_service_info(self, service_type, name, timeout=3000):
        return self.services.get(name)

    def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, zeroconf, service_type, handlers):
        self.zeroconf = zeroconf
        self.service_type = service_type
        self.handlers = handlers
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    def fire(self, name, state_change):
        for handler in self.handlers:
            handler(zeroconf=self.zeroconf, service_type=self.service_type,
                    name=name, state_change=state_change)


def make_info(device_name, addresses, port=5566):
    return ServiceInfo(
        SERVICE_TYPE,
        f"{device_name}.{SERVICE_TYPE}",
        parsed_addresses=addresses,
        port=port,
        properties={'name': device_name, 'version': '1'},
    )


@pytest.fixture
def zc():
    return FakeZeroconf()


@pytest.fixture
def directory():
    return PeerDirectory(lambda name: True)


def make_discovery(directory, zc, name="Desktop", errors=None, browser_factory=FakeBrowser):
    discovery = PeerDiscovery(
        directory, name,
        retry_delay=0,
        on_error=errors.append if errors is not None else None,
        zeroconf_factory=lambda: zc,
        browser_factory=browser_factory,
    )
    discovery._get_local_ips = lambda: ['192.168.1.2']
    return discovery


class TestAdvertisement:

    def test_publishes_name_and_port(self, directory, zc):
        discovery = make_discovery(directory, zc)
        assert discovery.start() is True

        info = zc.registered[0]
        assert info.name == f"Desktop.{SERVICE_TYPE}"
        assert info.port == 5566
        assert info.properties[b'name'] == b'Desktop'

    def test_retry_once_then_succeed(self, directory):
        zc = FakeZeroconf(register_failures=1)
        errors = []
        discovery = make_discovery(directory, zc, errors=errors)

        assert discovery.start() is True
        assert zc.register_attempts == 2
        assert errors == []

    def test_two_failures_reported(self, directory):
        zc = FakeZeroconf(register_failures=2)
        errors = []
        discovery = make_discovery(directory, zc, errors=errors)

        assert discovery.start() is False
        assert zc.register_attempts == 2
        assert len(errors) == 1
        assert isinstance(errors[0], DiscoveryError)
        assert errors[0].code == ErrorCode.PUBLISH_FAILED

        # Browsing still runs without an advertisement
        assert discovery.is_running
        assert discovery.browser is not None

    def test_browse_only(self, directory, zc):
        discovery = make_discovery(directory, zc)
        assert discovery.start(advertise=False) is False
        assert zc.registered == []
        assert discovery.browser is not None

    def test_browse_failure_not_fatal(self, directory, zc):
        def broken_browser(*args, **kwargs):
            raise OSError("no multicast route")

        discovery = make_discovery(directory, zc, browser_factory=broken_browser)
        assert discovery.start() is True
        assert discovery.browser is None
        assert discovery.is_running

    def test_stop_unregisters_and_clears(self, directory, zc):
        discovery = make_discovery(directory, zc)
        discovery.start()
        browser = discovery.browser
        directory.upsert("Laptop", [("10.0.0.2", 5566)])

        discovery.stop()
        assert browser.cancelled
        assert zc.unregistered == zc.registered
        assert zc.closed
        assert len(directory) == 0
        assert not discovery.is_running

    def test_restart_with_new_name(self, directory):
        instances = []

        def factory():
            instances.append(FakeZeroconf())
            return instances[-1]

        discovery = PeerDiscovery(directory, "Desktop", retry_delay=0,
                                  zeroconf_factory=factory, browser_factory=FakeBrowser)
        discovery._get_local_ips = lambda: ['192.168.1.2']
        discovery.start()

        assert discovery.restart("Workstation") is True
        assert instances[0].unregistered[0].name == f"Desktop.{SERVICE_TYPE}"
        assert instances[1].registered[0].name == f"Workstation.{SERVICE_TYPE}"
        assert discovery.device_name == "Workstation"


class TestBrowsing:

    def test_peer_added_with_ipv4_first(self, directory, zc):
        discovery = make_discovery(directory, zc)
        discovery.start()

        name = f"Laptop.{SERVICE_TYPE}"
        zc.services[name] = make_info("Laptop", ['2001:db8::5', '192.168.1.5'], port=6000)
        discovery.browser.fire(name, ServiceStateChange.Added)

        addresses = directory.addresses("Laptop")
        assert addresses[0] == ('192.168.1.5', 6000)
        assert ('2001:db8::5', 6000) in addresses
        assert len(addresses) == 2

    def test_own_advertisement_skipped(self, directory, zc):
        discovery = make_discovery(directory, zc)
        discovery.start()

        name = f"Desktop.{SERVICE_TYPE}"
        zc.services[name] = make_info("Desktop", ['192.168.1.2'])
        discovery.browser.fire(name, ServiceStateChange.Added)

        assert len(directory) == 0

    def test_update_refreshes_addresses(self, directory, zc):
        discovery = make_discovery(directory, zc)
        discovery.start()

        name = f"Laptop.{SERVICE_TYPE}"
        zc.services[name] = make_info("Laptop", ['192.168.1.5'])
        discovery.browser.fire(name, ServiceStateChange.Added)

        zc.services[name] = make_info("Laptop", ['10.0.0.9'])
        discovery.browser.fire(name, ServiceStateChange.Updated)

        assert directory.addresses("Laptop") == [('10.0.0.9', 5566)]

    def test_removed_peer_dropped(self, directory, zc):
        discovery = make_discovery(directory, zc)
        discovery.start()

        name = f"Laptop.{SERVICE_TYPE}"
        zc.services[name] = make_info("Laptop", ['192.168.1.5'])
        discovery.browser.fire(name, ServiceStateChange.Added)
        assert "Laptop" in directory

        discovery.browser.fire(name, ServiceStateChange.Removed)
        assert "Laptop" not in directory

    def test_unresolvable_service_ignored(self, directory, zc):
        discovery = make_discovery(directory, zc)
        discovery.start()

        discovery.browser.fire(f"Ghost.{SERVICE_TYPE}", ServiceStateChange.Added)
        assert len(directory) == 0

    def test_name_falls_back_to_instance_label(self, directory, zc):
        discovery = make_discovery(directory, zc)
        discovery.start()

        name = f"Tablet.{SERVICE_TYPE}"
        zc.services[name] = ServiceInfo(SERVICE_TYPE, name, parsed_addresses=['192.168.1.7'], port=5566)
        discovery.browser.fire(name, ServiceStateChange.Added)

        assert directory.addresses("Tablet") == [('192.168.1.7', 5566)]
