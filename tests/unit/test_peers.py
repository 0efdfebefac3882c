"""
Unit tests for peers.py - PeerDirectory
"""
import threading

from clipsync.common.peers import PeerDirectory


def make_directory(allowed=(), changes=None):
    allowed = set(allowed)
    on_change = changes.append if changes is not None else None
    return PeerDirectory(lambda name: name in allowed, on_change=on_change)


class TestPeerDirectory:
    """Tests for peer tracking"""

    def test_upsert_new_peer(self):
        changes = []
        directory = make_directory(changes=changes)

        assert directory.upsert("Laptop", [("192.168.1.5", 5566)]) is True
        assert "Laptop" in directory
        assert directory.addresses("Laptop") == [("192.168.1.5", 5566)]
        assert changes == [["Laptop"]]

    def test_upsert_refreshes_addresses_without_notification(self):
        changes = []
        directory = make_directory(changes=changes)
        directory.upsert("Laptop", [("192.168.1.5", 5566)])
        first_seen = directory.get("Laptop").last_seen

        assert directory.upsert("Laptop", [("10.0.0.2", 5566), ("fe80::1", 5566)]) is False
        assert directory.addresses("Laptop") == [("10.0.0.2", 5566), ("fe80::1", 5566)]
        assert directory.get("Laptop").last_seen >= first_seen
        assert len(changes) == 1

    def test_address_order_kept_and_deduplicated(self):
        directory = make_directory()
        directory.upsert("Laptop", [("10.0.0.2", 5566), ("fe80::1", 5566), ("10.0.0.2", 5566)])
        assert directory.addresses("Laptop") == [("10.0.0.2", 5566), ("fe80::1", 5566)]

    def test_remove(self):
        changes = []
        directory = make_directory(changes=changes)
        directory.upsert("Laptop", [("10.0.0.2", 5566)])

        assert directory.remove("Laptop") is True
        assert directory.remove("Laptop") is False
        assert "Laptop" not in directory
        assert changes[-1] == []

    def test_authorization_comes_from_allow_list(self):
        directory = make_directory(allowed=["Laptop"])
        directory.upsert("Laptop", [("10.0.0.2", 5566)])
        directory.upsert("Stranger", [("10.0.0.3", 5566)])

        assert directory.is_authorized("Laptop")
        assert not directory.is_authorized("Stranger")
        assert not directory.is_authorized(None)
        assert directory.get("Laptop").authorized is True
        assert directory.get("Stranger").authorized is False
        assert directory.authorized_peers() == ["Laptop"]

    def test_authorization_not_changed_by_upsert(self):
        allowed = set()
        directory = PeerDirectory(lambda name: name in allowed)
        directory.upsert("Laptop", [("10.0.0.2", 5566)])
        assert not directory.is_authorized("Laptop")

        allowed.add("Laptop")
        directory.upsert("Laptop", [("10.0.0.9", 5566)])
        assert directory.is_authorized("Laptop")

    def test_snapshot_sorted(self):
        directory = make_directory()
        for name in ["zeta", "Alpha", "beta"]:
            directory.upsert(name, [("10.0.0.1", 1)])
        assert directory.snapshot() == sorted(["zeta", "Alpha", "beta"])

    def test_get_returns_copy(self):
        directory = make_directory()
        directory.upsert("Laptop", [("10.0.0.2", 5566)])
        peer = directory.get("Laptop")
        peer.addresses.append(("1.2.3.4", 1))
        assert directory.addresses("Laptop") == [("10.0.0.2", 5566)]

    def test_touch_known_peer_adds_address(self):
        directory = make_directory()
        directory.upsert("Laptop", [("10.0.0.2", 5566)])
        assert directory.touch("Laptop", ("10.0.0.7", 5566))
        assert directory.addresses("Laptop") == [("10.0.0.2", 5566), ("10.0.0.7", 5566)]

    def test_touch_unknown_peer(self):
        changes = []
        directory = make_directory(changes=changes)
        assert directory.touch("Ghost") is False
        assert "Ghost" not in directory

        assert directory.touch("Ghost", ("10.0.0.8", 5566)) is True
        assert directory.addresses("Ghost") == [("10.0.0.8", 5566)]
        assert changes == [["Ghost"]]

    def test_clear(self):
        changes = []
        directory = make_directory(changes=changes)
        directory.upsert("Laptop", [("10.0.0.2", 5566)])
        directory.clear()
        assert len(directory) == 0
        assert changes[-1] == []

    def test_callback_errors_do_not_propagate(self):
        def boom(names):
            raise RuntimeError("ui gone")

        directory = PeerDirectory(lambda name: True, on_change=boom)
        assert directory.upsert("Laptop", [("10.0.0.2", 5566)]) is True

    def test_concurrent_writers_and_readers(self):
        directory = make_directory(allowed=[f"peer-{i}" for i in range(50)])

        def writer(i):
            for _ in range(20):
                directory.upsert(f"peer-{i}", [("10.0.0.1", 5566 + i)])
                directory.snapshot()
                directory.authorized_peers()

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(directory) == 50
