"""
Directory of discovered peers

Tracks every device seen on the LAN with its candidate addresses and
last-seen time. Authorization is never decided by the network: it is looked
up in the operator's allow-list through the is_allowed callable.
"""
import time
import threading
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Address = Tuple[str, int]  # (host, port)


@dataclass
class PeerIdentity:
    """A device seen on the network"""
    name: str
    addresses: List[Address] = field(default_factory=list)
    last_seen: float = 0.0
    authorized: bool = False


class PeerDirectory:
    """
    Thread-safe mapping of device name -> PeerIdentity

    Written from discovery callbacks, read by the sync engine.
    """

    def __init__(self, is_allowed: Callable[[str], bool],
                 on_change: Optional[Callable[[List[str]], None]] = None):
        """
        Args:
            is_allowed: Allow-list lookup for a device name
            on_change: Called with the sorted peer names whenever a peer
                appears or disappears
        """
        self._is_allowed = is_allowed
        self.on_change = on_change
        self._peers: Dict[str, PeerIdentity] = {}
        self._lock = threading.Lock()

    def _notify(self, names: List[str]):
        if self.on_change:
            try:
                self.on_change(names)
            except Exception as e:
                logger.error(f"Peer change callback failed: {e}")

    def upsert(self, name: str, addresses: Iterable[Address]) -> bool:
        """
        Record a (re-)resolution of a peer

        Replaces the address list and refreshes last_seen. Authorization is
        left untouched.

        Returns:
            True if the peer was not known before
        """
        addresses = _dedupe(addresses)
        with self._lock:
            peer = self._peers.get(name)
            is_new = peer is None
            if is_new:
                peer = PeerIdentity(name=name)
                self._peers[name] = peer
            peer.addresses = addresses
            peer.last_seen = time.time()
            names = sorted(self._peers) if is_new else None

        if is_new:
            logger.info(f"Peer added: {name} at {addresses}")
            self._notify(names)
        else:
            logger.debug(f"Peer refreshed: {name} at {addresses}")
        return is_new

    def touch(self, name: str, address: Optional[Address] = None) -> bool:
        """
        Refresh last_seen after a ping or handshake

        An address observed on the wire is appended to the candidates; an
        unknown peer is only added when such an address is available.

        Returns:
            True if the peer is known after the call
        """
        with self._lock:
            peer = self._peers.get(name)
            if peer is None:
                if address is None:
                    return False
                self._peers[name] = peer = PeerIdentity(name=name, addresses=[address])
                names = sorted(self._peers)
            else:
                names = None
                if address is not None and address not in peer.addresses:
                    peer.addresses.append(address)
            peer.last_seen = time.time()

        if names is not None:
            logger.info(f"Peer added from handshake: {name} at {address}")
            self._notify(names)
        return True

    def remove(self, name: str) -> bool:
        """Forget a peer that is no longer advertised"""
        with self._lock:
            if self._peers.pop(name, None) is None:
                return False
            names = sorted(self._peers)

        logger.info(f"Peer removed: {name}")
        self._notify(names)
        return True

    def clear(self):
        with self._lock:
            had_peers = bool(self._peers)
            self._peers.clear()
        if had_peers:
            self._notify([])

    def is_authorized(self, name: Optional[str]) -> bool:
        """Whether the device name is on the allow-list"""
        if not name:
            return False
        return bool(self._is_allowed(name))

    def get(self, name: str) -> Optional[PeerIdentity]:
        """Copy of a peer's identity with its current authorization"""
        with self._lock:
            peer = self._peers.get(name)
            if peer is None:
                return None
            peer = replace(peer, addresses=list(peer.addresses))
        peer.authorized = self.is_authorized(name)
        return peer

    def addresses(self, name: str) -> List[Address]:
        with self._lock:
            peer = self._peers.get(name)
            return list(peer.addresses) if peer else []

    def snapshot(self) -> List[str]:
        """Sorted names of all known peers"""
        with self._lock:
            return sorted(self._peers)

    def peers(self) -> List[PeerIdentity]:
        """Copies of all known peers"""
        return [p for p in (self.get(name) for name in self.snapshot()) if p is not None]

    def authorized_peers(self) -> List[str]:
        """Names of known peers that are on the allow-list"""
        return [name for name in self.snapshot() if self.is_authorized(name)]

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._peers

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)


def _dedupe(addresses: Iterable[Address]) -> List[Address]:
    """Drop repeated addresses, keeping first-seen order"""
    seen = set()
    result = []
    for address in addresses:
        address = (address[0], int(address[1]))
        if address not in seen:
            seen.add(address)
            result.append(address)
    return result
