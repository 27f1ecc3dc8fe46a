"""
Session Table

Tracks the remote centrals (peers) seen by the peripheral. Connection and
subscription are tracked independently: a platform may keep a link open
without any active subscription, and a subscription implies a link even
when no explicit connect was observed. A peer is considered connected while
it holds a connect marker or at least one subscription.
"""

import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from .logging_setup import get_logger

logger = get_logger(__name__)


@dataclass
class Peer:
    """A connected remote central"""
    peer_id: str
    connected_at: float = field(default_factory=time.time)
    connected: bool = False
    subscriptions: set[str] = field(default_factory=set)

    @property
    def is_subscribed(self) -> bool:
        return bool(self.subscriptions)

    @property
    def considered_connected(self) -> bool:
        return self.connected or self.is_subscribed

    def to_dict(self) -> dict:
        return {
            "peer_id": self.peer_id,
            "connected_at": self.connected_at,
            "connected": self.connected,
            "subscriptions": sorted(self.subscriptions),
        }


@dataclass
class SessionChange:
    """Side effects of one session table update, for the state machine to act on."""
    connected: bool = False
    disconnected: bool = False
    heartbeat_start: bool = False
    heartbeat_stop: bool = False


class SessionTable:
    """
    Connected and subscribed peers with their per-peer subscription sets.

    Not thread-safe: the peripheral serializes all calls.
    """

    def __init__(self, notify_characteristics: Iterable[str] = ()):
        self._peers: dict[str, Peer] = {}
        self.notify_characteristics = {c.upper() for c in notify_characteristics}

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._peers

    def __len__(self) -> int:
        return len(self._peers)

    def get(self, peer_id: str) -> Peer | None:
        return self._peers.get(peer_id)

    def peers(self) -> list[Peer]:
        return list(self._peers.values())

    @property
    def connected_count(self) -> int:
        return sum(1 for p in self._peers.values() if p.considered_connected)

    @property
    def subscribed_count(self) -> int:
        return sum(1 for p in self._peers.values() if p.is_subscribed)

    def has_subscribers(self) -> bool:
        return any(p.is_subscribed for p in self._peers.values())

    def on_connect(self, peer_id: str) -> SessionChange:
        """Register a peer with an explicit connect marker (idempotent)."""
        peer = self._peers.get(peer_id)
        if peer is None:
            self._peers[peer_id] = Peer(peer_id, connected=True)
            logger.info("🔗 Peer %s connected", peer_id)
            return SessionChange(connected=True)

        was_connected = peer.considered_connected
        peer.connected = True
        return SessionChange(connected=not was_connected)

    def touch(self, peer_id: str) -> SessionChange:
        """Record a read/write from a peer; unknown peers count as a connect."""
        if peer_id in self._peers:
            return SessionChange()
        return self.on_connect(peer_id)

    def on_subscribe(self, peer_id: str, characteristic: str) -> SessionChange:
        characteristic = characteristic.upper()
        had_subscribers = self.has_subscribers()

        change = SessionChange()
        peer = self._peers.get(peer_id)
        if peer is None:
            peer = self._peers[peer_id] = Peer(peer_id)
            change.connected = True
            logger.info("🔗 Peer %s connected by subscribing", peer_id)

        peer.subscriptions.add(characteristic)
        change.heartbeat_start = not had_subscribers
        return change

    def on_unsubscribe(self, peer_id: str, characteristic: str) -> SessionChange:
        characteristic = characteristic.upper()
        change = SessionChange()

        peer = self._peers.get(peer_id)
        if peer is None:
            logger.debug("Unsubscribe from unknown peer %s ignored", peer_id)
            return change

        had_subscribers = self.has_subscribers()
        peer.subscriptions.discard(characteristic)

        if not peer.considered_connected:
            del self._peers[peer_id]
            change.disconnected = True
            logger.info("🔌 Peer %s gone after last unsubscribe", peer_id)

        change.heartbeat_stop = had_subscribers and not self.has_subscribers()
        return change

    def on_disconnect(self, peer_id: str) -> SessionChange:
        """Unconditional removal."""
        peer = self._peers.pop(peer_id, None)
        if peer is None:
            return SessionChange()

        logger.info("🔌 Peer %s disconnected", peer_id)
        return SessionChange(
            disconnected=True,
            heartbeat_stop=peer.is_subscribed and not self.has_subscribers(),
        )

    def subscribed_peers(self, characteristic: str | None = None) -> set[str]:
        """
        Peers subscribed to `characteristic`, or to any notify-capable
        characteristic when none is given.
        """
        if characteristic is not None:
            wanted = {characteristic.upper()}
        else:
            wanted = self.notify_characteristics

        return {
            peer.peer_id
            for peer in self._peers.values()
            if peer.subscriptions & wanted
        }

    def clear(self) -> None:
        self._peers.clear()
