"""
Event bus between the peripheral core and its observers.

Every lifecycle transition and every data exchange is published as one
tagged `PeripheralEvent`. Observers subscribe per kind or to everything;
any number of them can listen at once.
"""

import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from .logging_setup import get_logger

logger = get_logger(__name__)


class EventKind(Enum):
    POWER_STATE_CHANGED = "power_state_changed"
    ADVERTISING_STARTED = "advertising_started"
    ADVERTISING_STOPPED = "advertising_stopped"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    READ = "read"
    WRITTEN = "written"
    NOTIFIED = "notified"
    STREAM_STARTED = "stream_started"
    STREAM_STOPPED = "stream_stopped"
    HEARTBEAT_STARTED = "heartbeat_started"
    HEARTBEAT_STOPPED = "heartbeat_stopped"
    ERROR = "error"


class Direction(Enum):
    SENT = "sent"
    RECEIVED = "received"


class MessageType(Enum):
    TEXT = "text"
    BINARY = "binary"
    COMMAND = "command"
    NOTIFICATION = "notification"
    ERROR = "error"


@dataclass
class PeripheralEvent:
    """One event as seen by the presentation layer."""
    kind: EventKind
    direction: Direction = Direction.SENT
    message_type: MessageType = MessageType.COMMAND
    payload: bytes | None = None
    detail: str = ""
    peer_id: str | None = None
    characteristic: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def size(self) -> int:
        return len(self.payload) if self.payload else 0

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "direction": self.direction.value,
            "type": self.message_type.value,
            "payload_hex": self.payload.hex() if self.payload else None,
            "size": self.size,
            "detail": self.detail,
            "peer_id": self.peer_id,
            "characteristic": self.characteristic,
            "timestamp": int(self.timestamp * 1000),
        }


EventHandler = Callable[[PeripheralEvent], Awaitable[None]]


class EventBus:
    """Fan-out of peripheral events to async subscribers."""

    def __init__(self):
        self._subscribers: dict[EventKind, list[EventHandler]] = defaultdict(list)
        self._wildcard: list[EventHandler] = []

    def subscribe(self, kind: EventKind, handler: EventHandler) -> None:
        """Subscribe to one event kind"""
        self._subscribers[kind].append(handler)
        logger.debug("EventBus: %s subscribed to '%s'", handler.__name__, kind.value)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to every event kind"""
        self._wildcard.append(handler)
        logger.debug("EventBus: %s subscribed to all events", handler.__name__)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._wildcard:
            self._wildcard.remove(handler)
        for handlers in self._subscribers.values():
            if handler in handlers:
                handlers.remove(handler)

    async def publish(self, event: PeripheralEvent) -> None:
        """Deliver an event; a failing subscriber never affects the others."""
        for handler in [*self._subscribers[event.kind], *self._wildcard]:
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "Failed to deliver %s to %s: %s",
                    event.kind.value, getattr(handler, "__name__", handler), e, exc_info=True
                )

    def list_subscriptions(self) -> dict[str, list[str]]:
        """Debug: handler names per event kind"""
        result = {
            kind.value: [h.__name__ for h in handlers]
            for kind, handlers in self._subscribers.items()
            if handlers
        }
        if self._wildcard:
            result["*"] = [h.__name__ for h in self._wildcard]
        return result
