"""
Session Monitor - presentation-side view of the peripheral.

Subscribes to the event bus, keeps a bounded message log (newest first)
and traffic statistics, and fans events out to connected SSE clients.
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from .config_loader import MESSAGE_LOG_SIZE
from .events import Direction, EventBus, EventKind, MessageType, PeripheralEvent
from .logging_setup import get_logger

logger = get_logger(__name__)

CONTENT_PREVIEW = 256


def render_content(payload: bytes | None, message_type: MessageType) -> str:
    """Text payloads as text, everything else as spaced upper-case hex."""
    if not payload:
        return ""
    if message_type != MessageType.BINARY:
        try:
            return payload.decode("utf-8")[:CONTENT_PREVIEW]
        except UnicodeDecodeError:
            pass
    return " ".join(f"{b:02X}" for b in payload[:CONTENT_PREVIEW])


@dataclass
class LogEntry:
    timestamp: float
    direction: Direction
    message_type: MessageType
    size: int
    content: str
    kind: EventKind
    peer_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": int(self.timestamp * 1000),
            "direction": self.direction.value,
            "type": self.message_type.value,
            "size": self.size,
            "content": self.content,
            "kind": self.kind.value,
            "peer_id": self.peer_id,
        }


@dataclass
class Statistics:
    bytes_sent: int = 0
    bytes_received: int = 0
    notifications_sent: int = 0
    commands_processed: int = 0
    since: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "notifications_sent": self.notifications_sent,
            "commands_processed": self.commands_processed,
            "since": int(self.since * 1000),
        }


class SSEClient:
    """Represents a connected SSE client."""

    def __init__(self, client_id: str):
        self.client_id = client_id
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.connected = True
        self.connected_at = time.time()

    async def send(self, data: dict[str, Any]) -> None:
        """Queue a message for this client."""
        if self.connected:
            await self.queue.put(data)

    def disconnect(self) -> None:
        """Mark client as disconnected."""
        self.connected = False


class SessionMonitor:
    def __init__(self, bus: EventBus, log_size: int = MESSAGE_LOG_SIZE):
        self.bus = bus
        self.messages: deque[LogEntry] = deque(maxlen=log_size)
        self.stats = Statistics()
        self.clients: dict[str, SSEClient] = {}
        bus.subscribe_all(self.handle_event)

    async def handle_event(self, event: PeripheralEvent) -> None:
        self._record(event)
        self._count(event)
        await self._broadcast(event.to_dict())

    def _record(self, event: PeripheralEvent) -> None:
        if event.payload:
            content = render_content(event.payload, event.message_type)
        else:
            content = event.detail or event.kind.value.replace("_", " ")
        if event.peer_id and not event.payload:
            content = f"{content} ({event.peer_id})"

        # newest first
        self.messages.appendleft(LogEntry(
            timestamp=event.timestamp,
            direction=event.direction,
            message_type=event.message_type,
            size=event.size,
            content=content,
            kind=event.kind,
            peer_id=event.peer_id,
        ))

    def _count(self, event: PeripheralEvent) -> None:
        if event.kind == EventKind.NOTIFIED:
            self.stats.bytes_sent += event.size
            self.stats.notifications_sent += 1
        elif event.kind == EventKind.WRITTEN:
            self.stats.bytes_received += event.size
            if event.message_type == MessageType.TEXT:
                self.stats.commands_processed += 1

    async def _broadcast(self, data: dict[str, Any]) -> None:
        for client in list(self.clients.values()):
            await client.send(data)

    # --- Presentation actions ---

    def recent_messages(self, limit: int | None = None) -> list[dict[str, Any]]:
        entries = list(self.messages)
        if limit is not None:
            entries = entries[:limit]
        return [e.to_dict() for e in entries]

    def clear_messages(self) -> None:
        self.messages.clear()
        logger.info("Message log cleared")

    def reset_stats(self) -> None:
        self.stats = Statistics()
        logger.info("Statistics reset")

    # --- SSE clients ---

    def add_client(self) -> SSEClient:
        client = SSEClient(str(uuid.uuid4())[:8])
        self.clients[client.client_id] = client
        logger.info("SSE client connected: %s", client.client_id)
        return client

    def remove_client(self, client: SSEClient) -> None:
        client.disconnect()
        self.clients.pop(client.client_id, None)
        logger.info("SSE client disconnected: %s", client.client_id)

    def disconnect_all(self) -> None:
        for client in list(self.clients.values()):
            self.remove_client(client)

    def close(self) -> None:
        """Stop observing the bus and drop every SSE client"""
        self.bus.unsubscribe(self.handle_event)
        self.disconnect_all()
