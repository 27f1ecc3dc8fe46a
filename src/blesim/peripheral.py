"""
Peripheral Session State Machine

Ties the identifier registry, the session table and the command
interpreter to a transport, and publishes every transition on the event bus.

States:
    IDLE ──start_advertising()──► ADVERTISING ──stop_advertising()──► IDLE

Streaming and heartbeat are orthogonal sub-sessions layered on top of
ADVERTISING; leaving ADVERTISING (explicitly or through a power loss) ends
both. Heartbeat runs exactly while at least one peer holds a subscription.

Concurrency: transport callbacks, API calls and timer ticks all funnel
through one asyncio.Lock, so the session table and the stored payload are
never mutated by two events at once. Methods prefixed with an underscore
expect the lock to be held already. Events are collected under the lock
and handed to the bus once it is released, in emission order.
"""

import asyncio
import json
import platform
import random
import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum

from . import __version__
from .commands import create_command_interpreter, decode_payload
from .config_loader import HEARTBEAT_INTERVAL, STREAM_INTERVAL
from .events import Direction, EventBus, EventKind, MessageType, PeripheralEvent
from .identifiers import IdentifierRegistry, IdentifierSet
from .logging_setup import get_logger
from .sessions import SessionTable
from .transport.base import (
    CharacteristicProperty,
    CharacteristicSpec,
    PowerState,
    TransportBase,
    TransportDelegate,
    TransportError,
    UnknownCharacteristicError,
    UpdateResult,
)

logger = get_logger(__name__)

NO_DATA = b"No data"
HEARTBEAT_PREFIX = "HEARTBEAT"

# Synthetic sensor ranges (inclusive)
TEMPERATURE_RANGE = (20.0, 30.0)
HUMIDITY_RANGE = (40.0, 60.0)
PRESSURE_RANGE = (1000.0, 1020.0)


class PeripheralState(Enum):
    IDLE = "idle"
    ADVERTISING = "advertising"


class PeriodicTask:
    """One cancellable repeating task; at most one instance runs at a time."""

    def __init__(self, name: str, tick: Callable[[], Awaitable[None]]) -> None:
        self.name = name
        self._tick = tick
        self._task: asyncio.Task | None = None
        self.interval: float | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval: float) -> bool:
        """Start ticking every `interval` seconds; False if already running."""
        if self.active:
            return False
        self.interval = interval
        self._task = asyncio.create_task(self._runner(), name=f"blesim-{self.name}")
        return True

    def stop(self) -> bool:
        """Cancel future ticks; a tick already dispatched is not rolled back."""
        if not self.active:
            self._task = None
            return False
        self._task.cancel()
        self._task = None
        return True

    async def _runner(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self._tick()
            except Exception as e:
                logger.error("%s tick failed: %s", self.name, e, exc_info=True)


class PeripheralSession(TransportDelegate):
    def __init__(
        self,
        transport: TransportBase,
        registry: IdentifierRegistry,
        bus: EventBus | None = None,
        local_name: str = "blesim",
        device_name: str = "blesim Debug",
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        stream_interval: float = STREAM_INTERVAL,
        auto_advertise: bool = True,
    ) -> None:
        """
        Initialize the peripheral session.

        Args:
            transport: Radio backend; this session attaches itself as its delegate
            registry: Source of the service/characteristic UUIDs
            bus: Event bus for observers (a private one is created if omitted)
            local_name: Advertised local name
            device_name: Name reported by GET_INFO and the device-info characteristic
            heartbeat_interval: Seconds between heartbeats while subscribed
            stream_interval: Default seconds between stream samples
            auto_advertise: Start advertising whenever the radio powers on
        """
        self.transport = transport
        self.registry = registry
        self.bus = bus or EventBus()
        self.local_name = local_name
        self.device_name = device_name
        self.heartbeat_interval = heartbeat_interval
        self.stream_interval = stream_interval
        self.auto_advertise = auto_advertise

        self.state = PeripheralState.IDLE
        self.stored_payload = b""
        self.message_counter = 0

        ids = self.identifiers
        self.sessions = SessionTable(notify_characteristics=(ids.notify, ids.readWrite))
        self.interpreter = create_command_interpreter(self)

        self.streaming = PeriodicTask("stream", self._stream_tick)
        self.heartbeat = PeriodicTask("heartbeat", self._heartbeat_tick)

        self._lock = asyncio.Lock()
        self._pending: list[PeripheralEvent] = []
        self.transport.attach(self)

    # --- Properties ---

    @property
    def identifiers(self) -> IdentifierSet:
        return self.registry.get_identifiers()

    @property
    def is_advertising(self) -> bool:
        return self.state == PeripheralState.ADVERTISING

    @property
    def is_streaming(self) -> bool:
        return self.streaming.active

    @property
    def is_heartbeat_active(self) -> bool:
        return self.heartbeat.active

    def status(self) -> dict:
        """Snapshot for the presentation layer"""
        return {
            "power_state": self.transport.power_state.value,
            "state": self.state.value,
            "advertising": self.is_advertising,
            "streaming": self.is_streaming,
            "stream_interval": self.streaming.interval if self.is_streaming else self.stream_interval,
            "heartbeat": self.is_heartbeat_active,
            "connected": self.sessions.connected_count,
            "subscribed": self.sessions.subscribed_count,
            "stored_payload_size": len(self.stored_payload),
            "service_uuid": self.identifiers.service,
        }

    # --- Helpers ---

    def _emit(self, kind: EventKind, **fields) -> None:
        self._pending.append(PeripheralEvent(kind, **fields))

    @asynccontextmanager
    async def _locked(self):
        """
        Hold the session lock; events emitted inside are published after release.

        Listeners may call back into the session without deadlocking.
        """
        events: list[PeripheralEvent] = []
        try:
            async with self._lock:
                try:
                    yield
                finally:
                    events, self._pending = self._pending, []
        finally:
            for event in events:
                await self.bus.publish(event)

    def characteristic_specs(self) -> list[CharacteristicSpec]:
        ids = self.identifiers
        return [
            CharacteristicSpec(ids.read, frozenset({CharacteristicProperty.READ})),
            CharacteristicSpec(ids.write, frozenset({
                CharacteristicProperty.WRITE, CharacteristicProperty.WRITE_WITHOUT_RESPONSE,
            })),
            CharacteristicSpec(ids.notify, frozenset({
                CharacteristicProperty.NOTIFY, CharacteristicProperty.INDICATE,
            })),
            CharacteristicSpec(ids.readWrite, frozenset({
                CharacteristicProperty.READ, CharacteristicProperty.WRITE,
                CharacteristicProperty.NOTIFY,
            })),
            CharacteristicSpec(
                ids.deviceInfo,
                frozenset({CharacteristicProperty.READ}),
                initial_value=self.device_info_json(),
            ),
        ]

    def device_info_json(self) -> bytes:
        info = {
            "name": self.device_name,
            "model": platform.machine() or "unknown",
            "systemName": platform.system() or "unknown",
            "systemVersion": platform.release() or "unknown",
            "appVersion": __version__,
            "identifier": platform.node() or "unknown",
        }
        return json.dumps(info).encode("utf-8")

    def sensor_reading(self) -> bytes:
        """One synthetic sample; advances the message counter."""
        reading = {
            "timestamp": time.time(),
            "temperature": random.uniform(*TEMPERATURE_RANGE),
            "humidity": random.uniform(*HUMIDITY_RANGE),
            "pressure": random.uniform(*PRESSURE_RANGE),
            "counter": self.message_counter,
        }
        self.message_counter += 1
        return json.dumps(reading).encode("utf-8")

    def _update(self, characteristic: str, data: bytes, peers=None) -> UpdateResult:
        try:
            return self.transport.update_value(characteristic, data, peers)
        except TransportError as e:
            logger.warning("Update of %s failed: %s", characteristic, e)
            return UpdateResult.FAILED

    # --- Advertising ---

    async def start_advertising(self) -> bool:
        """
        Export the service and advertise it.

        Returns:
            True when advertising (already or newly), False if the radio is
            not powered on or the transport refused.
        """
        async with self._locked():
            return await self._start_advertising()

    async def _start_advertising(self) -> bool:
        power = self.transport.power_state
        if power != PowerState.POWERED_ON:
            logger.warning("Cannot start advertising: radio is %s", power.value)
            return False

        if self.is_advertising:
            logger.info("Already advertising")
            return True

        ids = self.identifiers
        try:
            await self.transport.start_advertising(ids.service, self.characteristic_specs(), self.local_name)
        except TransportError as e:
            logger.error("Advertising failed: %s", e)
            self._emit(
                EventKind.ERROR,
                message_type=MessageType.ERROR,
                detail=f"Advertising failed: {e}",
            )
            return False

        self.state = PeripheralState.ADVERTISING
        logger.info("📡 Advertising service %s as '%s'", ids.service, self.local_name)
        self._emit(EventKind.ADVERTISING_STARTED, detail=f"Service UUID: {ids.service}")
        return True

    async def stop_advertising(self) -> bool:
        """Stop advertising; returns False (and emits nothing) when already idle."""
        async with self._locked():
            return await self._stop_advertising()

    async def _stop_advertising(self, reason: str = "Advertising stopped") -> bool:
        if not self.is_advertising:
            return False

        await self._stop_stream()
        await self._stop_heartbeat()

        try:
            await self.transport.stop_advertising()
        except TransportError as e:
            logger.warning("Transport stop failed: %s", e)

        self.sessions.clear()
        self.state = PeripheralState.IDLE
        logger.info("%s", reason)
        self._emit(EventKind.ADVERTISING_STOPPED, detail=reason)
        return True

    async def reset_identifiers(self) -> IdentifierSet:
        """Regenerate the UUIDs with a full advertising stop/restart."""
        async with self._locked():
            was_advertising = self.is_advertising
            await self._stop_advertising("Advertising stopped for identifier reset")

            ids = self.registry.reset()
            self.sessions.notify_characteristics = {ids.notify.upper(), ids.readWrite.upper()}

            if was_advertising:
                await self._start_advertising()
            return ids

    async def shutdown(self) -> None:
        async with self._locked():
            await self._stop_advertising("Shutting down")
            self.streaming.stop()
            self.heartbeat.stop()

    # --- Notifications ---

    async def send_notification(self, data: bytes) -> UpdateResult:
        """
        Push `data` to every subscribed peer.

        QUEUED means the transport buffered the value (backpressure); callers
        must not treat it as a failure.
        """
        async with self._locked():
            return await self._notify(data)

    async def _notify(self, data: bytes, message_type: MessageType = MessageType.NOTIFICATION) -> UpdateResult:
        ids = self.identifiers
        notify_peers = self.sessions.subscribed_peers(ids.notify)
        read_write_only = self.sessions.subscribed_peers(ids.readWrite) - notify_peers

        if not notify_peers and not read_write_only:
            logger.warning("No subscribed peers, notification of %d bytes dropped", len(data))
            return UpdateResult.FAILED

        results = []
        if notify_peers:
            results.append(self._update(ids.notify, data, notify_peers))
        if read_write_only:
            results.append(self._update(ids.readWrite, data, read_write_only))

        if all(r is UpdateResult.FAILED for r in results):
            logger.warning("Notification of %d bytes failed", len(data))
            return UpdateResult.FAILED

        result = UpdateResult.QUEUED if UpdateResult.QUEUED in results else UpdateResult.DELIVERED
        if result is UpdateResult.QUEUED:
            logger.info("Notification of %d bytes queued by transport", len(data))
        else:
            logger.debug("Notification sent: %d bytes", len(data))

        self._emit(
            EventKind.NOTIFIED,
            direction=Direction.SENT,
            message_type=message_type,
            payload=bytes(data),
            detail=result.value,
        )
        return result

    async def send_test_message(self) -> UpdateResult:
        async with self._locked():
            self.message_counter += 1
            message = f"Test Message #{self.message_counter} at {time.time()}"
            return await self._notify(message.encode("utf-8"))

    # --- Streaming ---

    async def start_streaming(self, interval: float | None = None) -> bool:
        """Start the sensor stream; False if already running (interval unchanged)."""
        async with self._locked():
            return await self._start_stream(interval)

    async def stop_streaming(self) -> bool:
        async with self._locked():
            return await self._stop_stream()

    async def _start_stream(self, interval: float | None = None) -> bool:
        interval = interval or self.stream_interval
        if not self.streaming.start(interval):
            logger.debug("Stream already running every %.2fs", self.streaming.interval)
            return False

        logger.info("📈 Streaming every %.2fs", interval)
        self._emit(EventKind.STREAM_STARTED, detail=f"interval={interval}")
        return True

    async def _stop_stream(self) -> bool:
        if not self.streaming.stop():
            return False
        logger.info("Streaming stopped")
        self._emit(EventKind.STREAM_STOPPED)
        return True

    async def _stream_tick(self) -> None:
        async with self._locked():
            await self._notify(self.sensor_reading())

    # --- Heartbeat ---

    async def _start_heartbeat(self) -> None:
        if self.heartbeat.start(self.heartbeat_interval):
            logger.info("💓 Heartbeat every %.0fs", self.heartbeat_interval)
            self._emit(EventKind.HEARTBEAT_STARTED)

    async def _stop_heartbeat(self) -> None:
        if self.heartbeat.stop():
            logger.info("Heartbeat stopped")
            self._emit(EventKind.HEARTBEAT_STOPPED)

    async def _heartbeat_tick(self) -> None:
        async with self._locked():
            await self._send_heartbeat()

    async def _send_heartbeat(self) -> UpdateResult:
        if not self.sessions.has_subscribers():
            logger.debug("No subscribed peers, heartbeat skipped")
            return UpdateResult.FAILED

        ids = self.identifiers
        payload = f"{HEARTBEAT_PREFIX}:{time.time()}".encode("utf-8")

        # QUEUED counts as delivered; only an outright failure moves to read-write
        result = self._update(ids.notify, payload)
        if result is UpdateResult.FAILED:
            result = self._update(ids.readWrite, payload)
            logger.debug("Heartbeat via read-write characteristic: %s", result.value)
        else:
            logger.debug("Heartbeat via notify characteristic: %s", result.value)
        return result

    # --- TransportDelegate ---

    async def on_power_state_changed(self, state: PowerState) -> None:
        async with self._locked():
            self._emit(EventKind.POWER_STATE_CHANGED, detail=state.value)

            if state == PowerState.POWERED_ON:
                logger.info("Radio ready")
                if self.auto_advertise:
                    await self._start_advertising()
                return

            if state in (PowerState.POWERED_OFF, PowerState.UNAUTHORIZED, PowerState.UNSUPPORTED):
                logger.error("Radio unavailable: %s", state.value)
                self._emit(
                    EventKind.ERROR,
                    message_type=MessageType.ERROR,
                    detail=f"Bluetooth {state.value}",
                )
            await self._stop_advertising(f"Advertising ended, radio {state.value}")

    async def on_connect(self, peer_id: str) -> None:
        async with self._locked():
            if self.sessions.on_connect(peer_id).connected:
                self._emit(EventKind.CONNECTED, direction=Direction.RECEIVED, peer_id=peer_id)

    async def on_disconnect(self, peer_id: str) -> None:
        async with self._locked():
            change = self.sessions.on_disconnect(peer_id)
            if change.disconnected:
                self._emit(EventKind.DISCONNECTED, direction=Direction.RECEIVED, peer_id=peer_id)
            if change.heartbeat_stop:
                await self._stop_heartbeat()

    async def _touch(self, peer_id: str) -> None:
        if self.sessions.touch(peer_id).connected:
            self._emit(EventKind.CONNECTED, direction=Direction.RECEIVED, peer_id=peer_id)

    async def on_subscribe(
        self, peer_id: str, characteristic: str, max_update_length: int | None = None
    ) -> None:
        characteristic = characteristic.upper()
        async with self._locked():
            change = self.sessions.on_subscribe(peer_id, characteristic)
            logger.info("Peer %s subscribed to %s", peer_id, characteristic)
            if change.connected:
                self._emit(EventKind.CONNECTED, direction=Direction.RECEIVED, peer_id=peer_id)
            self._emit(
                EventKind.SUBSCRIBED,
                direction=Direction.RECEIVED,
                peer_id=peer_id,
                characteristic=characteristic,
            )
            if change.heartbeat_start:
                await self._start_heartbeat()

            welcome = f"Connected to {self.device_name}"
            if max_update_length:
                welcome += f" - MTU: {max_update_length}"
            await self._notify(welcome.encode("utf-8"))

    async def on_unsubscribe(self, peer_id: str, characteristic: str) -> None:
        characteristic = characteristic.upper()
        async with self._locked():
            change = self.sessions.on_unsubscribe(peer_id, characteristic)
            logger.info("Peer %s unsubscribed from %s", peer_id, characteristic)
            self._emit(
                EventKind.UNSUBSCRIBED,
                direction=Direction.RECEIVED,
                peer_id=peer_id,
                characteristic=characteristic,
            )
            if change.disconnected:
                self._emit(EventKind.DISCONNECTED, direction=Direction.RECEIVED, peer_id=peer_id)
            if change.heartbeat_stop:
                await self._stop_heartbeat()

    async def on_read_request(self, peer_id: str, characteristic: str) -> bytes:
        characteristic = characteristic.upper()
        ids = self.identifiers
        async with self._locked():
            await self._touch(peer_id)

            if characteristic == ids.read.upper():
                value = f"Read at {datetime.now()}".encode("utf-8")
            elif characteristic == ids.readWrite.upper():
                value = self.stored_payload or NO_DATA
            elif characteristic == ids.deviceInfo.upper():
                value = self.device_info_json()
            else:
                logger.warning("Read of unknown characteristic %s from %s", characteristic, peer_id)
                raise UnknownCharacteristicError(characteristic)

            self._emit(
                EventKind.READ,
                direction=Direction.RECEIVED,
                peer_id=peer_id,
                characteristic=characteristic,
                detail=f"Read request: {characteristic}",
            )
            return value

    async def on_write_request(self, peer_id: str, characteristic: str, value: bytes) -> None:
        characteristic = characteristic.upper()
        ids = self.identifiers
        value = bytes(value)
        async with self._locked():
            await self._touch(peer_id)

            text = decode_payload(value)
            self._emit(
                EventKind.WRITTEN,
                direction=Direction.RECEIVED,
                message_type=MessageType.TEXT if text is not None else MessageType.BINARY,
                payload=value,
                peer_id=peer_id,
                characteristic=characteristic,
            )

            if characteristic not in (ids.write.upper(), ids.readWrite.upper()):
                logger.warning("Write to %s from %s ignored", characteristic, peer_id)
                return

            if text is None:
                self.stored_payload = value
                logger.info("Binary write from %s stored (%d bytes)", peer_id, len(value))
                return

            logger.info("Received from %s: %s", peer_id, text[:64])
            response = await self.interpreter.execute(text, peer_id)

            if characteristic == ids.readWrite.upper():
                self.stored_payload = response

            if response:
                await self._notify(response)
