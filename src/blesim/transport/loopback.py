"""
Loopback Transport - simulated radio.

Keeps the whole GATT exchange in-process: simulated centrals connect,
subscribe, read and write through the methods below, and notifications
land in per-peer inboxes. Used by the test suite and to run the simulator
on machines without Bluetooth hardware (driven through the /api/sim
endpoints).
"""

from collections import defaultdict
from collections.abc import Iterable

from ..logging_setup import get_logger
from .base import (
    AdvertisingError,
    CharacteristicProperty,
    CharacteristicSpec,
    PowerState,
    TransportBase,
    TransportError,
    TransportMode,
    UnknownCharacteristicError,
    UpdateResult,
)

logger = get_logger(__name__)


class LoopbackTransport(TransportBase):
    """
    In-process transport.

    Knobs for exercising failure paths:
    - `congested`: update_value() buffers and reports QUEUED
    - `failing_characteristics`: update_value() reports FAILED for these
    - `fail_next_advertising()`: the next start_advertising() raises
    """

    mode = TransportMode.LOOPBACK

    def __init__(self, initial_state: PowerState = PowerState.POWERED_ON):
        super().__init__()
        self._initial_state = initial_state
        self.service_uuid: str | None = None
        self.local_name: str | None = None
        self.characteristics: dict[str, CharacteristicSpec] = {}
        self.subscribers: dict[str, set[str]] = defaultdict(set)
        self.inbox: dict[str, list[tuple[str, bytes]]] = defaultdict(list)
        self.sent: list[tuple[str, bytes, UpdateResult]] = []
        self.pending: list[tuple[str, bytes, set[str]]] = []
        self.congested = False
        self.failing_characteristics: set[str] = set()
        self._advertising_failure: str | None = None

    # --- Transport API ---

    async def start(self) -> None:
        logger.info("Loopback radio up")
        await self._set_power_state(self._initial_state)

    async def stop(self) -> None:
        self._advertising = False
        self.subscribers.clear()
        logger.info("Loopback radio down")

    async def start_advertising(
        self,
        service_uuid: str,
        characteristics: Iterable[CharacteristicSpec],
        local_name: str,
    ) -> None:
        if self._power_state != PowerState.POWERED_ON:
            raise AdvertisingError(f"radio is {self._power_state.value}")

        if self._advertising_failure:
            reason, self._advertising_failure = self._advertising_failure, None
            raise AdvertisingError(reason)

        self.service_uuid = service_uuid.upper()
        self.local_name = local_name
        self.characteristics = {c.uuid.upper(): c for c in characteristics}
        self._advertising = True
        logger.info("Loopback advertising %s as '%s'", self.service_uuid, local_name)

    async def stop_advertising(self) -> None:
        self._advertising = False
        self.subscribers.clear()

    def update_value(
        self,
        characteristic: str,
        value: bytes,
        peers: Iterable[str] | None = None,
    ) -> UpdateResult:
        characteristic = characteristic.upper()
        targets = set(self.subscribers.get(characteristic, ()))
        if peers is not None:
            targets &= set(peers)

        if not self._advertising or not targets or characteristic in self.failing_characteristics:
            result = UpdateResult.FAILED
        elif self.congested:
            self.pending.append((characteristic, bytes(value), targets))
            result = UpdateResult.QUEUED
        else:
            for peer_id in targets:
                self.inbox[peer_id].append((characteristic, bytes(value)))
            result = UpdateResult.DELIVERED

        self.sent.append((characteristic, bytes(value), result))
        return result

    # --- Failure injection ---

    async def set_power_state(self, state: PowerState) -> None:
        """Simulate the radio changing power state."""
        if state != PowerState.POWERED_ON:
            self.subscribers.clear()
        await self._set_power_state(state)

    def fail_next_advertising(self, reason: str = "advertising refused") -> None:
        self._advertising_failure = reason

    def drain(self) -> int:
        """Deliver values buffered while congested; returns how many were delivered."""
        count = 0
        for characteristic, value, targets in self.pending:
            for peer_id in targets:
                self.inbox[peer_id].append((characteristic, value))
            count += 1
        self.pending.clear()
        return count

    # --- Simulated centrals ---

    def _require(self, characteristic: str, prop: CharacteristicProperty | None = None) -> str:
        if not self._advertising:
            raise TransportError("peripheral is not advertising")
        characteristic = characteristic.upper()
        spec = self.characteristics.get(characteristic)
        if spec is None:
            raise UnknownCharacteristicError(characteristic)
        if prop is not None and prop not in spec.properties:
            raise TransportError(f"{characteristic} does not support {prop.value}")
        return characteristic

    async def connect(self, peer_id: str) -> None:
        if not self._advertising:
            raise TransportError("peripheral is not advertising")
        await self.delegate.on_connect(peer_id)

    async def disconnect(self, peer_id: str) -> None:
        for peers in self.subscribers.values():
            peers.discard(peer_id)
        await self.delegate.on_disconnect(peer_id)

    async def subscribe(self, peer_id: str, characteristic: str, max_update_length: int | None = None) -> None:
        characteristic = characteristic.upper()
        spec = self.characteristics.get(characteristic) if self._advertising else None
        if spec is None or not spec.notifiable:
            raise TransportError(f"cannot subscribe to {characteristic}")
        self.subscribers[characteristic].add(peer_id)
        await self.delegate.on_subscribe(peer_id, characteristic, max_update_length)

    async def unsubscribe(self, peer_id: str, characteristic: str) -> None:
        characteristic = characteristic.upper()
        self.subscribers[characteristic].discard(peer_id)
        await self.delegate.on_unsubscribe(peer_id, characteristic)

    async def read(self, peer_id: str, characteristic: str) -> bytes:
        characteristic = self._require(characteristic, CharacteristicProperty.READ)
        return await self.delegate.on_read_request(peer_id, characteristic)

    async def write(self, peer_id: str, characteristic: str, value: bytes) -> None:
        characteristic = self._require(characteristic)
        spec = self.characteristics[characteristic]
        if not spec.properties & {
            CharacteristicProperty.WRITE, CharacteristicProperty.WRITE_WITHOUT_RESPONSE
        }:
            raise TransportError(f"{characteristic} is not writable")
        await self.delegate.on_write_request(peer_id, characteristic, value)

    def received(self, peer_id: str) -> list[bytes]:
        """Values notified to `peer_id`, oldest first"""
        return [value for _, value in self.inbox.get(peer_id, [])]
