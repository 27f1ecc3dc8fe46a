"""
Transport Abstraction Layer

The peripheral core never talks to a Bluetooth stack directly. It talks to a
Transport, which exports the GATT service, advertises it and forwards
central activity to a TransportDelegate (the peripheral session).

Backends:
- bluez: GATT application + LE advertisement exported to BlueZ over D-Bus
- loopback: in-process simulated radio (tests, machines without Bluetooth)
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from ..logging_setup import get_logger

logger = get_logger(__name__)


class TransportMode(Enum):
    """Transport backends"""
    BLUEZ = "bluez"
    LOOPBACK = "loopback"


class PowerState(Enum):
    """Radio power states as reported by the transport"""
    UNKNOWN = "unknown"
    RESETTING = "resetting"
    UNSUPPORTED = "unsupported"
    UNAUTHORIZED = "unauthorized"
    POWERED_OFF = "powered_off"
    POWERED_ON = "powered_on"


class UpdateResult(Enum):
    """Outcome of pushing a value to subscribed centrals"""
    DELIVERED = "delivered"
    QUEUED = "queued"      # transport congested; the value is buffered, not lost
    FAILED = "failed"

    @property
    def ok(self) -> bool:
        return self is not UpdateResult.FAILED


class CharacteristicProperty(Enum):
    """GATT characteristic properties (BlueZ flag spelling)"""
    READ = "read"
    WRITE = "write"
    WRITE_WITHOUT_RESPONSE = "write-without-response"
    NOTIFY = "notify"
    INDICATE = "indicate"


@dataclass(frozen=True)
class CharacteristicSpec:
    """One characteristic of the advertised service"""
    uuid: str
    properties: frozenset[CharacteristicProperty] = field(default_factory=frozenset)
    initial_value: bytes = b""

    @property
    def notifiable(self) -> bool:
        return bool(self.properties & {CharacteristicProperty.NOTIFY, CharacteristicProperty.INDICATE})

    @property
    def flags(self) -> list[str]:
        return sorted(p.value for p in self.properties)


class BlesimError(Exception):
    """Base class for peripheral errors"""


class TransportError(BlesimError):
    """The transport could not carry out a request"""


class AdvertisingError(TransportError):
    """The transport refused to start advertising"""


class UnknownCharacteristicError(BlesimError):
    """A central addressed a characteristic the service does not expose"""


class TransportDelegate(ABC):
    """Receiver of central activity; implemented by PeripheralSession."""

    @abstractmethod
    async def on_power_state_changed(self, state: PowerState) -> None:
        pass

    @abstractmethod
    async def on_connect(self, peer_id: str) -> None:
        pass

    @abstractmethod
    async def on_disconnect(self, peer_id: str) -> None:
        pass

    @abstractmethod
    async def on_subscribe(
        self, peer_id: str, characteristic: str, max_update_length: int | None = None
    ) -> None:
        pass

    @abstractmethod
    async def on_unsubscribe(self, peer_id: str, characteristic: str) -> None:
        pass

    @abstractmethod
    async def on_read_request(self, peer_id: str, characteristic: str) -> bytes:
        """
        Answer a read request.

        Raises:
            UnknownCharacteristicError: characteristic not served
        """
        pass

    @abstractmethod
    async def on_write_request(self, peer_id: str, characteristic: str, value: bytes) -> None:
        pass


class TransportBase(ABC):
    """
    Abstract base class for transport implementations.

    All radio operations go through this interface, allowing different
    backends to be swapped transparently.
    """

    mode: TransportMode

    def __init__(self):
        self.delegate: TransportDelegate | None = None
        self._power_state = PowerState.UNKNOWN
        self._advertising = False

    def attach(self, delegate: TransportDelegate) -> None:
        """Route central activity to `delegate`"""
        self.delegate = delegate

    @property
    def power_state(self) -> PowerState:
        return self._power_state

    @property
    def is_advertising(self) -> bool:
        return self._advertising

    async def _set_power_state(self, state: PowerState) -> None:
        if state == self._power_state:
            return
        logger.info("📡 Radio power state: %s → %s", self._power_state.value, state.value)
        self._power_state = state
        if state != PowerState.POWERED_ON:
            self._advertising = False
        if self.delegate:
            await self.delegate.on_power_state_changed(state)

    @abstractmethod
    async def start(self) -> None:
        """
        Bring the transport up and report the initial power state.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """
        Tear the transport down and release resources.
        """
        pass

    @abstractmethod
    async def start_advertising(
        self,
        service_uuid: str,
        characteristics: Iterable[CharacteristicSpec],
        local_name: str,
    ) -> None:
        """
        Export the service and start advertising it.

        Args:
            service_uuid: Primary service UUID
            characteristics: Characteristics of the service
            local_name: Advertised local name

        Raises:
            AdvertisingError: the stack refused the service or advertisement
        """
        pass

    @abstractmethod
    async def stop_advertising(self) -> None:
        """
        Stop advertising and withdraw the service.
        """
        pass

    @abstractmethod
    def update_value(
        self,
        characteristic: str,
        value: bytes,
        peers: Iterable[str] | None = None,
    ) -> UpdateResult:
        """
        Push a value to subscribed centrals.

        Args:
            characteristic: Characteristic UUID
            value: Bytes to notify
            peers: Restrict to these peers (None = all subscribers)

        Returns:
            DELIVERED, QUEUED (backpressure) or FAILED
        """
        pass


def create_transport(mode: TransportMode = TransportMode.LOOPBACK, adapter: str = "hci0") -> TransportBase:
    """
    Factory function to create the transport for `mode`.

    Args:
        mode: Transport backend
        adapter: BlueZ adapter name (bluez only)

    Returns:
        Configured transport instance (not started)
    """
    mode = TransportMode(mode)
    if mode == TransportMode.BLUEZ:
        from .bluez import BlueZTransport
        transport = BlueZTransport(adapter=adapter)
        logger.info("Created BlueZ transport (D-Bus) on %s", adapter)
    else:
        from .loopback import LoopbackTransport
        transport = LoopbackTransport()
        logger.info("Created loopback transport (simulated radio)")

    return transport
