import pytest

from blesim.events import EventBus
from blesim.identifiers import FIXED_IDENTIFIERS, IdentifierRegistry, MemoryStore
from blesim.peripheral import PeripheralSession
from blesim.transport.loopback import LoopbackTransport

SERVICE = FIXED_IDENTIFIERS["service"]
READ = FIXED_IDENTIFIERS["read"]
WRITE = FIXED_IDENTIFIERS["write"]
NOTIFY = FIXED_IDENTIFIERS["notify"]
READ_WRITE = FIXED_IDENTIFIERS["readWrite"]
DEVICE_INFO = FIXED_IDENTIFIERS["deviceInfo"]


class EventRecorder:
    """Collects every event published on a bus"""

    def __init__(self, bus: EventBus):
        self.events = []
        bus.subscribe_all(self.record)

    async def record(self, event):
        self.events.append(event)

    def kinds(self):
        return [e.kind for e in self.events]

    def clear(self):
        self.events.clear()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def registry():
    return IdentifierRegistry(MemoryStore())


@pytest.fixture
def transport():
    return LoopbackTransport()


@pytest.fixture
async def make_peripheral(transport, registry, bus):
    created = []

    def factory(**kwargs):
        peripheral = PeripheralSession(transport, registry, bus, **kwargs)
        created.append(peripheral)
        return peripheral

    yield factory
    for peripheral in created:
        await peripheral.shutdown()


@pytest.fixture
async def peripheral(make_peripheral, transport):
    """Advertising peripheral on a powered loopback radio"""
    peripheral = make_peripheral()
    await transport.start()
    return peripheral
