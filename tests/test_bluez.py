import pytest
from dbus_next import Variant

from blesim.transport.base import CharacteristicProperty, CharacteristicSpec, TransportError, UpdateResult
from blesim.transport.bluez import (
    SERVICE_PATH,
    SHARED_CENTRAL,
    BlueZTransport,
    GattCharacteristic,
    _peer_from_options,
)

NOTIFY = "6E400004-B5A3-F393-E0A9-E50E24DCCA9E"


def make_characteristic(transport=None):
    spec = CharacteristicSpec(
        NOTIFY,
        frozenset({CharacteristicProperty.NOTIFY, CharacteristicProperty.INDICATE}),
    )
    return GattCharacteristic(transport, spec, f"{SERVICE_PATH}/char0")


def test_peer_from_device_option():
    assert _peer_from_options({"device": Variant("o", "/org/bluez/hci0/dev_AA")}) == "/org/bluez/hci0/dev_AA"
    assert _peer_from_options({}) == SHARED_CENTRAL


def test_managed_properties():
    props = make_characteristic().managed_properties()
    assert props["UUID"].value == NOTIFY
    assert props["Service"].value == SERVICE_PATH
    assert props["Flags"].value == ["indicate", "notify"]


def test_notify_requires_active_subscription():
    char = make_characteristic()
    assert char.notify(b"a") is False
    assert char.value == b"a"

    char.notifying = True
    assert char.notify(b"b") is True


def test_update_value_on_unexported_characteristic():
    transport = BlueZTransport()
    with pytest.raises(TransportError):
        transport.update_value(NOTIFY, b"x")


def test_update_value_reports_notify_state():
    transport = BlueZTransport()
    char = make_characteristic(transport)
    transport._characteristics = {NOTIFY: char}

    assert transport.update_value(NOTIFY.lower(), b"x") is UpdateResult.FAILED
    char.notifying = True
    assert transport.update_value(NOTIFY, b"x") is UpdateResult.DELIVERED


class CountingReader:
    def __init__(self):
        self.reads = 0

    async def on_read_request(self, peer_id, characteristic):
        self.reads += 1
        return f"value {self.reads} ".encode("utf-8") * 4


async def test_long_read_asks_delegate_once():
    transport = BlueZTransport()
    reader = CountingReader()
    transport.attach(reader)
    char = make_characteristic(transport)

    first = await char.read_value({})
    rest = await char.read_value({"offset": Variant("q", 10)})

    assert reader.reads == 1
    assert rest == first[10:]

    again = await char.read_value({"offset": Variant("q", 0)})
    assert reader.reads == 2
    assert again.startswith(b"value 2")
