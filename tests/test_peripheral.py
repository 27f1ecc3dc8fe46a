import asyncio
import json

import pytest

from blesim.events import Direction, EventKind, MessageType
from blesim.identifiers import IdentifierMode, IdentifierRegistry, MemoryStore
from blesim.peripheral import PeripheralSession, PeripheralState
from blesim.transport.base import PowerState, UnknownCharacteristicError, UpdateResult
from blesim.transport.loopback import LoopbackTransport

from .conftest import DEVICE_INFO, NOTIFY, READ, READ_WRITE, SERVICE, WRITE


# --- Advertising ---

async def test_power_on_auto_advertises(recorder, peripheral, transport):
    assert peripheral.state == PeripheralState.ADVERTISING
    assert transport.service_uuid == SERVICE
    assert transport.local_name == "blesim"
    assert set(transport.characteristics) == {READ, WRITE, NOTIFY, READ_WRITE, DEVICE_INFO}
    assert EventKind.POWER_STATE_CHANGED in recorder.kinds()
    assert EventKind.ADVERTISING_STARTED in recorder.kinds()


async def test_start_advertising_when_already_advertising(peripheral, recorder):
    recorder.clear()
    assert await peripheral.start_advertising()
    assert recorder.kinds() == []


async def test_start_advertising_requires_power(bus, registry, recorder):
    transport = LoopbackTransport(initial_state=PowerState.POWERED_OFF)
    peripheral = PeripheralSession(transport, registry, bus)
    await transport.start()
    recorder.clear()

    assert await peripheral.start_advertising() is False
    assert not peripheral.is_advertising
    assert recorder.kinds() == []


async def test_advertising_failure_reports_error(make_peripheral, transport, recorder):
    peripheral = make_peripheral(auto_advertise=False)
    await transport.start()
    transport.fail_next_advertising("busy")

    assert await peripheral.start_advertising() is False
    assert peripheral.state == PeripheralState.IDLE
    errors = [e for e in recorder.events if e.kind == EventKind.ERROR]
    assert len(errors) == 1
    assert "busy" in errors[0].detail
    assert errors[0].message_type == MessageType.ERROR


async def test_stop_when_idle_emits_nothing(make_peripheral, transport, recorder):
    peripheral = make_peripheral(auto_advertise=False)
    await transport.start()
    recorder.clear()

    assert await peripheral.stop_advertising() is False
    assert recorder.kinds() == []


async def test_stop_advertising_clears_everything(peripheral, transport, recorder):
    await transport.subscribe("c1", NOTIFY)
    await peripheral.start_streaming(10)

    assert await peripheral.stop_advertising()

    assert not transport.is_advertising
    assert not peripheral.is_streaming
    assert not peripheral.is_heartbeat_active
    assert len(peripheral.sessions) == 0
    kinds = recorder.kinds()
    assert kinds.index(EventKind.STREAM_STOPPED) < kinds.index(EventKind.ADVERTISING_STOPPED)
    assert EventKind.HEARTBEAT_STOPPED in kinds


# --- Subscriptions & heartbeat ---

async def test_subscribe_sends_welcome_with_mtu(peripheral, transport):
    await transport.subscribe("c1", NOTIFY, 185)
    assert transport.received("c1") == [b"Connected to blesim Debug - MTU: 185"]


async def test_subscribe_welcome_without_mtu(peripheral, transport):
    await transport.subscribe("c1", NOTIFY)
    assert transport.received("c1") == [b"Connected to blesim Debug"]


async def test_heartbeat_follows_subscriptions(peripheral, transport, recorder):
    assert not peripheral.is_heartbeat_active

    await transport.subscribe("c1", NOTIFY)
    await transport.subscribe("c2", READ_WRITE)
    assert peripheral.is_heartbeat_active

    await transport.unsubscribe("c1", NOTIFY)
    assert peripheral.is_heartbeat_active

    await transport.disconnect("c2")
    assert not peripheral.is_heartbeat_active
    assert recorder.kinds().count(EventKind.HEARTBEAT_STARTED) == 1
    assert recorder.kinds().count(EventKind.HEARTBEAT_STOPPED) == 1


async def test_heartbeat_ticks_while_subscribed(make_peripheral, transport):
    peripheral = make_peripheral(heartbeat_interval=0.02)
    await transport.start()
    await transport.subscribe("c1", NOTIFY)

    await asyncio.sleep(0.1)
    await peripheral.shutdown()

    beats = [v for v in transport.received("c1") if v.startswith(b"HEARTBEAT:")]
    assert beats
    float(beats[0].split(b":", 1)[1])


async def test_heartbeat_falls_back_only_on_failure(peripheral, transport):
    await transport.subscribe("c1", NOTIFY)
    await transport.subscribe("c1", READ_WRITE)
    transport.sent.clear()

    transport.failing_characteristics.add(NOTIFY)
    assert await peripheral._send_heartbeat() is UpdateResult.DELIVERED
    assert [c for c, _, _ in transport.sent] == [NOTIFY, READ_WRITE]


async def test_heartbeat_queued_is_not_a_failure(peripheral, transport):
    await transport.subscribe("c1", NOTIFY)
    await transport.subscribe("c1", READ_WRITE)
    transport.sent.clear()

    transport.congested = True
    assert await peripheral._send_heartbeat() is UpdateResult.QUEUED
    assert [c for c, _, _ in transport.sent] == [NOTIFY]


async def test_connect_and_disconnect_events(peripheral, transport, recorder):
    recorder.clear()
    await transport.connect("c1")
    await transport.connect("c1")
    await transport.disconnect("c1")

    assert recorder.kinds() == [EventKind.CONNECTED, EventKind.DISCONNECTED]
    assert recorder.events[0].peer_id == "c1"
    assert recorder.events[0].direction == Direction.RECEIVED


# --- Notifications ---

async def test_send_notification_without_subscribers_fails(peripheral):
    assert await peripheral.send_notification(b"hi") is UpdateResult.FAILED


async def test_send_notification_reaches_all_subscribers(peripheral, transport, recorder):
    await transport.subscribe("c1", NOTIFY)
    await transport.subscribe("c2", READ_WRITE)
    recorder.clear()

    assert await peripheral.send_notification(b"hello") is UpdateResult.DELIVERED

    assert transport.received("c1")[-1] == b"hello"
    assert transport.received("c2")[-1] == b"hello"
    notified = [e for e in recorder.events if e.kind == EventKind.NOTIFIED]
    assert len(notified) == 1 and notified[0].size == 5


async def test_listener_can_call_back_into_session(peripheral, transport, bus):
    async def greet(event):
        await peripheral.send_notification(b"greeting")

    bus.subscribe(EventKind.SUBSCRIBED, greet)

    await asyncio.wait_for(transport.subscribe("c1", NOTIFY), 1.0)

    assert transport.received("c1")[-1] == b"greeting"
    assert await asyncio.wait_for(peripheral.send_notification(b"after"), 1.0) is UpdateResult.DELIVERED


async def test_events_published_after_failed_read(peripheral, transport, recorder):
    recorder.clear()
    with pytest.raises(UnknownCharacteristicError):
        await peripheral.on_read_request("c1", WRITE)
    assert recorder.kinds() == [EventKind.CONNECTED]


async def test_send_notification_queued_under_backpressure(peripheral, transport):
    await transport.subscribe("c1", NOTIFY)
    transport.congested = True

    assert await peripheral.send_notification(b"x") is UpdateResult.QUEUED
    assert transport.drain() == 1
    assert transport.received("c1")[-1] == b"x"


async def test_test_message_counts_up(peripheral, transport):
    await transport.subscribe("c1", NOTIFY)
    await peripheral.send_test_message()
    await peripheral.send_test_message()

    messages = transport.received("c1")[-2:]
    assert messages[0].startswith(b"Test Message #1 at ")
    assert messages[1].startswith(b"Test Message #2 at ")


# --- Reads ---

async def test_read_characteristic(peripheral, transport):
    assert (await transport.read("c1", READ)).startswith(b"Read at ")


async def test_read_write_characteristic_defaults_to_no_data(peripheral, transport):
    assert await transport.read("c1", READ_WRITE) == b"No data"


async def test_device_info(peripheral, transport):
    info = json.loads(await transport.read("c1", DEVICE_INFO))
    assert info["name"] == "blesim Debug"
    assert set(info) == {"name", "model", "systemName", "systemVersion", "appVersion", "identifier"}


async def test_read_counts_as_connect(peripheral, transport, recorder):
    recorder.clear()
    await transport.read("c9", READ)
    assert recorder.kinds() == [EventKind.CONNECTED, EventKind.READ]
    assert peripheral.sessions.connected_count == 1


async def test_read_unknown_characteristic(peripheral):
    with pytest.raises(UnknownCharacteristicError):
        await peripheral.on_read_request("c1", "0000FFFF-0000-1000-8000-00805F9B34FB")


# --- Writes ---

async def test_write_command_response_is_notified(peripheral, transport):
    await transport.subscribe("c1", NOTIFY)
    await transport.write("c1", WRITE, b"PING")
    assert transport.received("c1")[-1] == b"PONG"


async def test_read_write_stores_response(peripheral, transport):
    await transport.write("c1", READ_WRITE, b"PING")
    assert peripheral.stored_payload == b"PONG"
    assert await transport.read("c1", READ_WRITE) == b"PONG"


async def test_set_data_keeps_colons(peripheral, transport):
    await transport.write("c1", WRITE, b"SET_DATA:a:b")
    assert peripheral.stored_payload == b"a:b"


async def test_binary_write_is_passthrough(peripheral, transport, recorder):
    await transport.subscribe("c1", NOTIFY)
    before = len(transport.received("c1"))

    await transport.write("c1", WRITE, b"\xff\xfe\x00")

    assert peripheral.stored_payload == b"\xff\xfe\x00"
    assert len(transport.received("c1")) == before
    written = [e for e in recorder.events if e.kind == EventKind.WRITTEN][-1]
    assert written.message_type == MessageType.BINARY


async def test_empty_response_is_not_notified(peripheral, transport):
    await transport.subscribe("c1", NOTIFY)
    before = len(transport.received("c1"))
    await transport.write("c1", WRITE, b"GET_DATA")
    assert len(transport.received("c1")) == before


async def test_write_to_non_writable_role_is_ignored(peripheral):
    await peripheral.on_write_request("c1", NOTIFY, b"SET_DATA:x")
    assert peripheral.stored_payload == b""


# --- Streaming ---

async def test_stream_is_single_task(peripheral, transport, recorder):
    await transport.subscribe("c1", NOTIFY)
    await transport.write("c1", WRITE, b"START_STREAM:10")
    await transport.write("c1", WRITE, b"START_STREAM")

    assert transport.received("c1")[-2:] == [b"Stream started", b"Stream already running"]
    assert peripheral.streaming.interval == 10
    assert recorder.kinds().count(EventKind.STREAM_STARTED) == 1


async def test_stream_samples(make_peripheral, transport):
    peripheral = make_peripheral(stream_interval=0.01)
    await transport.start()
    await transport.subscribe("c1", NOTIFY)

    assert await peripheral.start_streaming()
    await asyncio.sleep(0.1)
    assert await peripheral.stop_streaming()
    count = len(transport.received("c1"))
    await asyncio.sleep(0.05)
    await peripheral.shutdown()

    samples = [json.loads(v) for v in transport.received("c1") if v.startswith(b"{")]
    assert len(samples) >= 2
    counters = [s["counter"] for s in samples]
    assert counters == sorted(set(counters))
    for s in samples:
        assert 20 <= s["temperature"] <= 30
        assert 40 <= s["humidity"] <= 60
        assert 1000 <= s["pressure"] <= 1020
    assert len(transport.received("c1")) == count


async def test_stop_stream_when_idle(peripheral, recorder):
    recorder.clear()
    assert await peripheral.stop_streaming() is False
    assert recorder.kinds() == []


# --- Power ---

async def test_power_loss_ends_sessions(peripheral, transport, recorder):
    await transport.subscribe("c1", NOTIFY)
    await peripheral.start_streaming(10)

    await transport.set_power_state(PowerState.POWERED_OFF)

    assert not peripheral.is_advertising
    assert not peripheral.is_streaming
    assert not peripheral.is_heartbeat_active
    assert EventKind.ERROR in recorder.kinds()
    assert EventKind.ADVERTISING_STOPPED in recorder.kinds()
    assert await peripheral.start_advertising() is False

    await transport.set_power_state(PowerState.POWERED_ON)
    assert peripheral.is_advertising


# --- Identifiers ---

async def test_reset_identifiers_restarts_advertising(bus, transport, recorder):
    registry = IdentifierRegistry(MemoryStore(), IdentifierMode.RANDOM)
    peripheral = PeripheralSession(transport, registry, bus)
    await transport.start()
    old = peripheral.identifiers

    new = await peripheral.reset_identifiers()

    assert new.service != old.service
    assert peripheral.is_advertising
    assert transport.service_uuid == new.service
    kinds = recorder.kinds()
    assert kinds.count(EventKind.ADVERTISING_STARTED) == 2
    assert EventKind.ADVERTISING_STOPPED in kinds

    await transport.subscribe("c1", new.notify)
    assert peripheral.is_heartbeat_active
    await peripheral.shutdown()


async def test_status_snapshot(peripheral, transport):
    await transport.subscribe("c1", NOTIFY)
    status = peripheral.status()
    assert status["advertising"] is True
    assert status["power_state"] == "powered_on"
    assert status["subscribed"] == 1
    assert status["heartbeat"] is True
    assert status["streaming"] is False
