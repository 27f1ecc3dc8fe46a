from blesim.config_loader import MESSAGE_LOG_SIZE
from blesim.events import Direction, EventBus, EventKind, MessageType, PeripheralEvent
from blesim.monitor import SessionMonitor, render_content


def test_render_text_and_binary():
    assert render_content(b"hello", MessageType.TEXT) == "hello"
    assert render_content(b"\xaa\xbb", MessageType.BINARY) == "AA BB"
    assert render_content(b"\xff", MessageType.NOTIFICATION) == "FF"
    assert render_content(None, MessageType.TEXT) == ""


async def test_log_is_bounded_and_newest_first():
    bus = EventBus()
    monitor = SessionMonitor(bus)

    for i in range(MESSAGE_LOG_SIZE + 10):
        await bus.publish(PeripheralEvent(EventKind.NOTIFIED, payload=f"m{i}".encode()))

    messages = monitor.recent_messages()
    assert len(messages) == MESSAGE_LOG_SIZE
    assert messages[0]["content"] == f"m{MESSAGE_LOG_SIZE + 9}"
    assert monitor.recent_messages(limit=3)[2]["content"] == f"m{MESSAGE_LOG_SIZE + 7}"


async def test_stats_count_traffic():
    bus = EventBus()
    monitor = SessionMonitor(bus)

    await bus.publish(PeripheralEvent(
        EventKind.WRITTEN, direction=Direction.RECEIVED, message_type=MessageType.TEXT, payload=b"PING",
    ))
    await bus.publish(PeripheralEvent(
        EventKind.WRITTEN, direction=Direction.RECEIVED, message_type=MessageType.BINARY, payload=b"\x01\x02",
    ))
    await bus.publish(PeripheralEvent(EventKind.NOTIFIED, message_type=MessageType.NOTIFICATION, payload=b"PONG"))

    stats = monitor.stats.to_dict()
    assert stats["bytes_received"] == 6
    assert stats["bytes_sent"] == 4
    assert stats["notifications_sent"] == 1
    assert stats["commands_processed"] == 1

    monitor.reset_stats()
    assert monitor.stats.bytes_sent == 0


async def test_events_without_payload_use_detail():
    bus = EventBus()
    monitor = SessionMonitor(bus)

    await bus.publish(PeripheralEvent(EventKind.CONNECTED, peer_id="c1"))
    await bus.publish(PeripheralEvent(EventKind.ADVERTISING_STARTED, detail="Service UUID: X"))

    newest, older = monitor.recent_messages()
    assert newest["content"] == "Service UUID: X"
    assert older["content"] == "connected (c1)"

    monitor.clear_messages()
    assert monitor.recent_messages() == []


async def test_sse_clients_receive_events():
    bus = EventBus()
    monitor = SessionMonitor(bus)
    client = monitor.add_client()

    await bus.publish(PeripheralEvent(EventKind.STREAM_STARTED, detail="interval=1.0"))

    data = client.queue.get_nowait()
    assert data["kind"] == "stream_started"
    assert data["detail"] == "interval=1.0"

    monitor.remove_client(client)
    assert not client.connected
    assert monitor.clients == {}


async def test_failing_subscriber_does_not_block_others():
    bus = EventBus()
    seen = []

    async def broken(event):
        raise RuntimeError("boom")

    async def working(event):
        seen.append(event.kind)

    bus.subscribe(EventKind.READ, broken)
    bus.subscribe_all(working)

    await bus.publish(PeripheralEvent(EventKind.READ))
    assert seen == [EventKind.READ]


async def test_close_stops_observing():
    bus = EventBus()
    monitor = SessionMonitor(bus)
    client = monitor.add_client()

    monitor.close()
    await bus.publish(PeripheralEvent(EventKind.READ))

    assert monitor.recent_messages() == []
    assert not client.connected
    assert bus.list_subscriptions() == {}
