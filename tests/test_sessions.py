from blesim.sessions import SessionTable

NOTIFY = "6E400004-B5A3-F393-E0A9-E50E24DCCA9E"
READ_WRITE = "6E400005-B5A3-F393-E0A9-E50E24DCCA9E"


def make_table():
    return SessionTable(notify_characteristics=(NOTIFY, READ_WRITE))


def test_connect_is_idempotent():
    table = make_table()
    assert table.on_connect("a").connected
    assert not table.on_connect("a").connected
    assert table.connected_count == 1


def test_first_subscription_starts_heartbeat():
    table = make_table()
    first = table.on_subscribe("a", NOTIFY)
    second = table.on_subscribe("b", NOTIFY)

    assert first.connected and first.heartbeat_start
    assert second.connected and not second.heartbeat_start
    assert table.subscribed_count == 2


def test_subscription_is_case_insensitive():
    table = make_table()
    table.on_subscribe("a", NOTIFY.lower())
    assert table.subscribed_peers(NOTIFY) == {"a"}


def test_unsubscribe_without_connect_marker_removes_peer():
    table = make_table()
    table.on_subscribe("a", NOTIFY)

    change = table.on_unsubscribe("a", NOTIFY)

    assert change.disconnected
    assert change.heartbeat_stop
    assert "a" not in table


def test_unsubscribe_keeps_explicitly_connected_peer():
    table = make_table()
    table.on_connect("a")
    table.on_subscribe("a", NOTIFY)

    change = table.on_unsubscribe("a", NOTIFY)

    assert not change.disconnected
    assert change.heartbeat_stop
    assert table.connected_count == 1
    assert table.subscribed_count == 0


def test_heartbeat_stops_only_with_last_subscriber():
    table = make_table()
    table.on_subscribe("a", NOTIFY)
    table.on_subscribe("b", READ_WRITE)

    assert not table.on_unsubscribe("a", NOTIFY).heartbeat_stop
    assert table.on_disconnect("b").heartbeat_stop
    assert not table.has_subscribers()


def test_partial_unsubscribe_keeps_peer():
    table = make_table()
    table.on_subscribe("a", NOTIFY)
    table.on_subscribe("a", READ_WRITE)

    change = table.on_unsubscribe("a", NOTIFY)

    assert not change.disconnected and not change.heartbeat_stop
    assert table.subscribed_peers() == {"a"}
    assert table.subscribed_peers(NOTIFY) == set()


def test_touch_registers_unknown_peer_once():
    table = make_table()
    assert table.touch("a").connected
    assert not table.touch("a").connected
    assert table.get("a").connected


def test_disconnect_of_unknown_peer_is_noop():
    table = make_table()
    change = table.on_disconnect("ghost")
    assert not change.disconnected and not change.heartbeat_stop


def test_unsubscribe_of_unknown_peer_is_noop():
    table = make_table()
    assert not table.on_unsubscribe("ghost", NOTIFY).disconnected
    assert len(table) == 0


def test_disconnect_without_subscription_does_not_stop_heartbeat():
    table = make_table()
    table.on_subscribe("a", NOTIFY)
    table.on_connect("b")

    change = table.on_disconnect("b")

    assert change.disconnected
    assert not change.heartbeat_stop


def test_peer_to_dict():
    table = make_table()
    table.on_subscribe("a", NOTIFY)
    data = table.get("a").to_dict()
    assert data["peer_id"] == "a"
    assert data["subscriptions"] == [NOTIFY]
    assert data["connected"] is False
