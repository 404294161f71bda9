import asyncio
import logging

import pytest
from websockets.exceptions import ConnectionClosedError

from biolink.protocol import Snapshot
from biolink.transport import ConnectionState, WebSocketTransport, build_url

from .helpers.fakes import FakeConnector, settle


def test_build_url_adds_ws_scheme():
    assert build_url("localhost:8765") == "ws://localhost:8765"
    assert build_url("  192.168.1.20:9000 ") == "ws://192.168.1.20:9000"


@pytest.mark.parametrize("target", ["", "   ", "localhost", "ws://localhost:8765",
                                    "localhost:8765/feed", "host:port", "host:70000", ":8765"])
def test_build_url_rejects_anything_but_host_port(target):
    with pytest.raises(ValueError):
        build_url(target)


def test_connect_marks_connected_before_handshake():
    async def scenario():
        connector = FakeConnector()
        link = WebSocketTransport(connector=connector)
        link.connect("localhost:8765")
        connected_immediately = link.is_connected()
        opened_immediately = bool(connector.urls)
        await settle()
        await link.disconnect()
        return connected_immediately, opened_immediately, connector.urls

    connected, opened, urls = asyncio.run(scenario())
    assert connected is True
    assert opened is False
    assert urls == ["ws://localhost:8765"]


def test_disconnect_closes_with_normal_closure_and_is_idempotent():
    async def scenario():
        connector = FakeConnector()
        link = WebSocketTransport(connector=connector)
        link.connect("localhost:8765")
        await settle()
        await link.disconnect()
        await link.disconnect()
        return link, connector.last

    link, ws = asyncio.run(scenario())
    assert link.is_connected() is False
    assert link.state is ConnectionState.DISCONNECTED
    assert ws.closed_with == 1000


def test_disconnect_without_connect_is_noop():
    link = WebSocketTransport(connector=FakeConnector())
    asyncio.run(link.disconnect())
    assert link.state is ConnectionState.DISCONNECTED


def test_inbound_frames_are_logged_and_ignored(caplog):
    async def scenario():
        connector = FakeConnector()
        link = WebSocketTransport(connector=connector)
        link.connect("localhost:8765")
        await settle()
        connector.last.feed('{"type":"ack"}')
        connector.last.feed(b"\x00\x01\x02")
        await settle()
        still_connected = link.is_connected()
        await link.disconnect()
        return still_connected

    with caplog.at_level(logging.INFO, logger="transport"):
        assert asyncio.run(scenario()) is True
    assert 'Received text message: {"type":"ack"}' in caplog.text
    assert "Received binary message: 3 bytes" in caplog.text


def test_receive_failure_disconnects_without_raising(caplog):
    states = []

    async def scenario():
        connector = FakeConnector()
        link = WebSocketTransport(connector=connector)
        link.set_state_callback(states.append)
        link.connect("localhost:8765")
        await settle()
        connector.last.feed(ConnectionClosedError(None, None))
        await settle()
        return link

    with caplog.at_level(logging.ERROR, logger="transport"):
        link = asyncio.run(scenario())
    assert link.is_connected() is False
    assert states == [ConnectionState.CONNECTED, ConnectionState.DISCONNECTED]
    assert "WebSocket receive error" in caplog.text


def test_open_failure_disconnects():
    async def scenario():
        link = WebSocketTransport(connector=FakeConnector(fail=OSError("connection refused")))
        link.connect("localhost:8765")
        assert link.is_connected() is True
        await settle()
        return link

    assert asyncio.run(scenario()).is_connected() is False


def test_send_writes_compact_json_frame():
    async def scenario():
        connector = FakeConnector()
        link = WebSocketTransport(connector=connector)
        link.connect("localhost:8765")
        await settle()
        ok = await link.send_biometric_data(Snapshot(72, 45.3, 120.5, 88))
        await link.disconnect()
        return ok, connector.last.sent

    ok, sent = asyncio.run(scenario())
    assert ok is True
    assert sent == [
        '{"type":"biometric_data","data":{"heart_rate":72,"hrv":45.3,"activity":120.5,"battery_level":88}}'
    ]


def test_send_failure_is_logged_and_keeps_state(caplog):
    async def scenario():
        connector = FakeConnector(fail_send=True)
        link = WebSocketTransport(connector=connector)
        link.connect("localhost:8765")
        await settle()
        ok = await link.send({"type": "biometric_data"})
        connected = link.is_connected()
        await link.disconnect()
        return ok, connected

    with caplog.at_level(logging.ERROR, logger="transport"):
        ok, connected = asyncio.run(scenario())
    assert ok is False
    assert connected is True
    assert "WebSocket send error" in caplog.text
    assert any(r.exc_info for r in caplog.records if "send error" in r.getMessage())


def test_unserializable_payload_is_dropped(caplog):
    async def scenario():
        connector = FakeConnector()
        link = WebSocketTransport(connector=connector)
        link.connect("localhost:8765")
        await settle()
        ok = await link.send({"type": "biometric_data", "data": {"heart_rate": object()}})
        nan_ok = await link.send({"hrv": float("nan")})
        await link.disconnect()
        return ok, nan_ok, connector.last.sent

    with caplog.at_level(logging.ERROR, logger="transport"):
        ok, nan_ok, sent = asyncio.run(scenario())
    assert ok is False
    assert nan_ok is False
    assert sent == []
    assert "Failed to serialize data" in caplog.text


def test_send_before_socket_opens_is_dropped():
    async def scenario():
        link = WebSocketTransport(connector=FakeConnector())
        link.connect("localhost:8765")
        ok = await link.send({"type": "biometric_data"})
        await link.disconnect()
        return ok

    assert asyncio.run(scenario()) is False


def test_connect_while_connected_is_ignored():
    async def scenario():
        connector = FakeConnector()
        link = WebSocketTransport(connector=connector)
        link.connect("localhost:8765")
        link.connect("otherhost:9000")
        await settle()
        await link.disconnect()
        return connector.urls

    assert asyncio.run(scenario()) == ["ws://localhost:8765"]


def test_reconnect_after_receive_failure_opens_new_socket():
    async def scenario():
        connector = FakeConnector()
        link = WebSocketTransport(connector=connector)
        link.connect("localhost:8765")
        await settle()
        first = connector.last
        first.feed(ConnectionResetError("reset"))
        await settle()
        link.connect("localhost:8765")
        pending_close = len(link._closing)
        await settle()
        closes_left = len(link._closing)
        ok = await link.send({"type": "biometric_data"})
        await link.disconnect()
        return first, connector.last, ok, pending_close, closes_left

    first, second, ok, pending_close, closes_left = asyncio.run(scenario())
    assert pending_close == 1
    assert closes_left == 0
    assert first is not second
    assert first.closed_with == 1000
    assert ok is True
    assert len(second.sent) == 1


def test_hardened_link_waits_for_handshake():
    async def scenario():
        link = WebSocketTransport(connector=FakeConnector(), hardened=True)
        link.connect("localhost:8765")
        before = link.state
        await settle()
        after = link.state
        await link.disconnect()
        return before, after

    before, after = asyncio.run(scenario())
    assert before is ConnectionState.CONNECTING
    assert after is ConnectionState.CONNECTED


def test_hardened_link_drops_on_send_failure():
    async def scenario():
        link = WebSocketTransport(connector=FakeConnector(fail_send=True), hardened=True)
        link.connect("localhost:8765")
        await settle()
        await link.send({"type": "biometric_data"})
        state = link.state
        await link.disconnect()
        return state

    assert asyncio.run(scenario()) is ConnectionState.DISCONNECTED
