import asyncio
import json
from dataclasses import replace

import pytest

from dogehouse_client.connection import Connection, connect
from dogehouse_client.errors import (
    ConnectionClosedError,
    FetchTimeoutError,
    HandshakeRejectedError,
    NotConnectedError,
    SessionDisplacedError,
)
from dogehouse_client.opcodes import ConnectionState


async def ready_connection(websocket, connector, settings, **hooks):
    websocket.feed_frame("auth-good", {"user": {"id": "u1"}})
    return await connect("tok", "rtok", settings=settings, connector=connector, **hooks)


@pytest.mark.asyncio
async def test_auth_good_resolves_with_user(websocket, connector, settings):
    conn = await ready_connection(websocket, connector, settings)

    assert conn.state is ConnectionState.READY
    assert conn.user == {"id": "u1"}
    assert conn.heartbeat.running
    await conn.close()


@pytest.mark.asyncio
async def test_auth_request_is_first_frame(websocket, connector, settings):
    conn = await ready_connection(websocket, connector, settings)

    first = json.loads(websocket.sent_messages[0])
    assert first == {
        "op": "auth",
        "d": {
            "accessToken": "tok",
            "refreshToken": "rtok",
            "reconnectToVoice": False,
            "currentRoomId": None,
            "muted": False,
            "platform": settings.platform,
        },
    }
    await conn.close()


@pytest.mark.asyncio
async def test_fetch_ignores_other_fetch_ids(websocket, connector, settings, monkeypatch):
    monkeypatch.setattr("dogehouse_client.fetch.new_fetch_id", lambda: "abc")
    conn = await ready_connection(websocket, connector, settings)

    task = asyncio.create_task(conn.fetch("get_room", {}))
    await asyncio.sleep(0.01)
    assert websocket.sent_frames()[-1] == {"op": "get_room", "d": {}, "fetchId": "abc"}

    websocket.feed_frame("fetch_done", {"ok": False}, "zzz")
    await asyncio.sleep(0.01)
    assert not task.done()

    websocket.feed_frame("fetch_done", {"ok": True}, "abc")
    assert await asyncio.wait_for(task, 1) == {"ok": True}
    await conn.close()


@pytest.mark.asyncio
async def test_displacement_invokes_hook_once(websocket, connector, settings):
    displaced = []
    conn = await ready_connection(websocket, connector, settings, on_displaced=displaced.append)
    pending = asyncio.create_task(conn.fetch("get_room", {}))
    await asyncio.sleep(0.01)

    websocket.server_close(4003, "taken")
    end = await asyncio.wait_for(conn.wait_closed(), 1)

    assert conn.state is ConnectionState.DISPLACED
    assert end.displaced and end.code == 4003
    assert displaced == [end]
    assert not conn.heartbeat.running
    with pytest.raises(SessionDisplacedError):
        await pending

    # terminal: closing again changes nothing
    assert await conn.close() is end
    assert displaced == [end]


@pytest.mark.asyncio
async def test_other_close_code_never_displaces(websocket, connector, settings):
    displaced = []
    conn = await ready_connection(websocket, connector, settings, on_displaced=displaced.append)
    pending = asyncio.create_task(conn.fetch("get_room", {}))
    await asyncio.sleep(0.01)

    websocket.server_close(1011, "server error")
    end = await asyncio.wait_for(conn.wait_closed(), 1)

    assert end.state is ConnectionState.CLOSED
    assert end.code == 1011
    assert displaced == []
    with pytest.raises(ConnectionClosedError) as excinfo:
        await pending
    assert not isinstance(excinfo.value, SessionDisplacedError)


@pytest.mark.asyncio
async def test_close_before_auth_good_rejects_establishment(websocket, connector, settings):
    displaced = []
    websocket.server_close(4001, "bad token")

    with pytest.raises(HandshakeRejectedError) as excinfo:
        await connect("tok", "rtok", settings=settings, connector=connector, on_displaced=displaced.append)

    assert excinfo.value.code == 4001
    assert excinfo.value.reason == "bad token"
    assert displaced == []


@pytest.mark.asyncio
async def test_displacement_code_during_handshake_is_a_rejection(websocket, connector, settings):
    displaced = []
    websocket.server_close(4003, "taken")

    conn = Connection("tok", "rtok", settings=settings, on_displaced=displaced.append)
    with pytest.raises(HandshakeRejectedError):
        await conn.establish(connector)

    assert conn.state is ConnectionState.CLOSED
    assert displaced == []
    assert conn.user is None


@pytest.mark.asyncio
async def test_transport_open_failure_rejects(settings):
    async def refuse(_settings):
        raise OSError("connection refused")

    conn = Connection("tok", "rtok", settings=settings)
    with pytest.raises(HandshakeRejectedError):
        await conn.establish(refuse)

    assert conn.state is ConnectionState.CLOSED
    assert not conn.heartbeat.running


@pytest.mark.asyncio
async def test_second_auth_good_is_ignored(websocket, connector, settings):
    seen = []
    conn = await ready_connection(websocket, connector, settings)
    conn.add_listener("auth-good", lambda d, f: seen.append(d))

    websocket.feed_frame("auth-good", {"user": {"id": "intruder"}})
    await asyncio.sleep(0.01)

    assert conn.user == {"id": "u1"}
    assert conn.state is ConnectionState.READY
    assert seen == []
    await conn.close()


@pytest.mark.asyncio
async def test_pong_and_malformed_frames_are_not_dispatched(websocket, connector, settings):
    frames = []
    conn = await ready_connection(websocket, connector, settings,
                                  on_frame=lambda *args: frames.append(args))
    calls = []
    conn.add_listener("pong", lambda d, f: calls.append(d))
    conn.add_listener("room_update", lambda d, f: calls.append(d))

    websocket.feed('"pong"')
    websocket.feed("{broken")
    websocket.feed_frame("room_update", {"n": 1})
    await asyncio.sleep(0.01)

    assert calls == [{"n": 1}]
    inbound = [f for f in frames if f[0] == "in"]
    assert ("in", "pong", None, None, '"pong"') in inbound
    assert ("in", None, None, None, "{broken") in inbound
    assert conn.state is ConnectionState.READY
    await conn.close()


@pytest.mark.asyncio
async def test_frame_hook_sees_outbound_frames_and_errors_are_contained(websocket, connector, settings):
    frames = []

    def hook(direction, opcode, payload, fetch_id, raw):
        frames.append((direction, opcode, fetch_id))
        raise RuntimeError("hook bug")

    conn = await ready_connection(websocket, connector, settings, on_frame=hook)
    await conn.send("speaking_change", {"value": True}, "f1")

    assert ("out", "auth", None) in frames
    assert ("in", "auth-good", None) in frames
    assert ("out", "speaking_change", "f1") in frames
    assert json.loads(websocket.sent_messages[-1]) == {
        "op": "speaking_change", "d": {"value": True}, "fetchId": "f1",
    }
    await conn.close()


@pytest.mark.asyncio
async def test_send_before_open_raises(settings):
    conn = Connection("tok", "rtok", settings=settings)

    with pytest.raises(NotConnectedError):
        await conn.send("get_room", {})


@pytest.mark.asyncio
async def test_send_after_close_raises(websocket, connector, settings):
    conn = await ready_connection(websocket, connector, settings)
    await conn.close()

    with pytest.raises(NotConnectedError):
        await conn.send("get_room", {})


@pytest.mark.asyncio
async def test_user_close_ends_in_closed_even_with_4003(websocket, connector, settings):
    displaced = []
    conn = await ready_connection(websocket, connector, settings, on_displaced=displaced.append)

    end = await conn.close(code=4003)

    assert end.state is ConnectionState.CLOSED
    assert displaced == []
    assert websocket.close_code == 4003


@pytest.mark.asyncio
async def test_async_context_manager_closes(websocket, connector, settings):
    async with await ready_connection(websocket, connector, settings) as conn:
        assert conn.state is ConnectionState.READY

    assert conn.state is ConnectionState.CLOSED
    assert websocket.closed


@pytest.mark.asyncio
async def test_establish_twice_is_an_error(websocket, connector, settings):
    conn = await ready_connection(websocket, connector, settings)

    with pytest.raises(RuntimeError):
        await conn.establish(connector)
    await conn.close()


@pytest.mark.asyncio
async def test_listeners_fire_in_frame_order(websocket, connector, settings):
    conn = await ready_connection(websocket, connector, settings)
    order = []
    conn.add_listener("chat", lambda d, f: order.append(("a", d)))
    conn.add_listener("chat", lambda d, f: order.append(("b", d)))

    websocket.feed_frame("chat", 1)
    websocket.feed_frame("chat", 2)
    await asyncio.sleep(0.01)

    assert order == [("a", 1), ("b", 1), ("a", 2), ("b", 2)]
    await conn.close()


@pytest.mark.asyncio
async def test_configured_fetch_timeout_applies(websocket, connector, settings):
    conn = await ready_connection(websocket, connector, replace(settings, fetch_timeout=0.05))

    with pytest.raises(FetchTimeoutError):
        await conn.fetch("get_room", {})

    assert conn.pending_fetches == 0
    assert conn.listeners.count() == 0
    await conn.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw",
    [
        '{"op":"x","d":' + "1" * 5000 + "}",
        "[" * 100000 + "]" * 100000,
    ],
    ids=["oversized-int", "deep-nesting"],
)
async def test_undecodable_frame_does_not_end_session(websocket, connector, settings, raw):
    seen = []
    reported = []
    conn = await ready_connection(
        websocket, connector, settings,
        on_frame=lambda direction, op, d, f, text: reported.append(op) if direction == "in" else None,
    )
    conn.add_listener("after", lambda d, f: seen.append(d))

    websocket.feed(raw)
    websocket.feed_frame("after", "ok")
    await asyncio.sleep(0.02)

    assert conn.state is ConnectionState.READY
    assert seen == ["ok"]
    assert None in reported
    await conn.close()


@pytest.mark.asyncio
async def test_send_on_dropped_transport_raises_client_error(websocket, connector, settings):
    conn = await ready_connection(websocket, connector, settings)
    # transport is gone but the reader has not observed the close yet
    websocket.closed = True

    with pytest.raises(ConnectionClosedError):
        await conn.fetch("get_room", {})
    with pytest.raises(ConnectionClosedError):
        await conn.send("chat", {"text": "hi"})

    assert conn.pending_fetches == 0
    assert conn.listeners.count() == 0

    websocket.server_close(1006)
    end = await conn.wait_closed()
    assert end.state is ConnectionState.CLOSED
