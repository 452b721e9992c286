import json

import pytest

from app.errors import ValidationError
from app.gateway import normalize_frame
from app.security import create_access_token
from tests.conftest import FakeWebSocket


@pytest.mark.parametrize("frame, expected", [
    ({"event": "joinRoom", "data": {"roomId": "a"}}, ("joinRoom", {"roomId": "a"})),
    ({"event": "join", "data": {"room_id": "a"}}, ("joinRoom", {"room_id": "a"})),
    ({"type": "send", "roomId": "a", "content": "hi"}, ("sendMessage", {"roomId": "a", "content": "hi"})),
])
def test_normalize_frame(frame, expected):
    assert normalize_frame(frame) == expected


@pytest.mark.parametrize("frame", [["joinRoom", {}], {"data": {}}, {"event": 3}])
def test_normalize_frame_rejects_garbage(frame):
    with pytest.raises(ValidationError):
        normalize_frame(frame)


async def test_legacy_payload_shapes_are_accepted(gateway, make_user, connect):
    alice = await make_user("alice")
    cid, _ = await connect(alice)

    await gateway.dispatch(cid, {"event": "join", "data": {"room_id": "one"}})
    await gateway.dispatch(cid, {"type": "joinRoom", "room": "two"})
    await gateway.dispatch(cid, {"event": "leaveRoom", "data": {"roomId": "one"}})

    assert gateway.registry.get(cid).joined_room_ids == {"general", "two"}


async def test_malformed_events_are_dropped_quietly(gateway, make_user, connect):
    alice = await make_user("alice")
    cid, ws = await connect(alice)
    ws.clear()

    await gateway.dispatch(cid, {"event": "joinRoom", "data": {}})
    await gateway.dispatch(cid, {"event": "joinRoom", "data": {"roomId": "   "}})
    await gateway.dispatch(cid, {"event": "typing", "data": "oops"})
    await gateway.dispatch(cid, {"event": "selfDestruct", "data": {}})
    await gateway.dispatch(cid, "not even a dict")

    assert ws.sent == []
    assert gateway.registry.get(cid).joined_room_ids == {"general"}


async def test_malformed_create_room_reports_creation_error(gateway, make_user, connect):
    alice = await make_user("alice")
    cid, ws = await connect(alice)
    ws.clear()

    await gateway.dispatch(cid, {"event": "createRoom", "data": {"roomName": "Nameless"}})

    assert ws.names() == ["roomCreationError"]
    assert ws.events("roomCreationError")[0]["roomName"] == "Nameless"


async def test_create_room_through_dispatch(gateway, make_user, connect):
    alice = await make_user("alice")
    cid, ws = await connect(alice)

    await gateway.dispatch(
        cid, {"event": "createRoom", "data": {"room_id": "r1", "name": "Chess", "is_private": False}}
    )

    assert ws.events("roomCreated")[0]["roomName"] == "Chess"
    assert "r1" in gateway.registry.get(cid).joined_room_ids


async def test_serve_runs_a_connection_to_completion(gateway, make_user):
    alice = await make_user("alice")
    ws = FakeWebSocket(incoming=[
        json.dumps({"event": "joinRoom", "data": {"roomId": "lounge"}}),
        "{not json",
        json.dumps({"event": "sendMessage", "data": {"roomId": "lounge", "content": "hey"}}),
    ])

    await gateway.serve(ws, create_access_token(alice.id))

    assert ws.events("newMessage")[0]["content"] == "hey"
    assert len(gateway.registry) == 0
    assert gateway.connections.active_connections == {}


async def test_serve_ends_quietly_for_a_replaced_connection(gateway, make_user, connect):
    alice = await make_user("alice")
    ws = FakeWebSocket()

    async def replaced_then_read():
        # a newer login closes this socket before it reads again
        await connect(alice)
        return await FakeWebSocket.receive_text(ws)

    ws.receive_text = replaced_then_read

    await gateway.serve(ws, create_access_token(alice.id))

    assert ws.close_code == 4003
    assert len(gateway.registry) == 1


async def test_serve_rejects_without_token(gateway):
    ws = FakeWebSocket(incoming=[json.dumps({"event": "joinRoom", "data": {"roomId": "x"}})])

    await gateway.serve(ws, None)

    assert ws.names() == ["error"]
    assert ws.incoming  # never read
