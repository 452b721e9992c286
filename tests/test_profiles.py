from app import crud
from app.rooms import private_room_id


async def test_color_change_updates_sessions_and_room_lists(gateway, make_user, connect):
    alice = await make_user("alice", color="#111111")
    bob = await make_user("bob")
    alice_cid, _ = await connect(alice)
    _, bob_ws = await connect(bob)
    await gateway.presence.join(alice_cid, "lounge")
    bob_ws.clear()

    await gateway.profiles.color_changed(alice.id, "alice", "#abcdef")

    assert gateway.registry.get(alice_cid).color == "#abcdef"
    assert bob_ws.events("userColorChanged") == [
        {"userId": alice.id, "username": "alice", "color": "#abcdef"}
    ]
    # bob shares "general" with alice but is not in "lounge"
    room_lists = bob_ws.events("roomUserList")
    assert [event["roomId"] for event in room_lists] == ["general"]
    colors = {user["id"]: user["color"] for user in room_lists[0]["users"]}
    assert colors[alice.id] == "#abcdef"


async def test_avatar_change_of_offline_user_reaches_private_partner(gateway, db, make_user, connect):
    u2 = await make_user("u2")
    u9 = await make_user("u9")
    room_id = private_room_id(u2.id, u9.id)
    await gateway.directory.resolve(db, room_id)
    await gateway.directory.add_member(db, u2.id, room_id)
    await gateway.directory.add_member(db, u9.id, room_id)
    _, u9_ws = await connect(u9)
    u9_ws.clear()
    await crud.update_user(db, u2.id, avatar="/img/u2.png")

    await gateway.profiles.avatar_changed(u2.id, "u2", "/img/u2.png")

    assert u9_ws.events("userAvatarChanged") == [
        {"userId": u2.id, "username": "u2", "avatar": "/img/u2.png"}
    ]
    (room_list,) = u9_ws.events("roomUserList")
    assert room_list["roomId"] == room_id
    members = {user["id"]: user for user in room_list["users"]}
    assert members[u2.id]["avatar"] == "/img/u2.png"
    assert members[u2.id]["isOnline"] is False
    assert members[u9.id]["isOnline"] is True


async def test_avatar_change_refreshes_joined_private_room_once(gateway, make_user, connect):
    u2 = await make_user("u2")
    u9 = await make_user("u9")
    room_id = private_room_id(u2.id, u9.id)
    u2_cid, u2_ws = await connect(u2)
    u9_cid, u9_ws = await connect(u9)
    await gateway.presence.join(u2_cid, room_id)
    await gateway.presence.join(u9_cid, room_id)
    u9_ws.clear()

    await gateway.profiles.avatar_changed(u2.id, "u2", "/img/new.png")

    assert gateway.registry.get(u2_cid).avatar == "/img/new.png"
    lists = {event["roomId"]: event for event in u9_ws.events("roomUserList")}
    assert set(lists) == {"general", room_id}
    assert len(u9_ws.events("roomUserList")) == 2
    members = {user["id"]: user for user in lists[room_id]["users"]}
    assert members[u2.id]["avatar"] == "/img/new.png"
