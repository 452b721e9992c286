import pytest
from sqlalchemy import func, select

from app import crud, models
from app.database import AsyncSessionLocal
from app.errors import AuthorizationError, ValidationError
from app.rooms import (
    PRIVATE_PLACEHOLDER_NAME,
    RoomDirectory,
    authorize_member,
    parse_private_room_id,
    private_room_id,
)
from fix_rooms import fix_rooms


@pytest.fixture
def directory():
    return RoomDirectory("general")


def test_private_room_id_is_order_independent():
    assert private_room_id(9, 2) == "private_2_9"
    assert private_room_id(2, 9) == "private_2_9"


def test_private_room_id_needs_two_users():
    with pytest.raises(ValidationError):
        private_room_id(4, 4)


@pytest.mark.parametrize("room_id, expected", [
    ("private_3_7", (3, 7)),
    ("private_5_12", (5, 12)),
    ("private_12_5", None),
    ("private_3_3", None),
    ("private_03_7", None),
    ("private_3", None),
    ("private_a_b", None),
    ("general", None),
    ("", None),
])
def test_parse_private_room_id(room_id, expected):
    assert parse_private_room_id(room_id) == expected


def test_only_encoded_users_are_authorized():
    authorize_member(3, "private_3_7")
    authorize_member(7, "private_3_7")
    for outsider in (1, 4, 37, 73):
        with pytest.raises(AuthorizationError):
            authorize_member(outsider, "private_3_7")


def test_public_rooms_authorize_everyone():
    authorize_member(42, "general")
    authorize_member(42, "some-room")


def test_non_canonical_private_ids_are_refused():
    for room_id in ("private_7_3", "private_3_3"):
        with pytest.raises(ValidationError):
            authorize_member(3, room_id)


async def test_add_member_is_idempotent(db, make_user, directory):
    user = await make_user("alice")
    await directory.resolve(db, "lobby", name="Lobby")

    await directory.add_member(db, user.id, "lobby")
    await directory.add_member(db, user.id, "lobby")

    count = await db.scalar(
        select(func.count()).select_from(models.RoomMember).filter_by(user_id=user.id, room_id="lobby")
    )
    assert count == 1


async def test_add_member_rejects_outsider_of_private_room(db, make_user, directory):
    a = await make_user("a")
    b = await make_user("b")
    outsider = await make_user("c")
    room_id = private_room_id(a.id, b.id)
    await directory.resolve(db, room_id)

    with pytest.raises(AuthorizationError):
        await directory.add_member(db, outsider.id, room_id)
    assert await crud.get_room_member(db, room_id, outsider.id) is None


async def test_resolve_creates_public_room_with_name(db, directory):
    room = await directory.resolve(db, "abc123", name="Book club")
    assert room.name == "Book club"
    assert room.is_private is False


async def test_resolve_infers_privacy_and_names_by_ascending_id(db, make_user, directory):
    first = await make_user("zed")
    second = await make_user("amy")
    room_id = private_room_id(second.id, first.id)

    room = await directory.resolve(db, room_id)

    assert room.is_private is True
    assert room.name == "Chat between zed and amy"


async def test_resolve_private_room_with_missing_user_uses_placeholder(db, make_user, directory):
    user = await make_user("solo")
    room = await directory.resolve(db, private_room_id(user.id, user.id + 100))
    assert room.name == PRIVATE_PLACEHOLDER_NAME


async def test_resolve_updates_privacy_when_caller_knows_better(db, directory):
    await directory.resolve(db, "secret", name="Secret", is_private=False)
    room = await directory.resolve(db, "secret", is_private=True)
    assert room.is_private is True

    # no hint keeps what is stored
    room = await directory.resolve(db, "secret")
    assert room.is_private is True


async def test_resolve_repairs_private_room_stored_as_public(db, make_user, directory):
    a = await make_user("a")
    b = await make_user("b")
    room_id = private_room_id(a.id, b.id)
    await crud.create_room(db, room_id, room_id, False)

    room = await directory.resolve(db, room_id)

    assert room.is_private is True
    assert room.name == "Chat between a and b"


async def test_list_public_hides_general_and_private_rooms(db, make_user, directory):
    a = await make_user("a")
    b = await make_user("b")
    await directory.resolve(db, "general", name="General", is_private=False)
    await directory.resolve(db, private_room_id(a.id, b.id))
    await directory.resolve(db, "zz-room", name="Zebra")
    await directory.resolve(db, "aa-room", name="Aardvark")
    await crud.create_room(db, "0f3c9e2a-uuid", "0f3c9e2a-uuid", False)

    rooms = await directory.list_public(db)

    assert [room.name for room in rooms] == ["Aardvark", "Room 0f3c9...", "Zebra"]
    assert [room.id for room in rooms] == ["aa-room", "0f3c9e2a-uuid", "zz-room"]
    # display only: the stored name is untouched
    async with AsyncSessionLocal() as fresh:
        stored = await crud.get_room(fresh, "0f3c9e2a-uuid")
    assert stored.name == "0f3c9e2a-uuid"


async def test_list_private_for_drops_inconsistent_memberships(db, make_user, directory):
    a = await make_user("a")
    b = await make_user("b")
    c = await make_user("c")
    good = private_room_id(a.id, b.id)
    foreign = private_room_id(b.id, c.id)
    await directory.resolve(db, good)
    await directory.resolve(db, foreign)
    await directory.resolve(db, "club", name="Club", is_private=True)
    await directory.add_member(db, a.id, good)
    await directory.add_member(db, a.id, "club")
    # bypasses the directory, as a corrupted row would
    await crud.upsert_membership(db, a.id, foreign)

    rooms = await directory.list_private_for(db, a.id)

    assert sorted(room.id for room in rooms) == sorted([good, "club"])


async def test_fix_rooms_repairs_private_rooms_and_general(db, make_user, directory):
    a = await make_user("ann")
    b = await make_user("ben")
    room_id = private_room_id(a.id, b.id)
    await crud.create_room(db, room_id, room_id, False)
    await crud.create_room(db, "general", "Lobby", False)

    fixed = await fix_rooms(db, directory)

    assert fixed == 1
    async with AsyncSessionLocal() as fresh:
        room = await crud.get_room(fresh, room_id)
        general = await crud.get_room(fresh, "general")
    assert room.is_private is True
    assert room.name == "Chat between ann and ben"
    assert general.name == "General"
