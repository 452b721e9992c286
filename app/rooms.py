"""Room directory: resolving, naming and listing rooms.

Private 1:1 rooms carry their two participants in the id itself
(``private_<minUserId>_<maxUserId>``), so authorization for them never
needs a lookup. Every private id is built by :func:`private_room_id`.
"""
import logging
import re
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, models, schemas
from .errors import AuthorizationError, ValidationError

logger = logging.getLogger(__name__)

PRIVATE_PREFIX = "private_"
PRIVATE_PLACEHOLDER_NAME = "Private conversation"
_PRIVATE_ID = re.compile(r"^private_(\d+)_(\d+)$")


def private_room_id(user_a: int, user_b: int) -> str:
    if user_a == user_b:
        raise ValidationError("A private room needs two different users")
    low, high = sorted((user_a, user_b))
    return f"{PRIVATE_PREFIX}{low}_{high}"


def parse_private_room_id(room_id: str) -> Optional[Tuple[int, int]]:
    """Return the two user ids encoded in *room_id*, or ``None``.

    Only the canonical form built by :func:`private_room_id` counts;
    ``private_9_2`` or ``private_3_3`` parse as ``None``.
    """
    match = _PRIVATE_ID.match(room_id or "")
    if not match:
        return None
    low, high = int(match.group(1)), int(match.group(2))
    if low >= high or room_id != f"{PRIVATE_PREFIX}{low}_{high}":
        return None
    return low, high


def private_participants(room_id: str) -> Tuple[int, ...]:
    return parse_private_room_id(room_id) or ()


def authorize_member(user_id: int, room_id: str) -> None:
    participants = parse_private_room_id(room_id)
    if participants is None:
        if _PRIVATE_ID.match(room_id or ""):
            raise ValidationError(
                "Malformed private room id", detail=f"{room_id} is not in canonical form"
            )
        return
    if user_id not in participants:
        logger.error(
            "User %s rejected from private room %s (participants: %s, %s)",
            user_id, room_id, *participants,
        )
        raise AuthorizationError(
            "You are not a participant of this private room",
            detail=f"user {user_id} is not encoded in {room_id}",
        )


def display_name(room: models.Room) -> str:
    if room.name and room.name != room.id:
        return room.name
    if room.is_private:
        return PRIVATE_PLACEHOLDER_NAME
    return f"Room {room.id[:5]}..."


class RoomDirectory:
    def __init__(self, general_room_id: str):
        self.general_room_id = general_room_id

    async def private_room_name(self, db: AsyncSession, room_id: str) -> str:
        participants = parse_private_room_id(room_id)
        if participants is None:
            return PRIVATE_PLACEHOLDER_NAME
        users = await crud.get_users(db, set(participants))
        if len(users) != 2:
            logger.warning("Cannot name %s: participants missing from the store", room_id)
            return PRIVATE_PLACEHOLDER_NAME
        # get_users orders by ascending id, matching the id encoding
        return f"Chat between {users[0].username} and {users[1].username}"

    async def resolve(
        self,
        db: AsyncSession,
        room_id: str,
        name: Optional[str] = None,
        is_private: Optional[bool] = None,
    ) -> models.Room:
        """Return the room for *room_id*, creating it on first reference.

        A ``private_<a>_<b>`` id is always private. Otherwise an explicit
        *is_private* overrides what is stored; ``None`` leaves it alone.
        """
        if parse_private_room_id(room_id) is not None:
            is_private = True

        room = await crud.get_room(db, room_id)
        if room is None:
            private = bool(is_private)
            if private and parse_private_room_id(room_id) is not None:
                final_name = await self.private_room_name(db, room_id)
            else:
                final_name = (name or "").strip() or room_id
            logger.info("Creating room %s (%r, private=%s)", room_id, final_name, private)
            return await crud.create_room(db, room_id, final_name, private)

        updates = {}
        if is_private is not None and room.is_private != is_private:
            updates["is_private"] = is_private
        private = updates.get("is_private", room.is_private)
        if private and parse_private_room_id(room_id) is not None and room.name in ("", room.id):
            updates["name"] = await self.private_room_name(db, room_id)
        if updates:
            logger.info("Updating room %s: %s", room_id, updates)
            room = await crud.update_room(db, room_id, **updates)
        return room

    async def list_public(self, db: AsyncSession) -> List[schemas.Room]:
        rooms = [
            schemas.Room(id=room.id, name=display_name(room), is_private=False)
            for room in await crud.get_rooms(db, is_private=False)
            if room.id != self.general_room_id
        ]
        # Ordered as shown, raw-id rooms included
        rooms.sort(key=lambda room: (room.name.lower(), room.id))
        return rooms

    async def list_private_for(self, db: AsyncSession, user_id: int) -> List[schemas.Room]:
        result = []
        for room in await crud.get_user_rooms(db, user_id, is_private=True):
            participants = parse_private_room_id(room.id)
            if participants is not None and user_id not in participants:
                logger.error(
                    "Corrupt membership: user %s is stored as a member of %s", user_id, room.id
                )
                continue
            result.append(schemas.Room(id=room.id, name=display_name(room), is_private=True))
        return result

    async def room_list_for(self, db: AsyncSession, user_id: int) -> List[schemas.Room]:
        return await self.list_public(db) + await self.list_private_for(db, user_id)

    async def add_member(self, db: AsyncSession, user_id: int, room_id: str) -> models.RoomMember:
        authorize_member(user_id, room_id)
        membership, created = await crud.upsert_membership(db, user_id, room_id)
        if created:
            logger.debug("User %s is now a member of %s", user_id, room_id)
        return membership
