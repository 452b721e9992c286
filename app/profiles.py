"""Pushes color and avatar changes into every room view that shows the user."""
import logging
from typing import Iterable, Set

from sqlalchemy.ext.asyncio import async_sessionmaker

from .database import store_session
from .errors import ChatError
from .presence import PresenceCoordinator
from .registry import SessionRegistry
from .rooms import RoomDirectory, private_participants
from .services import ConnectionManager

logger = logging.getLogger(__name__)


class ProfileChangePropagator:
    def __init__(
        self,
        registry: SessionRegistry,
        connections: ConnectionManager,
        directory: RoomDirectory,
        presence: PresenceCoordinator,
        session_factory: async_sessionmaker,
    ):
        self.registry = registry
        self.connections = connections
        self.directory = directory
        self.presence = presence
        self.session_factory = session_factory

    async def color_changed(self, user_id: int, username: str, color: str) -> None:
        sessions = self.registry.update_identity(user_id, color=color)
        logger.info("Color of user %s changed, %d live session(s)", user_id, len(sessions))
        await self.connections.broadcast(
            "userColorChanged", {"userId": user_id, "username": username, "color": color}
        )
        rooms = set()
        for session in sessions:
            rooms |= session.joined_room_ids
        await self._refresh_rooms(user_id, rooms)

    async def avatar_changed(self, user_id: int, username: str, avatar: str) -> None:
        sessions = self.registry.update_identity(user_id, avatar=avatar)
        logger.info("Avatar of user %s changed, %d live session(s)", user_id, len(sessions))
        await self.connections.broadcast(
            "userAvatarChanged", {"userId": user_id, "username": username, "avatar": avatar}
        )
        rooms = set()
        for session in sessions:
            rooms |= session.joined_room_ids
        # Private rooms show the user even when they are not connected.
        rooms |= {
            room_id for room_id in self.connections.group_ids()
            if user_id in private_participants(room_id)
        }
        try:
            async with store_session(self.session_factory) as db:
                rooms |= {room.id for room in await self.directory.list_private_for(db, user_id)}
        except ChatError as exc:
            logger.error("Could not load private rooms of user %s: %s", user_id, exc)
        await self._refresh_rooms(user_id, rooms)

    async def _refresh_rooms(self, user_id: int, room_ids: Iterable[str]) -> Set[str]:
        refreshed = set()
        for room_id in sorted(room_ids):
            # The other participant of a private room is told even when they
            # are not looking at it right now.
            participants = [uid for uid in private_participants(room_id) if uid != user_id]
            extra = self.registry.connections_for_users(participants)
            try:
                await self.presence.broadcast_room_users(room_id, extra_connections=extra)
            except ChatError as exc:
                logger.error("Member list refresh for %s failed: %s", room_id, exc)
                continue
            refreshed.add(room_id)
        return refreshed
