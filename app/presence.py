"""Connection lifecycle, room membership and live member lists.

Every membership change ends by re-broadcasting a full member snapshot
for the rooms it touched, so a snapshot computed mid-flight is replaced
by the next one.
"""
import logging
from typing import Iterable, List, Optional

from fastapi import WebSocket, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import crud, schemas
from .database import store_session
from .errors import AuthenticationError, ChatError, NotFoundError, PersistenceError
from .registry import Session, SessionRegistry
from .relay import MessageRelay
from .rooms import RoomDirectory, authorize_member, parse_private_room_id, private_participants
from .security import verify_credential
from .services import ConnectionManager

logger = logging.getLogger(__name__)

CLOSE_AUTH_FAILED = status.WS_1008_POLICY_VIOLATION
CLOSE_SESSION_REPLACED = 4003


class PresenceCoordinator:
    def __init__(
        self,
        registry: SessionRegistry,
        connections: ConnectionManager,
        directory: RoomDirectory,
        relay: MessageRelay,
        session_factory: async_sessionmaker,
        general_room_name: str = "General",
    ):
        self.registry = registry
        self.connections = connections
        self.directory = directory
        self.relay = relay
        self.session_factory = session_factory
        self.general_room_id = directory.general_room_id
        self.general_room_name = general_room_name

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _authenticate(self, token: Optional[str]):
        if not token:
            raise AuthenticationError("Authentication required")
        user_id = verify_credential(token)
        async with store_session(self.session_factory) as db:
            user = await crud.get_user(db, user_id)
        if user is None:
            raise AuthenticationError("User not found", detail=f"no user {user_id}")
        return user

    async def _reject(self, connection_id: str, message: str) -> None:
        await self.connections.send(connection_id, "error", {"message": message})
        await self.connections.close(connection_id, CLOSE_AUTH_FAILED, message)

    async def connect(self, websocket: WebSocket, token: Optional[str]) -> Optional[str]:
        """Accept *websocket*, authenticate it and register its session.

        Returns the connection id, or ``None`` when the connection was
        rejected and closed.
        """
        connection_id = await self.connections.connect(websocket)
        try:
            user = await self._authenticate(token)
        except (AuthenticationError, PersistenceError) as exc:
            logger.warning("Rejecting connection %s: %s", connection_id, exc)
            await self._reject(connection_id, exc.message)
            return None

        # A user is present at most once. Stale sessions are swapped out
        # before the first await so a concurrent connect sees this one.
        evicted = [
            self.registry.remove(stale_id)
            for stale_id in self.registry.other_connections_for_user(user.id, connection_id)
        ]
        session = self.registry.register(connection_id, user, room_ids=[self.general_room_id])
        self.connections.join_group(connection_id, self.general_room_id)
        for stale in evicted:
            logger.info(
                "User %s reconnected, closing previous connection %s", user.id, stale.connection_id
            )
            await self.connections.close(
                stale.connection_id, CLOSE_SESSION_REPLACED, "Logged in elsewhere"
            )
        if connection_id not in self.registry:
            logger.info("Connection %s was replaced while connecting", connection_id)
            await self._announce_replaced(evicted)
            return None

        try:
            async with store_session(self.session_factory) as db:
                await self.directory.resolve(
                    db, self.general_room_id, name=self.general_room_name, is_private=False
                )
                await self.directory.add_member(db, user.id, self.general_room_id)
        except ChatError as exc:
            logger.error("Setup of connection %s failed: %s", connection_id, exc)
            self.registry.remove(connection_id)
            await self._reject(connection_id, exc.message)
            await self._announce_replaced(evicted)
            return None
        if connection_id not in self.registry:
            logger.info("Connection %s was replaced while connecting", connection_id)
            await self._announce_replaced(evicted)
            return None

        identity = session.identity().dump()
        await self.connections.send(
            connection_id, "userConnected", {"user": identity, "isCurrentUser": True}
        )
        await self.connections.broadcast(
            "userStatusChanged",
            {"userId": user.id, "username": user.username, "isOnline": True},
        )
        await self.send_room_list(connection_id)
        await self.connections.broadcast("userJoined", {"user": identity}, exclude=connection_id)
        await self.connections.broadcast_to_room(
            self.general_room_id,
            "userJoinedRoom",
            {"user": identity, "roomId": self.general_room_id},
        )
        await self._announce_replaced(evicted)
        logger.info("User %s (%s) connected on %s", user.username, user.id, connection_id)
        return connection_id

    async def send_room_list(self, connection_id: str) -> None:
        session = self.registry.get(connection_id)
        if session is None:
            return
        try:
            async with store_session(self.session_factory) as db:
                rooms = await self.directory.room_list_for(db, session.user_id)
        except PersistenceError as exc:
            logger.error("Could not load the room list for %s: %s", connection_id, exc)
            return
        await self.connections.send(
            connection_id, "roomList", {"rooms": [room.dump() for room in rooms]}
        )

    async def disconnect(self, connection_id: str) -> None:
        self.connections.disconnect(connection_id)
        session = self.registry.get(connection_id)
        if session is None:
            logger.debug("Disconnect of unregistered connection %s", connection_id)
            return

        await self.connections.broadcast(
            "userDisconnected", {"userId": session.user_id, "username": session.username}
        )
        self.registry.remove(connection_id)
        # Only after removal, so the departing session does not count itself.
        if not self.registry.is_online(session.user_id):
            await self.connections.broadcast(
                "userStatusChanged",
                {"userId": session.user_id, "username": session.username, "isOnline": False},
            )

        await self._announce_left(session, session.joined_room_ids)
        logger.info("User %s (%s) disconnected from %s", session.username, session.user_id, connection_id)

    # ------------------------------------------------------------------
    # Room membership
    # ------------------------------------------------------------------

    @staticmethod
    def _left(session: Session, room_id: str) -> dict:
        return {"userId": session.user_id, "username": session.username, "roomId": room_id}

    async def _announce_left(self, session: Session, room_ids: Iterable[str]) -> None:
        for room_id in sorted(room_ids):
            await self.connections.broadcast_to_room(room_id, "userLeftRoom", self._left(session, room_id))
            try:
                await self.broadcast_room_users(room_id)
            except ChatError as exc:
                logger.error("Member list refresh for %s failed: %s", room_id, exc)

    async def _announce_replaced(self, evicted: List[Session]) -> None:
        """Announce departures from rooms no live session of the user still holds."""
        for stale in evicted:
            kept = set()
            for live in self.registry.sessions_for_user(stale.user_id):
                kept |= live.joined_room_ids
            await self._announce_left(stale, stale.joined_room_ids - kept)

    async def join(self, connection_id: str, room_id: str) -> None:
        session = self.registry.get(connection_id)
        if session is None:
            return
        authorize_member(session.user_id, room_id)

        async with store_session(self.session_factory) as db:
            await self.directory.resolve(db, room_id)

        self.connections.join_group(connection_id, room_id)
        self.registry.add_room(connection_id, room_id)
        await self.connections.broadcast_to_room(
            room_id, "userJoinedRoom", {"user": session.identity().dump(), "roomId": room_id}
        )

        async with store_session(self.session_factory) as db:
            await self.directory.add_member(db, session.user_id, room_id)
            messages = await self.relay.history(db, room_id)

        members = [member.dump() for member in await self.compute_live_members(room_id)]
        await self.connections.send(
            connection_id, "roomHistory", {"messages": messages, "users": members, "roomId": room_id}
        )
        await self.connections.broadcast_to_room(
            room_id, "roomUserList", {"users": members, "roomId": room_id}
        )
        logger.info("User %s joined %s", session.user_id, room_id)

    async def leave(self, connection_id: str, room_id: str) -> None:
        session = self.registry.get(connection_id)
        if session is None:
            return
        self.connections.leave_group(connection_id, room_id)
        self.registry.remove_room(connection_id, room_id)
        await self.connections.broadcast_to_room(room_id, "userLeftRoom", self._left(session, room_id))
        await self.broadcast_room_users(room_id)
        logger.info("User %s left %s", session.user_id, room_id)

    async def create_room(self, connection_id: str, room_id: str, room_name: str, is_private: bool) -> None:
        session = self.registry.get(connection_id)
        if session is None:
            return

        participants = parse_private_room_id(room_id)
        is_private = bool(is_private) or participants is not None
        name = (room_name or "").strip()
        if not name and not is_private:
            name = f"{session.username}'s room"

        try:
            authorize_member(session.user_id, room_id)
            async with store_session(self.session_factory) as db:
                others = [uid for uid in participants or () if uid != session.user_id]
                if others and len(await crud.get_users(db, others)) != len(others):
                    raise NotFoundError("The other participant does not exist")
                room = await self.directory.resolve(db, room_id, name=name, is_private=is_private)
                await self.directory.add_member(db, session.user_id, room_id)
                # The other participant becomes a persisted member right away
                # so the room shows up in their private list.
                for other_id in others:
                    await self.directory.add_member(db, other_id, room_id)
        except ChatError as exc:
            logger.warning("User %s could not create room %s: %s", session.user_id, room_id, exc)
            await self.connections.send(
                connection_id,
                "roomCreationError",
                {"roomId": room_id, "roomName": room_name, "message": exc.message},
            )
            return

        event = {
            "roomId": room.id,
            "roomName": room.name,
            "isPrivate": room.is_private,
            "createdBy": {"id": session.user_id, "username": session.username},
        }
        if room.is_private:
            audience = participants or (session.user_id,)
            await self.connections.send_many(
                self.registry.connections_for_users(audience), "roomCreated", event
            )
        else:
            await self.connections.broadcast("roomCreated", event)
        logger.info("User %s created room %s (private=%s)", session.user_id, room.id, room.is_private)

        await self.join(connection_id, room_id)

    async def typing(self, connection_id: str, room_id: str, is_typing: bool) -> None:
        session = self.registry.get(connection_id)
        if session is None:
            return
        await self.connections.broadcast_to_room(
            room_id,
            "typing",
            {
                "userId": session.user_id,
                "username": session.username,
                "isTyping": is_typing,
                "roomId": room_id,
                "user": session.identity().dump(),
            },
            exclude=connection_id,
        )

    # ------------------------------------------------------------------
    # Live member lists
    # ------------------------------------------------------------------

    async def compute_live_members(self, room_id: str) -> List[schemas.MemberView]:
        """Who belongs to *room_id* right now.

        Sessions in the room group, one entry per user and all online,
        followed for private rooms by any encoded participant who is not in
        the group, read from the store and online if connected anywhere.
        """
        seen = set()
        members = []
        for connection_id in self.connections.group_members(room_id):
            session = self.registry.get(connection_id)
            if session is None or session.user_id in seen:
                continue
            seen.add(session.user_id)
            members.append(schemas.MemberView(**session.identity().model_dump(), is_online=True))
        members.sort(key=lambda member: (member.username.lower(), member.id))

        missing = [uid for uid in private_participants(room_id) if uid not in seen]
        if missing:
            online = self.registry.online_user_ids()
            async with store_session(self.session_factory) as db:
                users = await crud.get_users(db, missing)
            for user in users:
                members.append(
                    schemas.MemberView(
                        id=user.id,
                        username=user.username,
                        color=user.color,
                        avatar=user.avatar or None,
                        is_online=user.id in online,
                    )
                )
        return members

    async def broadcast_room_users(self, room_id: str, extra_connections: Iterable[str] = ()) -> None:
        members = await self.compute_live_members(room_id)
        audience = self.connections.group_members(room_id) | set(extra_connections)
        await self.connections.send_many(
            sorted(audience),
            "roomUserList",
            {"users": [member.dump() for member in members], "roomId": room_id},
        )
