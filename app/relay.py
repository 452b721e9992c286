"""Message persistence, live fan-out and history replay."""
import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import crud, schemas
from .database import store_session
from .errors import ValidationError
from .registry import SessionRegistry
from .rooms import authorize_member
from .services import ConnectionManager

logger = logging.getLogger(__name__)

UNKNOWN_AUTHOR_NAME = "Unknown user"
UNKNOWN_AUTHOR_COLOR = "#808080"


class MessageRelay:
    def __init__(
        self,
        registry: SessionRegistry,
        connections: ConnectionManager,
        session_factory: async_sessionmaker,
        history_limit: int = 50,
        max_length: int = 500,
    ):
        self.registry = registry
        self.connections = connections
        self.session_factory = session_factory
        self.history_limit = history_limit
        self.max_length = max_length

    async def send(self, connection_id: str, room_id: str, content: str) -> Optional[dict]:
        """Persist a message and broadcast it to everyone in the room, sender included.

        The attached identity is the sender's live session state, not the
        stored user row.
        """
        session = self.registry.get(connection_id)
        if session is None:
            logger.debug("Ignoring message from unregistered connection %s", connection_id)
            return None

        content = (content or "").strip()
        if not content:
            raise ValidationError("Message cannot be empty")
        if len(content) > self.max_length:
            raise ValidationError(f"Message is longer than {self.max_length} characters")
        authorize_member(session.user_id, room_id)

        async with store_session(self.session_factory) as db:
            if await crud.get_room(db, room_id) is None:
                raise ValidationError("Unknown room", detail=f"no room {room_id!r}")
            message = await crud.create_message(db, content, room_id, session.user_id)

        payload = schemas.Message(
            id=message.id,
            content=message.content,
            room_id=message.room_id,
            user_id=message.user_id,
            created_at=message.created_at,
            user=session.identity(),
        ).dump()
        await self.connections.broadcast_to_room(room_id, "newMessage", payload)
        return payload

    async def history(self, db: AsyncSession, room_id: str, limit: Optional[int] = None) -> List[dict]:
        """Most recent messages, newest first, each with its author's current identity."""
        messages = await crud.get_messages_for_room(db, room_id, limit or self.history_limit)
        authors = {}
        result = []
        for message in messages:
            if message.user_id not in authors:
                authors[message.user_id] = await self._author_identity(db, message.user_id)
            result.append(
                schemas.Message(
                    id=message.id,
                    content=message.content,
                    room_id=message.room_id,
                    user_id=message.user_id,
                    created_at=message.created_at,
                    user=authors[message.user_id],
                ).dump()
            )
        return result

    async def _author_identity(self, db: AsyncSession, user_id: int) -> schemas.Identity:
        user = await crud.get_user(db, user_id)
        if user is None:
            logger.warning("Author %s of a stored message no longer exists", user_id)
            return schemas.Identity(id=user_id, username=UNKNOWN_AUTHOR_NAME, color=UNKNOWN_AUTHOR_COLOR)
        return schemas.Identity.model_validate(user)
