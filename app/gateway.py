import json
import logging
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError as PayloadError
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import schemas
from .database import AsyncSessionLocal
from .errors import AuthorizationError, ChatError, PersistenceError, ValidationError
from .presence import PresenceCoordinator
from .profiles import ProfileChangePropagator
from .registry import SessionRegistry
from .relay import MessageRelay
from .rooms import RoomDirectory
from .services import ConnectionManager
from .settings import settings

logger = logging.getLogger(__name__)

# Events whose payload problems are reported back to the sender
CLIENT_VISIBLE_VALIDATION = {"sendMessage"}

EVENT_ALIASES = {
    "join": "joinRoom",
    "leave": "leaveRoom",
    "send": "sendMessage",
}


def parse_payload(model, data) -> BaseModel:
    if not isinstance(data, dict):
        raise ValidationError(detail=f"expected an object, got {type(data).__name__}")
    try:
        return model.model_validate(data)
    except PayloadError as exc:
        raise ValidationError(detail=str(exc)) from exc


def normalize_frame(frame):
    """Return ``(event, data)`` for ``{"event", "data"}`` or ``{"type", ...}`` frames."""
    if not isinstance(frame, dict):
        raise ValidationError(detail=f"frame is not an object: {frame!r}")
    event = frame.get("event") or frame.get("type")
    if not isinstance(event, str):
        raise ValidationError(detail="frame has no event name")
    if "data" in frame:
        data = frame["data"]
    else:
        data = {k: v for k, v in frame.items() if k not in ("event", "type")}
    return EVENT_ALIASES.get(event, event), data


class ChatGateway:
    """Wires the chat core together and routes inbound WebSocket events."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.registry = SessionRegistry()
        self.connections = ConnectionManager()
        self.directory = RoomDirectory(settings.GENERAL_ROOM_ID)
        self.relay = MessageRelay(
            self.registry,
            self.connections,
            session_factory,
            history_limit=settings.HISTORY_LIMIT,
            max_length=settings.MAX_MESSAGE_LENGTH,
        )
        self.presence = PresenceCoordinator(
            self.registry,
            self.connections,
            self.directory,
            self.relay,
            session_factory,
            general_room_name=settings.GENERAL_ROOM_NAME,
        )
        self.profiles = ProfileChangePropagator(
            self.registry, self.connections, self.directory, self.presence, session_factory
        )
        self._handlers = {
            "joinRoom": self._on_join,
            "leaveRoom": self._on_leave,
            "sendMessage": self._on_send,
            "typing": self._on_typing,
            "createRoom": self._on_create_room,
        }

    async def serve(self, websocket: WebSocket, token: Optional[str]) -> None:
        connection_id = await self.presence.connect(websocket, token)
        if connection_id is None:
            return
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    frame = json.loads(text)
                except json.JSONDecodeError:
                    logger.warning("Dropping non-JSON frame from %s", connection_id)
                    continue
                await self.dispatch(connection_id, frame)
        except WebSocketDisconnect:
            pass
        except RuntimeError:
            # Closed server-side when a newer session replaced this one.
            if self.connections.is_connected(connection_id):
                raise
        finally:
            await self.presence.disconnect(connection_id)

    async def dispatch(self, connection_id: str, frame) -> None:
        try:
            event, data = normalize_frame(frame)
        except ValidationError as exc:
            logger.warning("Dropping malformed frame from %s: %s", connection_id, exc)
            return

        handler = self._handlers.get(event)
        if handler is None:
            logger.warning("Dropping unknown event %r from %s", event, connection_id)
            return

        try:
            await handler(connection_id, data)
        except ChatError as exc:
            logger.warning("%s from %s failed: %s", event, connection_id, exc)
            visible = isinstance(exc, (AuthorizationError, PersistenceError)) or (
                isinstance(exc, ValidationError) and event in CLIENT_VISIBLE_VALIDATION
            )
            if visible:
                await self.connections.send(connection_id, "error", {"message": exc.message})

    # --- Event handlers ---
    async def _on_join(self, connection_id: str, data) -> None:
        payload = parse_payload(schemas.RoomEvent, data)
        await self.presence.join(connection_id, payload.room_id)

    async def _on_leave(self, connection_id: str, data) -> None:
        payload = parse_payload(schemas.RoomEvent, data)
        await self.presence.leave(connection_id, payload.room_id)

    async def _on_send(self, connection_id: str, data) -> None:
        payload = parse_payload(schemas.SendMessageEvent, data)
        await self.relay.send(connection_id, payload.room_id, payload.content)

    async def _on_typing(self, connection_id: str, data) -> None:
        payload = parse_payload(schemas.TypingEvent, data)
        await self.presence.typing(connection_id, payload.room_id, payload.is_typing)

    async def _on_create_room(self, connection_id: str, data) -> None:
        try:
            payload = parse_payload(schemas.CreateRoomEvent, data)
        except ValidationError as exc:
            raw = data if isinstance(data, dict) else {}
            await self.connections.send(
                connection_id,
                "roomCreationError",
                {
                    "roomId": raw.get("roomId") or raw.get("room_id"),
                    "roomName": raw.get("roomName") or raw.get("room_name"),
                    "message": exc.message,
                },
            )
            raise
        await self.presence.create_room(
            connection_id, payload.room_id, payload.room_name, payload.is_private
        )


gateway = ChatGateway()
