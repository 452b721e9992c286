import logging
import uuid
from fastapi import WebSocket, WebSocketDisconnect
from typing import Dict, Iterable, Optional, Set

logger = logging.getLogger(__name__)

class ConnectionManager:
    """Live WebSocket connections and the room groups they are subscribed to.

    Connections are addressed by an opaque connection id so the rest of the
    core never holds a socket directly.
    """

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.room_groups: Dict[str, Set[str]] = {}

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self.active_connections[connection_id] = websocket
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        self.active_connections.pop(connection_id, None)
        for room_id in list(self.room_groups):
            self.leave_group(connection_id, room_id)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self.active_connections

    async def close(self, connection_id: str, code: int, reason: str = "") -> None:
        websocket = self.active_connections.get(connection_id)
        self.disconnect(connection_id)
        if websocket is None:
            return
        try:
            await websocket.close(code=code, reason=reason)
        except RuntimeError as exc:
            # Already closed by the peer
            logger.debug("Close on %s ignored: %s", connection_id, exc)

    # --- Room groups ---
    def join_group(self, connection_id: str, room_id: str) -> None:
        if connection_id not in self.active_connections:
            return
        self.room_groups.setdefault(room_id, set()).add(connection_id)

    def leave_group(self, connection_id: str, room_id: str) -> None:
        if room_id in self.room_groups:
            self.room_groups[room_id].discard(connection_id)
            if not self.room_groups[room_id]:
                del self.room_groups[room_id]

    def group_members(self, room_id: str) -> Set[str]:
        return set(self.room_groups.get(room_id, ()))

    def group_ids(self) -> Set[str]:
        return set(self.room_groups)

    # --- Delivery ---
    async def send(self, connection_id: str, event: str, data: dict) -> None:
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return
        try:
            await websocket.send_json({"event": event, "data": data})
        except (RuntimeError, WebSocketDisconnect) as exc:
            # A closed peer must not stop the fan-out to everyone else;
            # its own receive loop reports the disconnect.
            logger.warning("Dropping %s for connection %s: %s", event, connection_id, exc)

    async def send_many(self, connection_ids: Iterable[str], event: str, data: dict) -> None:
        for connection_id in list(connection_ids):
            await self.send(connection_id, event, data)

    async def broadcast(self, event: str, data: dict, exclude: Optional[str] = None) -> None:
        await self.send_many(
            (cid for cid in list(self.active_connections) if cid != exclude), event, data
        )

    async def broadcast_to_room(
        self, room_id: str, event: str, data: dict, exclude: Optional[str] = None
    ) -> None:
        await self.send_many(
            (cid for cid in self.group_members(room_id) if cid != exclude), event, data
        )
