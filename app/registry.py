"""In-memory table of live, authenticated sessions."""
import logging
from typing import Dict, Iterator, List, Optional, Set

from . import schemas

logger = logging.getLogger(__name__)


class Session:
    """One authenticated connection and the rooms it currently sits in."""

    def __init__(self, connection_id: str, user_id: int, username: str, color: str,
                 avatar: Optional[str] = None):
        self.connection_id = connection_id
        self.user_id = user_id
        self.username = username
        self.color = color
        self.avatar = avatar
        self.joined_room_ids: Set[str] = set()

    def identity(self) -> schemas.Identity:
        return schemas.Identity(
            id=self.user_id, username=self.username, color=self.color, avatar=self.avatar
        )

    def __repr__(self):
        return f"<Session {self.connection_id} user={self.user_id} rooms={sorted(self.joined_room_ids)}>"


class SessionRegistry:
    """Maps connection id to :class:`Session`.

    Only the coordinator mutates the registry; everything else reads it
    through the query methods.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    # --- Mutation ---
    def register(self, connection_id: str, user, room_ids=()) -> Session:
        session = Session(connection_id, user.id, user.username, user.color, user.avatar or None)
        session.joined_room_ids.update(room_ids)
        self._sessions[connection_id] = session
        logger.info("Registered %r (%d live)", session, len(self._sessions))
        return session

    def remove(self, connection_id: str) -> Optional[Session]:
        session = self._sessions.pop(connection_id, None)
        if session:
            logger.info("Removed %r (%d live)", session, len(self._sessions))
        return session

    def add_room(self, connection_id: str, room_id: str) -> bool:
        session = self._sessions.get(connection_id)
        if session is None:
            return False
        session.joined_room_ids.add(room_id)
        return True

    def remove_room(self, connection_id: str, room_id: str) -> bool:
        session = self._sessions.get(connection_id)
        if session is None:
            return False
        session.joined_room_ids.discard(room_id)
        return True

    def update_identity(self, user_id: int, **fields) -> List[Session]:
        """Apply *fields* (``color``, ``avatar``) to every session of *user_id*."""
        sessions = self.sessions_for_user(user_id)
        for session in sessions:
            for key, value in fields.items():
                setattr(session, key, value)
        return sessions

    # --- Queries ---
    def get(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def sessions_for_user(self, user_id: int) -> List[Session]:
        return [s for s in self._sessions.values() if s.user_id == user_id]

    def other_connections_for_user(self, user_id: int, connection_id: str) -> List[str]:
        return [
            cid for cid, s in self._sessions.items()
            if s.user_id == user_id and cid != connection_id
        ]

    def connections_for_users(self, user_ids) -> List[str]:
        user_ids = set(user_ids)
        return [cid for cid, s in self._sessions.items() if s.user_id in user_ids]

    def is_online(self, user_id: int) -> bool:
        return any(s.user_id == user_id for s in self._sessions.values())

    def online_user_ids(self) -> Set[int]:
        return {s.user_id for s in self._sessions.values()}
