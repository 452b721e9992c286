import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="chat-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["SESSION_SECRET_KEY"] = "test-secret"

import pytest
from fastapi import WebSocketDisconnect

from app import crud
from app.database import AsyncSessionLocal, engine
from app.gateway import ChatGateway
from app.models import Base
from app.security import create_access_token


class FakeWebSocket:
    """Records every frame the server sends; replays scripted inbound frames."""

    def __init__(self, incoming=()):
        self.incoming = list(incoming)
        self.sent = []
        self.accepted = False
        self.closed = False
        self.close_code = None
        self.headers = {}

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.closed:
            raise RuntimeError("Cannot send once a close message has been sent")
        self.sent.append(data)

    async def receive_text(self):
        if self.closed:
            raise RuntimeError('WebSocket is not connected. Need to call "accept" first.')
        if not self.incoming:
            raise WebSocketDisconnect(code=1000)
        return self.incoming.pop(0)

    async def close(self, code=1000, reason=None):
        self.closed = True
        self.close_code = code

    def names(self):
        return [frame["event"] for frame in self.sent]

    def events(self, name):
        return [frame["data"] for frame in self.sent if frame["event"] == name]

    def clear(self):
        self.sent.clear()


@pytest.fixture
async def tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
async def db(tables):
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def gateway(tables):
    return ChatGateway(AsyncSessionLocal)


@pytest.fixture
def make_user(db):
    async def _make_user(username, color="#112233", avatar=None):
        user = await crud.create_user(
            db,
            username=username,
            email=f"{username}@example.com",
            password_hash="not-a-real-hash",
            color=color,
        )
        if avatar:
            user = await crud.update_user(db, user.id, avatar=avatar)
        return user
    return _make_user


@pytest.fixture
def connect(gateway):
    async def _connect(user):
        ws = FakeWebSocket()
        connection_id = await gateway.presence.connect(ws, create_access_token(user.id))
        return connection_id, ws
    return _connect
