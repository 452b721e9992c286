from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy.future import select
from . import models
from typing import Iterable, List, Optional, Tuple

# --- User CRUD ---
async def get_user(db: AsyncSession, user_id: int) -> Optional[models.User]:
    result = await db.execute(select(models.User).filter(models.User.id == user_id))
    return result.scalars().first()

async def get_users(db: AsyncSession, user_ids: Iterable[int]) -> List[models.User]:
    result = await db.execute(
        select(models.User).filter(models.User.id.in_(list(user_ids))).order_by(models.User.id)
    )
    return result.scalars().all()

async def get_user_by_username(db: AsyncSession, username: str) -> Optional[models.User]:
    result = await db.execute(select(models.User).filter(models.User.username == username))
    return result.scalars().first()

async def get_user_by_email(db: AsyncSession, email: str) -> Optional[models.User]:
    result = await db.execute(select(models.User).filter(models.User.email == email))
    return result.scalars().first()

async def create_user(
    db: AsyncSession, username: str, email: str, password_hash: str, color: str
) -> models.User:
    db_user = models.User(username=username, email=email, password_hash=password_hash, color=color)
    db.add(db_user)
    await db.commit()
    await db.refresh(db_user)
    return db_user

async def update_user(db: AsyncSession, user_id: int, **fields) -> Optional[models.User]:
    db_user = await get_user(db, user_id)
    if db_user:
        for key, value in fields.items():
            setattr(db_user, key, value)
        await db.commit()
        await db.refresh(db_user)
    return db_user

# --- Room CRUD ---
async def get_room(db: AsyncSession, room_id: str) -> Optional[models.Room]:
    result = await db.execute(select(models.Room).filter(models.Room.id == room_id))
    return result.scalars().first()

async def create_room(db: AsyncSession, room_id: str, name: str, is_private: bool) -> models.Room:
    db_room = models.Room(id=room_id, name=name, is_private=is_private)
    db.add(db_room)
    try:
        await db.commit()
    except IntegrityError:
        # Another handler created the same id between our lookup and insert.
        await db.rollback()
        existing = await get_room(db, room_id)
        if existing is None:
            raise
        return existing
    await db.refresh(db_room)
    return db_room

async def update_room(db: AsyncSession, room_id: str, **fields) -> Optional[models.Room]:
    db_room = await get_room(db, room_id)
    if db_room:
        for key, value in fields.items():
            setattr(db_room, key, value)
        await db.commit()
        await db.refresh(db_room)
    return db_room

async def get_rooms(db: AsyncSession, is_private: Optional[bool] = None) -> List[models.Room]:
    query = select(models.Room).order_by(models.Room.name)
    if is_private is not None:
        query = query.filter(models.Room.is_private == is_private)
    result = await db.execute(query)
    return result.scalars().all()

async def get_user_rooms(
    db: AsyncSession, user_id: int, is_private: Optional[bool] = None
) -> List[models.Room]:
    query = (
        select(models.Room)
        .join(models.RoomMember)
        .filter(models.RoomMember.user_id == user_id)
        .order_by(models.Room.name)
    )
    if is_private is not None:
        query = query.filter(models.Room.is_private == is_private)
    result = await db.execute(query)
    return result.scalars().all()

# --- Membership CRUD ---
async def get_room_member(db: AsyncSession, room_id: str, user_id: int) -> Optional[models.RoomMember]:
    result = await db.execute(
        select(models.RoomMember).filter_by(room_id=room_id, user_id=user_id)
    )
    return result.scalars().first()

async def upsert_membership(db: AsyncSession, user_id: int, room_id: str) -> Tuple[models.RoomMember, bool]:
    """Return the (user, room) membership row and whether it was just created."""
    existing = await get_room_member(db, room_id, user_id)
    if existing:
        return existing, False

    db_membership = models.RoomMember(room_id=room_id, user_id=user_id)
    db.add(db_membership)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race against a concurrent join for the same pair.
        await db.rollback()
        existing = await get_room_member(db, room_id, user_id)
        if existing is None:
            raise
        return existing, False
    await db.refresh(db_membership)
    return db_membership, True

# --- Message CRUD ---
async def create_message(db: AsyncSession, content: str, room_id: str, user_id: int) -> models.Message:
    db_message = models.Message(content=content, room_id=room_id, user_id=user_id)
    db.add(db_message)
    await db.commit()
    await db.refresh(db_message)
    return db_message

async def get_messages_for_room(db: AsyncSession, room_id: str, limit: int = 50) -> List[models.Message]:
    query = (
        select(models.Message)
        .filter(models.Message.room_id == room_id)
        .order_by(models.Message.created_at.desc(), models.Message.id.desc())
        .limit(limit)
    )
    result = await db.execute(query)
    return result.scalars().all()
