from fastapi import APIRouter, Depends, HTTPException, Query, status, WebSocket
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from . import crud, schemas, models, security
from .deps import get_db, get_current_user, bearer_from_header
from .errors import AuthorizationError, ValidationError
from .gateway import gateway
from .rooms import authorize_member

router = APIRouter()

# --- Auth ---
@router.post("/auth/register", response_model=schemas.User, status_code=status.HTTP_201_CREATED)
async def register(user_in: schemas.UserCreate, db: AsyncSession = Depends(get_db)):
    if await crud.get_user_by_username(db, user_in.username):
        raise HTTPException(status_code=409, detail="Username already taken")
    if await crud.get_user_by_email(db, user_in.email):
        raise HTTPException(status_code=409, detail="Email already registered")
    return await crud.create_user(
        db,
        username=user_in.username,
        email=user_in.email,
        password_hash=security.hash_password(user_in.password),
        color=security.random_color(),
    )

@router.post("/auth/login", response_model=schemas.Token)
async def login(credentials: schemas.LoginRequest, db: AsyncSession = Depends(get_db)):
    user = await crud.get_user_by_email(db, credentials.email)
    if not user or not security.verify_password(credentials.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return schemas.Token(
        access_token=security.create_access_token(user.id),
        user=schemas.User.model_validate(user),
    )

@router.get("/session/me", response_model=schemas.User)
async def read_users_me(current_user: models.User = Depends(get_current_user)):
    return current_user

# --- Rooms ---
@router.get("/rooms", response_model=List[schemas.Room])
async def list_rooms(
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await gateway.directory.room_list_for(db, current_user.id)

@router.get("/rooms/{room_id}/messages")
async def get_room_messages(
    room_id: str,
    limit: int = Query(50, ge=1, le=200),
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        authorize_member(current_user.id, room_id)
    except AuthorizationError as exc:
        raise HTTPException(status_code=403, detail=exc.message)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    if not await crud.get_room(db, room_id):
        raise HTTPException(status_code=404, detail="Room not found")
    return await gateway.relay.history(db, room_id, limit)

# --- Profile ---
def _ensure_self(user_id: int, current_user: models.User) -> None:
    if user_id != current_user.id:
        raise HTTPException(status_code=403, detail="You can only change your own profile")

@router.put("/users/{user_id}/color", response_model=schemas.User)
async def update_color(
    user_id: int,
    update: schemas.ColorUpdate,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    _ensure_self(user_id, current_user)
    user = await crud.update_user(db, user_id, color=update.color)
    await gateway.profiles.color_changed(user.id, user.username, user.color)
    return user

@router.put("/users/{user_id}/avatar", response_model=schemas.User)
async def update_avatar(
    user_id: int,
    update: schemas.AvatarUpdate,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    _ensure_self(user_id, current_user)
    user = await crud.update_user(db, user_id, avatar=update.avatar)
    await gateway.profiles.avatar_changed(user.id, user.username, user.avatar)
    return user

# --- Realtime ---
@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    credential = token or bearer_from_header(websocket.headers.get("authorization"))
    await gateway.serve(websocket, credential)
