from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional
import datetime

class CamelModel(BaseModel):
    model_config = ConfigDict(
        from_attributes=True, populate_by_name=True, alias_generator=to_camel
    )

    def dump(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

# Identity Schemas
class Identity(CamelModel):
    id: int
    username: str
    color: str
    avatar: Optional[str] = None

class MemberView(Identity):
    is_online: bool

class User(Identity):
    email: str

class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=50)
    email: str = Field(min_length=3)
    password: str = Field(min_length=6)

class LoginRequest(BaseModel):
    email: str
    password: str

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: User

class ColorUpdate(BaseModel):
    color: str = Field(pattern=r"^#([0-9A-Fa-f]{3}){1,2}$")

class AvatarUpdate(BaseModel):
    avatar: str = Field(min_length=1)

# Room Schemas
class Room(CamelModel):
    id: str
    name: str
    is_private: bool = False

# Message Schemas
class Message(CamelModel):
    id: int
    content: str
    room_id: str
    user_id: int
    created_at: datetime.datetime
    user: Identity

# Inbound WebSocket events. Each accepts the legacy field names clients
# still send and normalizes them to one canonical shape.
class RoomEvent(BaseModel):
    room_id: str = Field(validation_alias=AliasChoices("roomId", "room_id", "room"))

    @field_validator("room_id")
    @classmethod
    def room_id_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("room id must not be blank")
        return value

class SendMessageEvent(RoomEvent):
    content: str = Field(validation_alias=AliasChoices("content", "message", "text"))

class TypingEvent(RoomEvent):
    is_typing: bool = Field(default=False, validation_alias=AliasChoices("isTyping", "is_typing", "typing"))

class CreateRoomEvent(RoomEvent):
    room_name: str = Field(default="", validation_alias=AliasChoices("roomName", "room_name", "name"))
    is_private: bool = Field(default=False, validation_alias=AliasChoices("isPrivate", "is_private", "private"))

    @field_validator("room_name", mode="before")
    @classmethod
    def none_name_is_empty(cls, value):
        return "" if value is None else value

