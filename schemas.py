import re
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator
from pydantic.alias_generators import to_camel

EMAIL_REGEX = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
USERNAME_MAX_LENGTH = 16
PASSWORD_MIN_LENGTH = 6
CONTENT_MAX_LENGTH = 1000


def format_timestamp(value: datetime) -> str:
    """RFC 3339 in UTC with microseconds, e.g. ``2026-01-15T10:00:00.123456Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def validate_username(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Username is required")
    if len(value) > USERNAME_MAX_LENGTH:
        raise ValueError(f"Username must be at most {USERNAME_MAX_LENGTH} characters")
    return value


def validate_email(value: str) -> str:
    value = value.strip()
    if not EMAIL_REGEX.match(value):
        raise ValueError("Email format is invalid")
    return value


def validate_password(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    has_upper = any(c.isascii() and c.isupper() for c in value)
    has_lower = any(c.isascii() and c.islower() for c in value)
    has_digit = any(c.isascii() and c.isdigit() for c in value)
    if not (has_upper and has_lower and has_digit):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, and one digit"
        )
    return value


def validate_content(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Message content cannot be empty")
    if len(value) > CONTENT_MAX_LENGTH:
        raise ValueError(f"Message content is too long (max {CONTENT_MAX_LENGTH} characters)")
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StatusResponse(CamelModel):
    ok: bool = True
    message: str


# Auth

class RegisterRequest(CamelModel):
    username: str
    email: str
    password: str
    bio: Optional[str] = None

    @field_validator("username")
    @classmethod
    def username_valid(cls, v):
        return validate_username(v)

    @field_validator("email")
    @classmethod
    def email_valid(cls, v):
        return validate_email(v)

    @field_validator("password")
    @classmethod
    def password_valid(cls, v):
        return validate_password(v)


class LoginRequest(CamelModel):
    person: str
    password: str
    is_email: bool = False

    @field_validator("person")
    @classmethod
    def person_required(cls, v):
        if not v.strip():
            raise ValueError("Username or email is required")
        return v.strip()

    @field_validator("password")
    @classmethod
    def password_required(cls, v):
        if not v:
            raise ValueError("Password is required")
        return v


class AuthResponse(StatusResponse):
    id: Optional[int] = None


# Users

class UserResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    username: str
    email: str
    bio: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_serializer("created_at", "updated_at")
    def serialize_timestamp(self, value: datetime) -> str:
        return format_timestamp(value)


class ProfileUpdateRequest(CamelModel):
    username: Optional[str] = None
    email: Optional[str] = None
    bio: Optional[str] = None
    password: str

    @field_validator("username")
    @classmethod
    def username_valid(cls, v):
        return None if v is None else validate_username(v)

    @field_validator("email")
    @classmethod
    def email_valid(cls, v):
        return None if v is None else validate_email(v)


class ProfileUpdateResponse(StatusResponse):
    updated_fields: List[str]


class PasswordUpdateRequest(CamelModel):
    old_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def new_password_valid(cls, v):
        return validate_password(v)


# Pairing codes and conversations

class CodeRequest(CamelModel):
    code: int


class CodeResponse(StatusResponse):
    code: int


class CodeListResponse(StatusResponse):
    codes: List[int]


class ConversationCreatedResponse(StatusResponse):
    conversation_id: UUID


class ConversationItem(CamelModel):
    id: UUID
    peer_id: int
    peer_username: str
    created_at: datetime

    @field_serializer("created_at")
    def serialize_timestamp(self, value: datetime) -> str:
        return format_timestamp(value)


class ConversationListResponse(StatusResponse):
    conversations: List[ConversationItem]


# Messages

class ChatItem(CamelModel):
    id: UUID
    content: str
    user_sent_id: int
    user_sent: str
    sent_at: datetime
    edited_at: Optional[datetime] = None

    @field_serializer("sent_at", "edited_at")
    def serialize_timestamp(self, value: Optional[datetime]) -> Optional[str]:
        return None if value is None else format_timestamp(value)


class MessagePageResponse(StatusResponse):
    chats: List[ChatItem]
    next_cursor: Optional[str] = None
    has_more: bool


class MessageUpdateRequest(CamelModel):
    conversation_id: UUID
    message_id: UUID
    content: str

    @field_validator("content")
    @classmethod
    def content_valid(cls, v):
        return validate_content(v)


class MessageUpdateResponse(StatusResponse):
    edited_at: str


class MessageDeleteRequest(CamelModel):
    conversation_id: UUID
    message_id: UUID
