# chat_digest/models.py

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Current time as an aware UTC datetime, the form timestamps are stored in"""
    return datetime.now(timezone.utc)


def to_stored_time(value: datetime) -> datetime:
    """Normalise any datetime to aware UTC. Naive input is assumed to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timestamp column that always hands back aware UTC datetimes.

    SQLite keeps no offset, so values are written there as naive UTC and
    get their zone back on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = to_stored_time(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return to_stored_time(value)


class MessageType(str, Enum):
    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"
    VOICE = "voice"
    AUDIO = "audio"
    VIDEO_NOTE = "video_note"
    STICKER = "sticker"
    DOCUMENT = "document"


# Message types that carry speech and get a transcript attached
AUDIO_TYPES = frozenset({MessageType.VOICE, MessageType.AUDIO, MessageType.VIDEO_NOTE})


class Chat(SQLModel, table=True):
    """A group chat with its daily report settings"""
    __tablename__ = "chats"
    __table_args__ = {'extend_existing': True}

    id: Optional[int] = Field(default=None, primary_key=True)
    chat_id: str = Field(unique=True, index=True)
    title: str
    kind: str = "group"  # group, supergroup, channel
    report_time: str = "21:00"
    timezone: str = "Europe/Berlin"
    target_mention: str = "@all"
    active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class User(SQLModel, table=True):
    """A message author"""
    __tablename__ = "users"
    __table_args__ = {'extend_existing': True}

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True)
    handle: Optional[str] = None  # without the leading @
    first_name: str
    last_name: Optional[str] = None
    opted_out: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Message(SQLModel, table=True):
    """One stored chat message. Rows are never updated after insert."""
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("chat_id", "message_id", name="uq_messages_chat_message"),
        Index("ix_messages_chat_created", "chat_id", "created_at"),
        {'extend_existing': True},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    chat_id: str = Field(foreign_key="chats.chat_id")
    message_id: str
    user_id: str = Field(foreign_key="users.user_id")
    type: MessageType
    content: Optional[str] = None  # text or caption
    media_reference: Optional[str] = None  # platform file id
    reply_to: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Transcript(SQLModel, table=True):
    """Speech-to-text result, written at most once per (message, media)"""
    __tablename__ = "transcripts"
    __table_args__ = (
        UniqueConstraint("message_id", "media_reference", name="uq_transcripts_message_media"),
        {'extend_existing': True},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: str = Field(index=True)
    media_reference: str
    text: str
    language: Optional[str] = None
    duration: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
