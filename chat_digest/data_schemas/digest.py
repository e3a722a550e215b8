# chat_digest/data_schemas/digest.py

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from chat_digest.models import MessageType

# Marker used when a voice/audio/video-note message has no transcript yet
TRANSCRIPT_UNAVAILABLE = "[unrecognized]"


class StoredMessageRow(BaseModel):
    """A message joined with its author, as returned by the store"""

    id: int  # store sequence, breaks timestamp ties
    chat_id: str
    message_id: str
    user_id: str
    type: MessageType
    content: Optional[str] = None
    media_reference: Optional[str] = None
    reply_to: Optional[str] = None
    created_at: datetime
    handle: Optional[str] = None
    first_name: str = ""
    last_name: Optional[str] = None
    opted_out: bool = False


class DigestAuthor(BaseModel):
    handle: Optional[str] = None
    first_name: str = ""
    last_name: Optional[str] = None

    @property
    def display(self) -> str:
        """@handle if present, first name otherwise"""
        if self.handle:
            return f"@{self.handle}"
        return self.first_name or "unknown"


class DigestMessage(BaseModel):
    """A message prepared for rendering into a digest"""

    id: str
    author: DigestAuthor
    type: MessageType
    content: Optional[str] = None
    transcript: Optional[str] = None
    transcript_available: bool = False
    timestamp: datetime  # UTC
    reply_to: Optional[str] = None


class AssembledDigest(BaseModel):
    """Ordered, opt-out filtered messages for one chat and date.

    ``total_count`` is the unfiltered count for chat statistics; use
    ``messages`` for content.
    """

    chat_id: str
    date: date
    messages: List[DigestMessage] = Field(default_factory=list)
    total_count: int = 0
    window_start: datetime
    window_end: datetime


class DigestContext(BaseModel):
    chat_title: str
    date_label: str
    total_messages: int
    target_mention: str
    timezone: str = "UTC"


class SummaryStats(BaseModel):
    total_messages: int
    average_per_day: int
    most_active_users: List[dict] = Field(default_factory=list)
    message_types: dict = Field(default_factory=dict)
