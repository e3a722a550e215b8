from .digest import (
    TRANSCRIPT_UNAVAILABLE,
    AssembledDigest,
    DigestAuthor,
    DigestContext,
    DigestMessage,
    StoredMessageRow,
    SummaryStats,
)
from chat_digest.models import Chat, Message, MessageType, Transcript, User

__all__ = [
    "TRANSCRIPT_UNAVAILABLE",
    "AssembledDigest",
    "DigestAuthor",
    "DigestContext",
    "DigestMessage",
    "StoredMessageRow",
    "SummaryStats",
    "Chat",
    "Message",
    "MessageType",
    "Transcript",
    "User",
]
