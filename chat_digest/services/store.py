# chat_digest/services/store.py

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, delete, select

from chat_digest.core.errors import ChatNotFound, StoreUnavailable
from chat_digest.data_schemas import StoredMessageRow
from chat_digest.models import (
    Chat,
    Message,
    MessageType,
    Transcript,
    User,
    to_stored_time,
    utcnow,
)

logger = logging.getLogger(__name__)


def _delete_orphan_transcripts(session: Session) -> int:
    """Drop transcripts whose message is no longer stored"""
    message_exists = (
        select(Message.id)
        .where(
            Message.message_id == Transcript.message_id,
            Message.media_reference == Transcript.media_reference,
        )
        .exists()
    )
    return session.exec(delete(Transcript).where(~message_exists)).rowcount


class MessageStore:
    """Chats, users, messages and transcripts on top of a sqlmodel engine.

    Every call opens its own short session, so one store can be shared by
    concurrently firing chats. Lost connections surface as StoreUnavailable.
    """

    def __init__(
        self,
        engine: Engine,
        default_report_time: str = "21:00",
        default_timezone: str = "Europe/Berlin",
        default_target_mention: str = "@all",
    ):
        self.engine = engine
        self.default_report_time = default_report_time
        self.default_timezone = default_timezone
        self.default_target_mention = default_target_mention

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except OperationalError as e:
            logger.error(f"Message store unavailable: {e}")
            raise StoreUnavailable(str(e)) from e

    # Chats

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._session() as session:
            return session.exec(select(Chat).where(Chat.chat_id == chat_id)).first()

    def list_active_chats(self) -> List[Chat]:
        with self._session() as session:
            return list(session.exec(select(Chat).where(Chat.active == True)).all())  # noqa: E712

    def list_chats(self) -> List[Chat]:
        with self._session() as session:
            return list(session.exec(select(Chat).order_by(Chat.id)).all())

    def ensure_chat(self, chat_id: str, title: str, kind: str = "group") -> Chat:
        """Create a chat with the configured defaults on first activity.

        An existing chat only gets its title refreshed; report settings and
        the active flag are left alone.
        """
        with self._session() as session:
            chat = session.exec(select(Chat).where(Chat.chat_id == chat_id)).first()
            if chat is None:
                chat = Chat(
                    chat_id=chat_id,
                    title=title,
                    kind=kind,
                    report_time=self.default_report_time,
                    timezone=self.default_timezone,
                    target_mention=self.default_target_mention,
                    active=True,
                )
                logger.info(f"Registered new chat {chat_id} ({title})")
            elif chat.title == title and chat.kind == kind:
                return chat
            else:
                chat.title = title
                chat.kind = kind
                chat.updated_at = utcnow()
            session.add(chat)
            session.commit()
            return chat

    def upsert_chat(
        self,
        chat_id: str,
        title: str,
        kind: str = "group",
        report_time: Optional[str] = None,
        timezone: Optional[str] = None,
        target_mention: Optional[str] = None,
        active: bool = True,
    ) -> Chat:
        """Insert or overwrite a chat row; missing settings take the defaults."""
        with self._session() as session:
            chat = session.exec(select(Chat).where(Chat.chat_id == chat_id)).first()
            if chat is None:
                chat = Chat(chat_id=chat_id, title=title)
            chat.title = title
            chat.kind = kind
            chat.report_time = report_time or self.default_report_time
            chat.timezone = timezone or self.default_timezone
            chat.target_mention = target_mention or self.default_target_mention
            chat.active = active
            chat.updated_at = utcnow()
            session.add(chat)
            session.commit()
            return chat

    def update_chat_settings(
        self,
        chat_id: str,
        report_time: Optional[str] = None,
        timezone: Optional[str] = None,
        target_mention: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> Chat:
        """Apply a partial settings update; ``None`` leaves a field unchanged."""
        with self._session() as session:
            chat = session.exec(select(Chat).where(Chat.chat_id == chat_id)).first()
            if chat is None:
                raise ChatNotFound(chat_id)
            if report_time is not None:
                chat.report_time = report_time
            if timezone is not None:
                chat.timezone = timezone
            if target_mention is not None:
                chat.target_mention = target_mention
            if active is not None:
                chat.active = active
            chat.updated_at = utcnow()
            session.add(chat)
            session.commit()
            return chat

    def delete_chat_data(self, chat_id: str) -> None:
        """Explicit data wipe: the chat's messages and their transcripts, then the chat itself."""
        with self._session() as session:
            session.exec(delete(Message).where(Message.chat_id == chat_id))
            _delete_orphan_transcripts(session)
            session.exec(delete(Chat).where(Chat.chat_id == chat_id))
            session.commit()
        logger.info(f"Deleted all data for chat {chat_id}")

    # Users

    def get_user(self, user_id: str) -> Optional[User]:
        with self._session() as session:
            return session.exec(select(User).where(User.user_id == user_id)).first()

    def upsert_user(
        self,
        user_id: str,
        first_name: str,
        handle: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        """Create or refresh a user's names. The opt-out flag is never touched here."""
        with self._session() as session:
            user = session.exec(select(User).where(User.user_id == user_id)).first()
            if user is None:
                user = User(user_id=user_id, first_name=first_name)
            user.first_name = first_name
            user.handle = handle
            user.last_name = last_name
            user.updated_at = utcnow()
            session.add(user)
            session.commit()
            return user

    def set_user_opt_out(self, user_id: str, opted_out: bool) -> bool:
        """Set the opt-out flag. Returns False when the user is unknown."""
        with self._session() as session:
            user = session.exec(select(User).where(User.user_id == user_id)).first()
            if user is None:
                return False
            user.opted_out = opted_out
            user.updated_at = utcnow()
            session.add(user)
            session.commit()
        logger.info(f"User {user_id} opted {'out' if opted_out else 'in'}")
        return True

    # Messages

    def insert_message(
        self,
        chat_id: str,
        message_id: str,
        user_id: str,
        type: MessageType,
        content: Optional[str] = None,
        media_reference: Optional[str] = None,
        reply_to: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Optional[Message]:
        """Store a message once. A redelivered (chat_id, message_id) returns None."""
        with self._session() as session:
            existing = session.exec(
                select(Message).where(
                    Message.chat_id == chat_id, Message.message_id == message_id
                )
            ).first()
            if existing is not None:
                logger.debug(f"Message {chat_id}/{message_id} already stored")
                return None

            message = Message(
                chat_id=chat_id,
                message_id=message_id,
                user_id=user_id,
                type=MessageType(type),
                content=content,
                media_reference=media_reference,
                reply_to=reply_to,
                created_at=to_stored_time(created_at) if created_at else utcnow(),
            )
            session.add(message)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            return message

    def get_messages_in_range(
        self, chat_id: str, start: datetime, end: datetime
    ) -> List[StoredMessageRow]:
        """Messages with start <= created_at <= end, oldest first, joined with their author."""
        statement = (
            select(Message, User)
            .join(User, Message.user_id == User.user_id, isouter=True)
            .where(
                Message.chat_id == chat_id,
                Message.created_at >= to_stored_time(start),
                Message.created_at <= to_stored_time(end),
            )
            .order_by(Message.created_at, Message.id)
        )
        with self._session() as session:
            rows = session.exec(statement).all()

        return [
            StoredMessageRow(
                id=message.id,
                chat_id=message.chat_id,
                message_id=message.message_id,
                user_id=message.user_id,
                type=message.type,
                content=message.content,
                media_reference=message.media_reference,
                reply_to=message.reply_to,
                created_at=message.created_at,
                handle=user.handle if user else None,
                first_name=user.first_name if user else "",
                last_name=user.last_name if user else None,
                opted_out=user.opted_out if user else False,
            )
            for message, user in rows
        ]

    def cleanup_old_messages(self, days_to_keep: int = 30, now: Optional[datetime] = None) -> int:
        """Delete messages older than the retention window; returns the count removed."""
        cutoff = to_stored_time(now or utcnow()) - timedelta(days=days_to_keep)
        with self._session() as session:
            result = session.exec(delete(Message).where(Message.created_at < cutoff))
            removed = result.rowcount
            transcripts_removed = _delete_orphan_transcripts(session)
            session.commit()
        logger.info(
            f"Cleaned up {removed} messages and {transcripts_removed} transcripts "
            f"older than {cutoff.isoformat()}"
        )
        return removed

    # Transcripts

    def get_transcript(self, message_id: str, media_reference: str) -> Optional[Transcript]:
        with self._session() as session:
            return session.exec(
                select(Transcript).where(
                    Transcript.message_id == message_id,
                    Transcript.media_reference == media_reference,
                )
            ).first()

    def put_transcript(
        self,
        message_id: str,
        media_reference: str,
        text: str,
        language: Optional[str] = None,
        duration: Optional[float] = None,
    ) -> Transcript:
        """Write a transcript once. A second write returns the stored row unchanged."""
        existing = self.get_transcript(message_id, media_reference)
        if existing is not None:
            return existing

        with self._session() as session:
            transcript = Transcript(
                message_id=message_id,
                media_reference=media_reference,
                text=text,
                language=language,
                duration=duration,
            )
            session.add(transcript)
            try:
                session.commit()
            except IntegrityError:
                # Written concurrently by another flow; keep the first one
                session.rollback()
                return self.get_transcript(message_id, media_reference)
            return transcript
