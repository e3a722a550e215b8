# chat_digest/services/digest_generator.py

import asyncio
import logging
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import List, Optional, Tuple

from chat_digest.data_schemas import (
    AssembledDigest,
    DigestAuthor,
    DigestMessage,
    StoredMessageRow,
    SummaryStats,
)
from chat_digest.models import AUDIO_TYPES, to_stored_time
from chat_digest.services.store import MessageStore
from chat_digest.services.transcripts import TranscriptResolver

logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59, 59, 999000)


def day_window(target: date, tz: tzinfo = timezone.utc) -> Tuple[datetime, datetime]:
    """First and last millisecond of ``target`` in ``tz``, in stored (UTC) time.

    Both ends are inclusive.
    """
    start = datetime.combine(target, time.min, tzinfo=tz)
    end = datetime.combine(target, END_OF_DAY, tzinfo=tz)
    return to_stored_time(start), to_stored_time(end)


def _chronological(rows: List[StoredMessageRow]) -> List[StoredMessageRow]:
    # Store sequence breaks timestamp ties, so equal timestamps keep insertion order
    return sorted(rows, key=lambda row: (row.created_at, row.id))


class DigestGenerator:
    """Builds the ordered, opt-out filtered message set for one chat and date"""

    def __init__(self, store: MessageStore, transcripts: TranscriptResolver):
        self.store = store
        self.transcripts = transcripts

    async def _rows_for_date(
        self, chat_id: str, target: date, tz: tzinfo
    ) -> Tuple[List[StoredMessageRow], datetime, datetime]:
        start, end = day_window(target, tz)
        rows = await asyncio.to_thread(self.store.get_messages_in_range, chat_id, start, end)
        return _chronological(rows), start, end

    async def assemble(
        self, chat_id: str, target: date, tz: tzinfo = timezone.utc
    ) -> AssembledDigest:
        """Messages of ``target`` (a calendar day in ``tz``) ready for rendering.

        Authors who are opted out *now* are dropped, including messages they
        sent before opting out. ``total_count`` still counts them.
        """
        rows, start, end = await self._rows_for_date(chat_id, target, tz)

        messages: List[DigestMessage] = []
        for row in rows:
            if row.opted_out:
                continue

            transcript = None
            if row.type in AUDIO_TYPES and row.media_reference:
                transcript = await self.transcripts.lookup(row.message_id, row.media_reference)

            messages.append(
                DigestMessage(
                    id=row.message_id,
                    author=DigestAuthor(
                        handle=row.handle,
                        first_name=row.first_name,
                        last_name=row.last_name,
                    ),
                    type=row.type,
                    content=row.content,
                    transcript=transcript,
                    transcript_available=transcript is not None,
                    timestamp=row.created_at,
                    reply_to=row.reply_to,
                )
            )

        logger.debug(
            f"Assembled {len(messages)}/{len(rows)} messages for chat {chat_id} on {target.isoformat()}"
        )
        return AssembledDigest(
            chat_id=chat_id,
            date=target,
            messages=messages,
            total_count=len(rows),
            window_start=start,
            window_end=end,
        )

    async def has_content(self, chat_id: str, target: date, tz: tzinfo = timezone.utc) -> bool:
        """Whether ``assemble`` would return at least one message"""
        rows, _, _ = await self._rows_for_date(chat_id, target, tz)
        return any(not row.opted_out for row in rows)

    async def summary_stats(
        self, chat_id: str, days: int = 7, now: Optional[datetime] = None
    ) -> SummaryStats:
        """Activity over the last ``days`` days.

        The total covers everyone; the per-author and per-type breakdowns
        leave out opted-out authors.
        """
        end = now or datetime.now(timezone.utc)
        start = end - timedelta(days=days)
        rows = await asyncio.to_thread(self.store.get_messages_in_range, chat_id, start, end)

        authors = Counter()
        types = Counter()
        for row in rows:
            if row.opted_out:
                continue
            name = f"@{row.handle}" if row.handle else row.first_name
            authors[name] += 1
            types[row.type.value] += 1

        return SummaryStats(
            total_messages=len(rows),
            average_per_day=round(len(rows) / days) if days else len(rows),
            most_active_users=[
                {"username": name, "message_count": count}
                for name, count in authors.most_common(5)
            ],
            message_types=dict(types),
        )
