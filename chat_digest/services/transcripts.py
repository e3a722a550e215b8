# chat_digest/services/transcripts.py

import asyncio
import logging
from typing import Optional

from chat_digest.core.telegram_client import TelegramClient
from chat_digest.core.transcriber import WhisperTranscriber
from chat_digest.services.store import MessageStore

logger = logging.getLogger(__name__)


class TranscriptResolver:
    """Cached-or-fresh transcripts for voice, audio and video-note messages.

    A stored transcript always wins over recomputation. Without a
    transcriber (or a media client) the resolver only serves cached rows.
    """

    def __init__(
        self,
        store: MessageStore,
        media_client: Optional[TelegramClient] = None,
        transcriber: Optional[WhisperTranscriber] = None,
        max_bytes: int = 20 * 1024 * 1024,
    ):
        self.store = store
        self.media_client = media_client
        self.transcriber = transcriber
        self.max_bytes = max_bytes
        # One in-flight transcription per (message, media) pair
        self._pending = {}

    async def lookup(self, message_id: str, media_reference: str) -> Optional[str]:
        """Stored transcript text, without producing a new one"""
        transcript = await asyncio.to_thread(
            self.store.get_transcript, message_id, media_reference
        )
        return transcript.text if transcript else None

    async def resolve(
        self, message_id: str, media_reference: str, duration: Optional[float] = None
    ) -> Optional[str]:
        """Stored transcript, or a fresh one that is then stored.

        Returns None if the media is oversized, cannot be fetched or
        transcribed, or no transcriber is configured.
        """
        cached = await self.lookup(message_id, media_reference)
        if cached is not None:
            logger.info(f"Transcript already exists for message {message_id}")
            return cached
        if self.transcriber is None or self.media_client is None:
            return None

        key = (message_id, media_reference)
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._transcribe(message_id, media_reference, duration))
            self._pending[key] = task
            task.add_done_callback(lambda _: self._pending.pop(key, None))
        return await asyncio.shield(task)

    async def _transcribe(
        self, message_id: str, media_reference: str, duration: Optional[float]
    ) -> Optional[str]:
        try:
            downloaded = await self.media_client.download_file(
                media_reference, max_bytes=self.max_bytes
            )
            if downloaded is None:
                return None
            content, filename = downloaded

            result = await self.transcriber.transcribe(content, filename)
            if result is None:
                return None

            stored = await asyncio.to_thread(
                self.store.put_transcript,
                message_id,
                media_reference,
                result.text,
                result.language,
                result.duration if result.duration is not None else duration,
            )
            logger.info(f"Transcript saved for message {message_id} ({len(stored.text)} chars)")
            return stored.text
        except Exception as e:
            logger.error(f"Failed to transcribe message {message_id}: {e}")
            return None
