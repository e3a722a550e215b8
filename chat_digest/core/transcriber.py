# chat_digest/core/transcriber.py

import logging
import os
from dataclasses import dataclass
from typing import Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

# Telegram voice notes are Ogg/Opus files named .oga
_EXTENSION_ALIASES = {".oga": ".ogg", ".opus": ".ogg"}


@dataclass(frozen=True)
class TranscriptResult:
    text: str
    language: Optional[str] = None
    duration: Optional[float] = None


class WhisperTranscriber:
    """Speech-to-text over the OpenAI audio transcription endpoint"""

    def __init__(
        self,
        api_key: str,
        model: str = "whisper-1",
        language: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.language = language
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=1)

    @staticmethod
    def upload_name(filename: str) -> str:
        """Filename with an extension the endpoint accepts"""
        stem, ext = os.path.splitext(filename or "audio.ogg")
        ext = _EXTENSION_ALIASES.get(ext.lower(), ext.lower() or ".ogg")
        return f"{stem or 'audio'}{ext}"

    async def transcribe(self, content: bytes, filename: str) -> Optional[TranscriptResult]:
        kwargs = {
            "model": self.model,
            "file": (self.upload_name(filename), content),
            "response_format": "verbose_json",
        }
        if self.language:
            kwargs["language"] = self.language

        response = await self.client.audio.transcriptions.create(**kwargs)
        text = (getattr(response, "text", "") or "").strip()
        if not text:
            logger.info(f"Empty transcription for {filename}")
            return None
        return TranscriptResult(
            text=text,
            language=getattr(response, "language", None) or self.language,
            duration=getattr(response, "duration", None),
        )
