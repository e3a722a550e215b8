# chat_digest/services/text_backend.py

"""Turns an assembled day of messages into digest prose.

The gate holds one backend chosen at startup (``resolve_text_backend``):
the generative OpenAI backend when its probe succeeds, the deterministic
template otherwise. The choice is not re-probed per call; a primary that
fails later falls back to the template for that one digest.
"""

import asyncio
import logging
from datetime import timezone
from typing import List, Optional, Protocol
from zoneinfo import ZoneInfo

from langchain_core.output_parsers import StrOutputParser
from langchain_openai import ChatOpenAI
from openai import AsyncOpenAI, OpenAIError

from chat_digest.core.errors import GenerationUnavailable
from chat_digest.data_schemas import TRANSCRIPT_UNAVAILABLE, DigestContext, DigestMessage
from chat_digest.models import MessageType, to_stored_time
from chat_digest.services.prompts import (
    get_digest_prompt,
    render_empty_digest,
    render_fallback_digest,
)

logger = logging.getLogger(__name__)

MEDIA_TAGS = {
    MessageType.PHOTO: "[photo]",
    MessageType.VIDEO: "[video]",
    MessageType.DOCUMENT: "[document]",
}
SPEECH_TAGS = {
    MessageType.VOICE: "[voice]",
    MessageType.AUDIO: "[voice]",
    MessageType.VIDEO_NOTE: "[video note]",
}
STICKER_TAG = "[sticker]"
EMPTY_TEXT = "[empty message]"


def format_message_line(message: DigestMessage, tz=timezone.utc) -> str:
    """``[HH:MM] author: content`` with a type-specific content rendering"""
    local = to_stored_time(message.timestamp).astimezone(tz)

    if message.type in MEDIA_TAGS:
        content = f"{MEDIA_TAGS[message.type]} {message.content or ''}".rstrip()
    elif message.type in SPEECH_TAGS:
        spoken = message.transcript if message.transcript_available else TRANSCRIPT_UNAVAILABLE
        content = f"{SPEECH_TAGS[message.type]} {spoken}"
    elif message.type == MessageType.STICKER:
        content = STICKER_TAG
    else:
        content = message.content or EMPTY_TEXT

    return f"[{local:%H:%M}] {message.author.display}: {content}"


def format_message_lines(messages: List[DigestMessage], tz=timezone.utc) -> str:
    return "\n".join(format_message_line(message, tz) for message in messages)


def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (KeyError, ValueError):
        return timezone.utc


class DigestBackend(Protocol):
    name: str

    async def generate(self, messages: List[DigestMessage], context: DigestContext) -> str:
        ...

    async def is_available(self) -> bool:
        ...


class LangChainDigestBackend:
    """Generative digests through a LangChain chat model (OpenAI by default)"""

    name = "openai"

    def __init__(
        self,
        llm=None,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout: float = 60.0,
        language: str = "English",
        max_chars: int = 1200,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.language = language
        self.max_chars = max_chars
        self.llm = llm if llm is not None else ChatOpenAI(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            timeout=timeout,
            max_retries=1,
        )
        self.chain = get_digest_prompt() | self.llm | StrOutputParser()

    def build_inputs(self, messages: List[DigestMessage], context: DigestContext) -> dict:
        return {
            "language": self.language,
            "chat_title": context.chat_title,
            "date_label": context.date_label,
            "total_messages": context.total_messages,
            "messages": format_message_lines(messages, _zone(context.timezone)),
            "target_mention": context.target_mention,
            "max_chars": self.max_chars,
        }

    async def generate(self, messages: List[DigestMessage], context: DigestContext) -> str:
        logger.info(
            f"Generating digest for {context.chat_title} ({context.date_label}, {len(messages)} messages)"
        )
        try:
            summary = await asyncio.wait_for(
                self.chain.ainvoke(self.build_inputs(messages, context)), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise GenerationUnavailable(f"Generation timed out after {self.timeout}s") from e
        except Exception as e:
            # Quota, network and provider errors all mean "unavailable"
            raise GenerationUnavailable(str(e)) from e

        summary = (summary or "").strip()
        if not summary:
            raise GenerationUnavailable("Empty response from the generative backend")
        logger.info(f"Digest generated ({len(summary)} chars)")
        return summary

    async def is_available(self) -> bool:
        """Probe the OpenAI API once with a cheap model listing"""
        if not self.api_key:
            logger.warning("No OpenAI API key configured")
            return False
        client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        try:
            await client.models.list()
            return True
        except OpenAIError as e:
            logger.warning(f"OpenAI API not available: {e}")
            return False
        finally:
            await client.close()


class FallbackDigestBackend:
    """Deterministic template digest; needs nothing external"""

    name = "fallback"

    async def generate(self, messages: List[DigestMessage], context: DigestContext) -> str:
        text_count = sum(1 for m in messages if m.type == MessageType.TEXT)
        voice_count = sum(1 for m in messages if m.type in SPEECH_TAGS)
        media_count = len(messages) - text_count - voice_count
        return render_fallback_digest(
            target_mention=context.target_mention,
            chat_title=context.chat_title,
            date_label=context.date_label,
            total_messages=context.total_messages,
            text_count=text_count,
            voice_count=voice_count,
            media_count=media_count,
        )

    async def is_available(self) -> bool:
        return True


class TextBackendGate:
    """Renders digests with the backend chosen at startup"""

    def __init__(self, backend: DigestBackend, fallback: Optional[FallbackDigestBackend] = None):
        self.fallback = fallback or FallbackDigestBackend()
        self.backend = backend

    @property
    def uses_fallback(self) -> bool:
        return self.backend is self.fallback

    async def render(
        self,
        messages: List[DigestMessage],
        context: DigestContext,
        fallback_on_error: bool = True,
    ) -> str:
        """Digest prose for ``messages``.

        An empty day always gets the empty-state text without calling any
        backend. With ``fallback_on_error=False`` a failing primary raises
        GenerationUnavailable instead of degrading to the template.
        """
        if not messages:
            return render_empty_digest(context.target_mention)

        if self.uses_fallback:
            return await self.fallback.generate(messages, context)

        try:
            return await self.backend.generate(messages, context)
        except GenerationUnavailable as e:
            if not fallback_on_error:
                raise
            logger.warning(f"{self.backend.name} backend failed, using fallback digest: {e}")
            return await self.fallback.generate(messages, context)


async def resolve_text_backend(
    primary: Optional[DigestBackend], fallback: Optional[FallbackDigestBackend] = None
) -> TextBackendGate:
    """Probe ``primary`` once and return a gate bound to the winner"""
    fallback = fallback or FallbackDigestBackend()
    if primary is not None and await primary.is_available():
        logger.info(f"Using {primary.name} digest backend")
        return TextBackendGate(primary, fallback)

    logger.warning("Using fallback digest backend - generative backend not available")
    return TextBackendGate(fallback, fallback)
