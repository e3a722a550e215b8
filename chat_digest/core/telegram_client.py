# chat_digest/core/telegram_client.py

import logging
import os
from typing import Any, Dict, Optional, Tuple

import httpx

from chat_digest.core.errors import DeliveryFailed

logger = logging.getLogger(__name__)

# Telegram rejects longer messages
MAX_MESSAGE_LENGTH = 4096


class TelegramClient:
    """Client for the Telegram Bot API: sending messages and fetching files"""

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
    ):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.base_url = f"{self.api_url}/bot{token}"
        self.file_url = f"{self.api_url}/file/bot{token}"
        self.timeout = timeout

    @staticmethod
    def process_text_for_telegram(text: str) -> str:
        """Trim text to what a single Telegram message can carry"""
        text = text.strip()
        if len(text) <= MAX_MESSAGE_LENGTH:
            return text
        return text[: MAX_MESSAGE_LENGTH - 1].rstrip() + "…"

    def _prepare_message_payload(
        self, chat_id: str, text: str, parse_mode: Optional[str]
    ) -> Dict[str, Any]:
        payload = {
            "chat_id": chat_id,
            "text": self.process_text_for_telegram(text),
            "disable_web_page_preview": True,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return payload

    @staticmethod
    def _unwrap(response: httpx.Response, action: str) -> Any:
        """Return the ``result`` of a Bot API response or raise DeliveryFailed"""
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400 or not body.get("ok", False):
            description = body.get("description") or response.text
            raise DeliveryFailed(f"{action} failed ({response.status_code}): {description}")
        return body.get("result")

    async def send_message(
        self, chat_id: str, text: str, parse_mode: Optional[str] = None
    ) -> Dict[str, Any]:
        """Send a text message to a chat. Raises DeliveryFailed on any error."""
        payload = self._prepare_message_payload(chat_id, text, parse_mode)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}/sendMessage", json=payload)
        except httpx.HTTPError as e:
            raise DeliveryFailed(f"sendMessage to {chat_id} failed: {e}") from e

        result = self._unwrap(response, "sendMessage")
        logger.info(f"Sent message to chat {chat_id} ({len(payload['text'])} chars)")
        return result

    async def get_file_info(self, file_id: str) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/getFile", params={"file_id": file_id}
                )
        except httpx.HTTPError as e:
            raise DeliveryFailed(f"getFile for {file_id} failed: {e}") from e
        return self._unwrap(response, "getFile")

    async def download_file(
        self, file_id: str, max_bytes: Optional[int] = None
    ) -> Optional[Tuple[bytes, str]]:
        """Download a file by id as (content, filename).

        Returns None when the file is larger than ``max_bytes``.
        """
        info = await self.get_file_info(file_id)
        file_size = info.get("file_size")
        if max_bytes is not None and file_size is not None and file_size > max_bytes:
            logger.warning(f"File {file_id} is too large ({file_size} > {max_bytes} bytes)")
            return None

        file_path = info["file_path"]
        async with httpx.AsyncClient(follow_redirects=True, timeout=self.timeout * 3) as client:
            r = await client.get(f"{self.file_url}/{file_path}")
            r.raise_for_status()

        content = r.content
        if max_bytes is not None and len(content) > max_bytes:
            logger.warning(f"File {file_id} is too large ({len(content)} > {max_bytes} bytes)")
            return None
        return content, os.path.basename(file_path)
