# chat_digest/services/webhook_service.py

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Set, Tuple

from chat_digest.core.config import is_valid_report_time, is_valid_timezone
from chat_digest.core.errors import DeliveryFailed, DigestError
from chat_digest.core.telegram_client import TelegramClient
from chat_digest.models import AUDIO_TYPES, MessageType
from chat_digest.services.digest_generator import DigestGenerator
from chat_digest.services.prompts import render_error_notice
from chat_digest.services.scheduler import ChatScheduleRegistry
from chat_digest.services.store import MessageStore
from chat_digest.services.transcripts import TranscriptResolver

HELP_TEXT = (
    "📖 Chat digest bot\n\n"
    "Every day I post a digest of yesterday's messages, including transcripts of voice messages and video notes.\n\n"
    "Settings:\n"
    "/settime 21:00 - time of the daily digest (HH:MM)\n"
    "/settimezone Europe/Berlin - timezone of the chat\n"
    "/settarget @username - who gets tagged in the digest\n"
    "/pause - stop daily digests\n"
    "/resume - restart daily digests\n\n"
    "For everyone:\n"
    "/optout - leave your messages out of digests\n"
    "/optin - include your messages again\n\n"
    "/preview - digest of today so far\n"
    "/status - settings, schedule and statistics\n\n"
    "Admins: disable the bot's privacy mode in @BotFather so it can see all group messages."
)

COMMON_TIMEZONES = [
    "Europe/Berlin",
    "Europe/London",
    "Europe/Paris",
    "Europe/Moscow",
    "America/New_York",
    "America/Los_Angeles",
    "Asia/Tokyo",
    "Asia/Shanghai",
    "UTC",
]

# Payload keys checked in order after text and stickers
_MEDIA_KEYS = [
    ("photo", MessageType.PHOTO),
    ("video", MessageType.VIDEO),
    ("voice", MessageType.VOICE),
    ("audio", MessageType.AUDIO),
    ("video_note", MessageType.VIDEO_NOTE),
    ("document", MessageType.DOCUMENT),
]


class WebhookService:
    """Maps Telegram updates to stored records and handles bot commands"""

    def __init__(
        self,
        telegram: TelegramClient,
        store: MessageStore,
        registry: ChatScheduleRegistry,
        generator: DigestGenerator,
        transcripts: TranscriptResolver,
        webhook_secret: str = "",
    ):
        self.telegram = telegram
        self.store = store
        self.registry = registry
        self.generator = generator
        self.transcripts = transcripts
        self.webhook_secret = webhook_secret
        self._background: Set[asyncio.Task] = set()

    def verify_secret(self, token: Optional[str]) -> bool:
        if not self.webhook_secret:
            return True
        return token == self.webhook_secret

    @staticmethod
    def classify_message(
        message: dict,
    ) -> Optional[Tuple[MessageType, Optional[str], Optional[str], Optional[float]]]:
        """(type, content, file id, duration) of a Telegram message, None if unsupported"""
        if message.get("text") is not None:
            return MessageType.TEXT, message["text"], None, None

        if message.get("sticker"):
            sticker = message["sticker"]
            return MessageType.STICKER, sticker.get("emoji"), sticker.get("file_id"), None

        caption = message.get("caption") or None
        for key, message_type in _MEDIA_KEYS:
            media = message.get(key)
            if not media:
                continue
            if key == "photo":
                # Photo sizes come smallest first
                media = media[-1]
            return message_type, caption, media.get("file_id"), media.get("duration")

        return None

    async def _reply(self, chat_id: str, text: str) -> None:
        try:
            await self.telegram.send_message(chat_id, text)
        except DeliveryFailed as e:
            logging.error(f"Failed to reply in chat {chat_id}: {e}")

    async def handle_update(self, update: dict) -> dict:
        """Handle one update delivered to the webhook"""
        message = update.get("message")
        if not message:
            return {"status": "ignored"}

        chat = message.get("chat") or {}
        sender = message.get("from") or {}
        if "id" not in chat or "id" not in sender or sender.get("is_bot"):
            return {"status": "ignored"}

        chat_id = str(chat["id"])
        user_id = str(sender["id"])
        title = chat.get("title") or chat.get("first_name") or "Unknown Chat"

        await asyncio.to_thread(self.store.ensure_chat, chat_id, title, chat.get("type", "group"))
        await asyncio.to_thread(
            self.store.upsert_user,
            user_id,
            sender.get("first_name") or "",
            sender.get("username"),
            sender.get("last_name"),
        )

        text = message.get("text") or ""
        if text.startswith("/"):
            return await self.handle_command(text, chat_id, user_id)
        return await self.store_message(message, chat_id, user_id)

    async def store_message(self, message: dict, chat_id: str, user_id: str) -> dict:
        classified = self.classify_message(message)
        if classified is None:
            return {"status": "ignored", "type": "unsupported"}
        message_type, content, file_id, duration = classified

        message_id = str(message["message_id"])
        sent_at = (
            datetime.fromtimestamp(message["date"], tz=timezone.utc) if message.get("date") else None
        )
        reply = message.get("reply_to_message") or {}

        stored = await asyncio.to_thread(
            self.store.insert_message,
            chat_id,
            message_id,
            user_id,
            message_type,
            content,
            file_id,
            str(reply["message_id"]) if reply.get("message_id") else None,
            sent_at,
        )
        if stored is None:
            return {"status": "duplicate", "type": message_type.value}

        if message_type in AUDIO_TYPES and file_id:
            self._transcribe_later(message_id, file_id, duration)

        logging.debug(f"Stored {message_type.value} message {chat_id}/{message_id}")
        return {"status": "success", "type": message_type.value}

    def _transcribe_later(self, message_id: str, file_id: str, duration: Optional[float]) -> None:
        task = asyncio.create_task(self.transcripts.resolve(message_id, file_id, duration))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def handle_command(self, text: str, chat_id: str, user_id: str) -> dict:
        parts = text.strip().split()
        # Commands in groups may be addressed as /command@BotName
        command = parts[0].split("@", 1)[0].lower()
        args = parts[1:]

        if command in ("/start", "/help"):
            await self._reply(chat_id, HELP_TEXT)
            return {"status": "success", "command": command[1:]}

        if command == "/settime":
            if not args or not is_valid_report_time(args[0]):
                await self._reply(chat_id, "❌ Invalid time format. Use HH:MM\nExample: /settime 21:00")
                return {"status": "error", "command": "settime"}
            await asyncio.to_thread(self.store.update_chat_settings, chat_id, report_time=args[0])
            await self.registry.update_chat_schedule(chat_id)
            await self._reply(chat_id, f"✅ Daily digest time set to {args[0]}")
            return {"status": "success", "command": "settime"}

        if command == "/settimezone":
            if not args or not is_valid_timezone(args[0]):
                await self._reply(
                    chat_id,
                    f"❌ Unknown timezone. For example: {', '.join(COMMON_TIMEZONES)}",
                )
                return {"status": "error", "command": "settimezone"}
            await asyncio.to_thread(self.store.update_chat_settings, chat_id, timezone=args[0])
            await self.registry.update_chat_schedule(chat_id)
            await self._reply(chat_id, f"✅ Timezone set to {args[0]}")
            return {"status": "success", "command": "settimezone"}

        if command == "/settarget":
            if not args or not args[0].startswith("@") or len(args[0]) < 2:
                await self._reply(chat_id, "❌ The username must start with @\nExample: /settarget @username")
                return {"status": "error", "command": "settarget"}
            await asyncio.to_thread(self.store.update_chat_settings, chat_id, target_mention=args[0])
            await self._reply(chat_id, f"✅ Digests will tag {args[0]}")
            return {"status": "success", "command": "settarget"}

        if command in ("/optout", "/optin"):
            opted_out = command == "/optout"
            await asyncio.to_thread(self.store.set_user_opt_out, user_id, opted_out)
            if opted_out:
                await self._reply(chat_id, "✅ Your messages are now left out of digests")
            else:
                await self._reply(chat_id, "✅ Your messages are included in digests again")
            return {"status": "success", "command": command[1:]}

        if command in ("/pause", "/resume"):
            active = command == "/resume"
            await asyncio.to_thread(self.store.update_chat_settings, chat_id, active=active)
            await self.registry.update_chat_schedule(chat_id)
            await self._reply(
                chat_id, "✅ Daily digests resumed" if active else "✅ Daily digests paused"
            )
            return {"status": "success", "command": command[1:]}

        if command == "/preview":
            return await self.handle_preview(chat_id)

        if command == "/status":
            return await self.handle_status(chat_id)

        # Commands meant for other bots in the group
        return {"status": "ignored", "command": "unknown"}

    async def handle_preview(self, chat_id: str) -> dict:
        await self._reply(chat_id, "🔄 Creating the digest for today...")
        try:
            digest = await self.registry.trigger(chat_id)
        except DigestError as e:
            logging.error(f"Failed to generate preview for chat {chat_id}: {e}")
            await self._reply(chat_id, render_error_notice(str(e)))
            return {"status": "error", "command": "preview"}

        await self._reply(chat_id, digest)
        return {"status": "success", "command": "preview"}

    async def handle_status(self, chat_id: str) -> dict:
        chat = await asyncio.to_thread(self.store.get_chat, chat_id)
        if chat is None:
            await self._reply(chat_id, "❌ This chat is not registered")
            return {"status": "error", "command": "status"}

        stats = await self.generator.summary_stats(chat_id, days=7)
        scheduled = self.registry.get(chat_id)
        most_active = ", ".join(u["username"] for u in stats.most_active_users[:3]) or "nobody"

        status_text = (
            "📊 Digest status\n\n"
            "Chat settings:\n"
            f"• Report time: {chat.report_time}\n"
            f"• Timezone: {chat.timezone}\n"
            f"• Tagged user: {chat.target_mention}\n"
            f"• State: {'✅ active' if chat.active else '⏸ paused'}\n\n"
            "Last 7 days:\n"
            f"• Messages: {stats.total_messages}\n"
            f"• Average per day: {stats.average_per_day}\n"
            f"• Most active: {most_active}\n\n"
            "Scheduler:\n"
            f"• This chat scheduled: {'yes' if scheduled else 'no'}\n"
            f"• Scheduled chats: {len(self.registry)}"
        )
        await self._reply(chat_id, status_text)
        return {"status": "success", "command": "status"}
