# chat_digest/core/config.py

import logging
import os
import re
import sys
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

# Hosted deployments (WEBSITE_SITE_NAME is set) get their settings from the
# environment only; locally a .env in the project root is read as well
if os.getenv("WEBSITE_SITE_NAME") is None:
    load_dotenv(
        dotenv_path=os.path.join(os.path.dirname(__file__), "..", "..", ".env"),
        override=False,
    )

REPORT_TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")

FALLBACK_REPORT_TIME = "21:00"
FALLBACK_TIMEZONE = "Europe/Berlin"


def is_valid_report_time(value: str) -> bool:
    """Check a 24-hour HH:MM string."""
    return bool(value) and REPORT_TIME_PATTERN.match(value) is not None


def is_valid_timezone(value: str) -> bool:
    """Check that an IANA zone name resolves."""
    if not value:
        return False
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return False
    return True


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logging.warning(f"{name}={raw!r} is not an integer, using {default}")
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logging.warning(f"{name}={raw!r} is not a number, using {default}")
        return default


class Settings:
    """Simple settings object to hold configuration values"""

    def __init__(self):
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./chat_digest.db")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "admin_secret_key")

        # Telegram
        self.TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
        self.TELEGRAM_WEBHOOK_SECRET = os.getenv("TELEGRAM_WEBHOOK_SECRET", "")
        self.TELEGRAM_API_URL = os.getenv("TELEGRAM_API_URL", "https://api.telegram.org")
        self.DELIVERY_TIMEOUT_SECONDS = _get_float("DELIVERY_TIMEOUT_SECONDS", 10.0)

        # Generative backend
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
        self.LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
        self.LLM_MAX_TOKENS = _get_int("LLM_MAX_TOKENS", 1000)
        self.LLM_TEMPERATURE = _get_float("LLM_TEMPERATURE", 0.7)
        self.GENERATION_TIMEOUT_SECONDS = _get_float("GENERATION_TIMEOUT_SECONDS", 60.0)
        self.DIGEST_LANGUAGE = os.getenv("DIGEST_LANGUAGE", "English")
        self.DIGEST_MAX_CHARS = _get_int("DIGEST_MAX_CHARS", 1200)

        # Speech-to-text
        self.TRANSCRIPTION_MODEL = os.getenv("TRANSCRIPTION_MODEL", "whisper-1")
        self.TRANSCRIPTION_LANGUAGE = os.getenv("TRANSCRIPTION_LANGUAGE") or None
        self.TRANSCRIPTION_MAX_MB = _get_int("TRANSCRIPTION_MAX_MB", 20)

        # Per-chat defaults applied when a chat is first seen
        self.REPORT_TIME_DEFAULT = os.getenv("REPORT_TIME_DEFAULT", FALLBACK_REPORT_TIME)
        self.TIMEZONE_DEFAULT = os.getenv("TIMEZONE_DEFAULT", FALLBACK_TIMEZONE)
        self.TARGET_MENTION_DEFAULT = os.getenv("TARGET_MENTION_DEFAULT", "@all")
        self.MESSAGE_RETENTION_DAYS = _get_int("MESSAGE_RETENTION_DAYS", 30)

        if not is_valid_report_time(self.REPORT_TIME_DEFAULT):
            logging.warning(
                f"REPORT_TIME_DEFAULT={self.REPORT_TIME_DEFAULT!r} is not HH:MM, using {FALLBACK_REPORT_TIME}"
            )
            self.REPORT_TIME_DEFAULT = FALLBACK_REPORT_TIME
        if not is_valid_timezone(self.TIMEZONE_DEFAULT):
            logging.warning(
                f"TIMEZONE_DEFAULT={self.TIMEZONE_DEFAULT!r} is not a known timezone, using {FALLBACK_TIMEZONE}"
            )
            self.TIMEZONE_DEFAULT = FALLBACK_TIMEZONE

        if not self.OPENAI_API_KEY:
            logging.error(
                "OPENAI_API_KEY environment variable not set, digests will use the fallback template."
            )
        if not self.TELEGRAM_BOT_TOKEN:
            logging.warning("TELEGRAM_BOT_TOKEN environment variable not set.")

    @property
    def transcription_max_bytes(self) -> int:
        return self.TRANSCRIPTION_MAX_MB * 1024 * 1024


def configure_logging(level: str = None):
    """Configure application logging"""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )


# Create global settings instance
settings = Settings()
