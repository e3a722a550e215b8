# tests/conftest.py

import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from chat_digest import AppServices, create_app
from chat_digest.core.database import build_engine, init_db
from chat_digest.core.errors import DeliveryFailed
from chat_digest.core.telegram_client import TelegramClient
from chat_digest.models import MessageType
from chat_digest.services.digest_generator import DigestGenerator
from chat_digest.services.scheduler import ChatScheduleRegistry
from chat_digest.services.store import MessageStore
from chat_digest.services.text_backend import FallbackDigestBackend, TextBackendGate
from chat_digest.services.transcripts import TranscriptResolver
from chat_digest.services.webhook_service import WebhookService

TEST_DATABASE_URL = "sqlite:///:memory:"


class FakeDelivery:
    """Records sent messages instead of calling Telegram"""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_message(self, chat_id, text, parse_mode=None):
        if self.fail:
            raise DeliveryFailed("sendMessage failed (400): chat not found")
        self.sent.append((chat_id, text))
        return {"message_id": len(self.sent)}


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def engine():
    """Fresh in-memory database per test"""
    test_engine = build_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    init_db(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def store(engine):
    return MessageStore(engine)


@pytest.fixture
def seed(store):
    """Create a chat, its author and one message in one call"""

    def _seed(
        created_at,
        chat_id="-100",
        message_id="1",
        user_id="u1",
        first_name="Anna",
        handle="anna",
        type=MessageType.TEXT,
        content="hello",
        media_reference=None,
        title="Friends",
    ):
        store.ensure_chat(chat_id, title)
        store.upsert_user(user_id, first_name, handle)
        return store.insert_message(
            chat_id,
            message_id,
            user_id,
            type,
            content=content,
            media_reference=media_reference,
            created_at=created_at,
        )

    return _seed


@pytest.fixture
def delivery():
    return FakeDelivery()


@pytest.fixture
def transcripts(store):
    return TranscriptResolver(store)


@pytest.fixture
def generator(store, transcripts):
    return DigestGenerator(store, transcripts)


@pytest.fixture
def gate():
    fallback = FallbackDigestBackend()
    return TextBackendGate(fallback, fallback)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 6, 13, 19, 0, tzinfo=timezone.utc))


@pytest.fixture
def registry(store, generator, gate, delivery, clock):
    return ChatScheduleRegistry(store, generator, gate, delivery, clock=clock)


@pytest.fixture
def mock_telegram():
    """Mock Telegram client for tests."""
    client = AsyncMock(spec=TelegramClient)
    client.send_message = AsyncMock(return_value={"message_id": 1})
    return client


@pytest.fixture
def webhook_service(mock_telegram, store, registry, generator, transcripts):
    return WebhookService(mock_telegram, store, registry, generator, transcripts)


@pytest.fixture
def app(store, registry, webhook_service):
    """Create application for testing."""
    return create_app(AppServices(store=store, registry=registry, webhook_service=webhook_service))


@pytest.fixture
def client(app):
    """Create a test client for the app."""
    return TestClient(app)


@pytest.fixture
def setup_admin_key():
    """Set admin API key for testing specific admin endpoints"""
    old_key = os.environ.get("ADMIN_API_KEY")
    api_key = "admin_secret_key"
    os.environ["ADMIN_API_KEY"] = api_key
    yield api_key
    if old_key is not None:
        os.environ["ADMIN_API_KEY"] = old_key
    elif "ADMIN_API_KEY" in os.environ:
        del os.environ["ADMIN_API_KEY"]


@pytest.fixture
def telegram_update():
    """Generate a Telegram webhook update carrying one message."""

    def _create_update(
        text="hello",
        chat_id=-100123,
        user_id=42,
        message_id=10,
        date=1718182800,  # 2024-06-12 09:00 UTC
        username="anna",
        first_name="Anna",
        chat_title="Friends",
        update_id=1,
        **extra,
    ):
        message = {
            "message_id": message_id,
            "from": {
                "id": user_id,
                "is_bot": False,
                "first_name": first_name,
                "username": username,
            },
            "chat": {"id": chat_id, "title": chat_title, "type": "supergroup"},
            "date": date,
        }
        if text is not None:
            message["text"] = text
        message.update(extra)
        return {"update_id": update_id, "message": message}

    return _create_update
