# chat_digest/__init__.py

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from chat_digest.core.config import Settings, configure_logging, settings
from chat_digest.core.database import engine, init_db
from chat_digest.core.telegram_client import TelegramClient
from chat_digest.core.transcriber import WhisperTranscriber
from chat_digest.routes.admin import router as admin_router
from chat_digest.routes.webhook import router as webhook_router
from chat_digest.services.digest_generator import DigestGenerator
from chat_digest.services.scheduler import ChatScheduleRegistry
from chat_digest.services.store import MessageStore
from chat_digest.services.text_backend import LangChainDigestBackend, resolve_text_backend
from chat_digest.services.transcripts import TranscriptResolver
from chat_digest.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    store: MessageStore
    registry: ChatScheduleRegistry
    webhook_service: WebhookService


async def build_services(config: Settings = settings, bind=None) -> AppServices:
    """Wire the store, backends and scheduler from configuration"""
    init_db(bind or engine)
    store = MessageStore(
        bind or engine,
        default_report_time=config.REPORT_TIME_DEFAULT,
        default_timezone=config.TIMEZONE_DEFAULT,
        default_target_mention=config.TARGET_MENTION_DEFAULT,
    )
    telegram = TelegramClient(
        token=config.TELEGRAM_BOT_TOKEN,
        api_url=config.TELEGRAM_API_URL,
        timeout=config.DELIVERY_TIMEOUT_SECONDS,
    )

    transcriber = None
    primary = None
    if config.OPENAI_API_KEY:
        transcriber = WhisperTranscriber(
            api_key=config.OPENAI_API_KEY,
            model=config.TRANSCRIPTION_MODEL,
            language=config.TRANSCRIPTION_LANGUAGE,
            timeout=config.GENERATION_TIMEOUT_SECONDS,
        )
        primary = LangChainDigestBackend(
            api_key=config.OPENAI_API_KEY,
            model=config.LLM_MODEL,
            max_tokens=config.LLM_MAX_TOKENS,
            temperature=config.LLM_TEMPERATURE,
            timeout=config.GENERATION_TIMEOUT_SECONDS,
            language=config.DIGEST_LANGUAGE,
            max_chars=config.DIGEST_MAX_CHARS,
        )

    transcripts = TranscriptResolver(
        store,
        media_client=telegram,
        transcriber=transcriber,
        max_bytes=config.transcription_max_bytes,
    )
    generator = DigestGenerator(store, transcripts)
    gate = await resolve_text_backend(primary)
    registry = ChatScheduleRegistry(store, generator, gate, delivery=telegram)
    webhook_service = WebhookService(
        telegram,
        store,
        registry,
        generator,
        transcripts,
        webhook_secret=config.TELEGRAM_WEBHOOK_SECRET,
    )
    return AppServices(store=store, registry=registry, webhook_service=webhook_service)


def _attach(app: FastAPI, services: AppServices) -> None:
    app.state.store = services.store
    app.state.registry = services.registry
    app.state.webhook_service = services.webhook_service


def create_app(services: Optional[AppServices] = None):
    """Create the FastAPI app.

    Without ``services`` everything is built on startup from settings and
    the scheduler runs for the app's lifetime. Prebuilt services are
    attached as they are and their scheduler is left to the caller.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return

        configure_logging(settings.LOG_LEVEL)
        built = await build_services(settings)
        _attach(app, built)

        chats = await asyncio.to_thread(built.store.list_active_chats)
        built.registry.reconcile(chats)
        built.registry.add_retention_job(settings.MESSAGE_RETENTION_DAYS)
        built.registry.start()
        logger.info(f"Chat digest started with {len(built.registry)} scheduled chats")
        try:
            yield
        finally:
            built.registry.shutdown()

    app = FastAPI(title="Chat Digest", lifespan=lifespan)
    if services is not None:
        _attach(app, services)

    # Register routes
    app.include_router(webhook_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/")
    def read_root():
        return {"message": "Hello, Chat Digest"}

    return app
