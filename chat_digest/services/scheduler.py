# chat_digest/services/scheduler.py

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from chat_digest.core.errors import (
    ChatNotFound,
    DeliveryFailed,
    GenerationUnavailable,
    InvalidScheduleError,
    StoreUnavailable,
)
from chat_digest.data_schemas import AssembledDigest, DigestContext
from chat_digest.models import Chat
from chat_digest.services.digest_generator import DigestGenerator
from chat_digest.services.prompts import render_error_notice
from chat_digest.services.schedule import (
    DailyLocalTimeTrigger,
    DailySchedule,
    last_fire_day,
    next_fire_time,
)
from chat_digest.services.store import MessageStore
from chat_digest.services.text_backend import TextBackendGate

logger = logging.getLogger(__name__)

# A fire delayed by a busy loop still runs within this window
MISFIRE_GRACE_SECONDS = 300

RETENTION_JOB_ID = "maintenance:retention"


class DeliveryChannel(Protocol):
    async def send_message(self, chat_id: str, text: str, parse_mode: Optional[str] = None) -> dict:
        ...


@dataclass
class FireResult:
    """Outcome of one fire, kept per chat for status reporting"""

    chat_id: str
    status: str  # delivered, skipped, inactive, failed
    fired_at: datetime
    target_date: Optional[date] = None
    digest_length: int = 0
    error: Optional[str] = None


@dataclass
class ScheduledChat:
    chat_id: str
    schedule: DailySchedule
    job: Job = field(repr=False)


def _failure_reason(error: Exception) -> str:
    if isinstance(error, DeliveryFailed):
        return "the digest could not be delivered"
    if isinstance(error, StoreUnavailable):
        return "the message history is unavailable"
    if isinstance(error, GenerationUnavailable):
        return "the summary service is unavailable"
    return "unexpected error"


class ChatScheduleRegistry:
    """One recurring digest timer per active chat.

    Timers live in an APScheduler ``AsyncIOScheduler``; ``_chats`` maps each
    chat identifier to its single live job. Mutations run on the event loop
    without awaiting in between, so replacing a chat's timer is atomic.
    """

    def __init__(
        self,
        store: MessageStore,
        generator: DigestGenerator,
        gate: TextBackendGate,
        delivery: DeliveryChannel,
        scheduler: Optional[AsyncIOScheduler] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.generator = generator
        self.gate = gate
        self.delivery = delivery
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._chats: Dict[str, ScheduledChat] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.last_results: Dict[str, FireResult] = {}

    def __len__(self) -> int:
        return len(self._chats)

    def __contains__(self, chat_id: str) -> bool:
        return chat_id in self._chats

    @staticmethod
    def job_id(chat_id: str) -> str:
        return f"digest:{chat_id}"

    def get(self, chat_id: str) -> Optional[ScheduledChat]:
        return self._chats.get(chat_id)

    # Timer table

    def register(self, chat: Chat) -> ScheduledChat:
        """Schedule (or reschedule) the chat's daily digest.

        Raises InvalidScheduleError for a bad report_time/timezone, in which
        case any existing timer for the chat is left as it was.
        """
        schedule = DailySchedule.parse(chat.report_time, chat.timezone)

        previous = self._chats.pop(chat.chat_id, None)
        if previous is not None:
            self._remove_job(previous.job)

        job = self.scheduler.add_job(
            self.run_fire,
            trigger=DailyLocalTimeTrigger(schedule),
            args=[chat.chat_id],
            id=self.job_id(chat.chat_id),
            name=f"daily digest for {chat.chat_id}",
            replace_existing=True,
            misfire_grace_time=MISFIRE_GRACE_SECONDS,
            coalesce=True,
            max_instances=1,
        )
        scheduled = ScheduledChat(chat_id=chat.chat_id, schedule=schedule, job=job)
        self._chats[chat.chat_id] = scheduled

        logger.info(
            f"Scheduled daily report for chat {chat.chat_id} ({chat.title}) "
            f"at {schedule.report_time} {schedule.timezone}"
        )
        return scheduled

    def unregister(self, chat_id: str) -> bool:
        """Cancel the chat's timer. A fire already running is not interrupted."""
        scheduled = self._chats.pop(chat_id, None)
        if scheduled is None:
            return False
        self._remove_job(scheduled.job)
        logger.info(f"Unscheduled daily report for chat {chat_id}")
        return True

    def _remove_job(self, job: Job) -> None:
        try:
            self.scheduler.remove_job(job.id)
        except JobLookupError:
            pass

    def reconcile(self, chats: Iterable[Chat]) -> int:
        """Register every active chat; inactive ones are unscheduled.

        A chat with a broken schedule is logged and skipped so it cannot
        block the others. Returns the number of chats registered.
        """
        registered = 0
        for chat in chats:
            if not chat.active:
                self.unregister(chat.chat_id)
                continue
            try:
                self.register(chat)
                registered += 1
            except InvalidScheduleError as e:
                logger.error(f"Failed to schedule chat {chat.chat_id}: {e}")
        logger.info(f"Scheduler reconciled: {registered} chats scheduled")
        return registered

    async def update_chat_schedule(self, chat_id: str) -> Optional[ScheduledChat]:
        """Re-read the chat and register or unregister it to match its settings"""
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        async with lock:
            chat = await asyncio.to_thread(self.store.get_chat, chat_id)
            if chat is not None and chat.active:
                return self.register(chat)
            self.unregister(chat_id)
            return None

    # Firing

    def _context(self, chat: Chat, assembled: AssembledDigest) -> DigestContext:
        return DigestContext(
            chat_title=chat.title,
            date_label=assembled.date.isoformat(),
            total_messages=assembled.total_count,
            target_mention=chat.target_mention,
            timezone=chat.timezone,
        )

    async def _fire(self, chat_id: str, now: datetime) -> FireResult:
        chat = await asyncio.to_thread(self.store.get_chat, chat_id)
        if chat is None or not chat.active:
            logger.info(f"Chat {chat_id} is gone or inactive, skipping its report")
            return FireResult(chat_id=chat_id, status="inactive", fired_at=now)

        schedule = DailySchedule.parse(chat.report_time, chat.timezone)
        # Reports cover the local day before the one this fire was scheduled on
        target = last_fire_day(schedule, now) - timedelta(days=1)

        if not await self.generator.has_content(chat_id, target, schedule.zone):
            logger.info(f"No messages to summarize for chat {chat_id} on {target.isoformat()}")
            return FireResult(chat_id=chat_id, status="skipped", fired_at=now, target_date=target)

        assembled = await self.generator.assemble(chat_id, target, schedule.zone)
        digest = await self.gate.render(assembled.messages, self._context(chat, assembled))
        await self.delivery.send_message(chat_id, digest)

        logger.info(
            f"Daily report sent to chat {chat_id} for {target.isoformat()} ({len(digest)} chars)"
        )
        return FireResult(
            chat_id=chat_id,
            status="delivered",
            fired_at=now,
            target_date=target,
            digest_length=len(digest),
        )

    async def _notify_failure(self, chat_id: str, error: Exception) -> None:
        try:
            await self.delivery.send_message(chat_id, render_error_notice(_failure_reason(error)))
        except Exception as e:
            logger.error(
                f"Failed to send error notification to chat {chat_id}: {type(e).__name__}: {e}"
            )

    async def run_fire(self, chat_id: str, now: Optional[datetime] = None) -> FireResult:
        """Execute one scheduled fire with the failure fully contained.

        Nothing raised here reaches APScheduler: the chat keeps its timer and
        other chats are unaffected.
        """
        now = now or self._clock()
        logger.info(f"Executing daily report for chat {chat_id}")
        try:
            result = await self._fire(chat_id, now)
        except Exception as e:
            logger.error(
                f"Failed to execute daily report for chat {chat_id}: {type(e).__name__}: {e}"
            )
            result = FireResult(
                chat_id=chat_id,
                status="failed",
                fired_at=now,
                error=f"{type(e).__name__}: {e}",
            )
            await self._notify_failure(chat_id, e)

        self.last_results[chat_id] = result
        return result

    async def trigger(self, chat_id: str) -> str:
        """On-demand digest of today so far, bypassing the timer.

        Errors reach the caller instead of degrading to the fallback
        template; an empty day renders the empty-state text.
        """
        chat = await asyncio.to_thread(self.store.get_chat, chat_id)
        if chat is None:
            raise ChatNotFound(chat_id)

        schedule = DailySchedule.parse(chat.report_time, chat.timezone)
        today = self._clock().astimezone(schedule.zone).date()
        assembled = await self.generator.assemble(chat_id, today, schedule.zone)
        digest = await self.gate.render(
            assembled.messages, self._context(chat, assembled), fallback_on_error=False
        )
        logger.info(f"Preview generated for chat {chat_id} ({len(digest)} chars)")
        return digest

    # Lifecycle and status

    def add_retention_job(self, days_to_keep: int) -> Job:
        """Daily cleanup of messages older than ``days_to_keep``"""

        async def cleanup():
            try:
                await asyncio.to_thread(self.store.cleanup_old_messages, days_to_keep)
            except StoreUnavailable as e:
                logger.error(f"Message cleanup failed: {e}")

        return self.scheduler.add_job(
            cleanup, "cron", hour=3, minute=30, id=RETENTION_JOB_ID, replace_existing=True
        )

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info(f"Scheduler started with {len(self._chats)} chats")

    def shutdown(self) -> None:
        """Stop all timers; fires already running finish on their own."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self._chats.clear()
        logger.info("All scheduled jobs stopped")

    def status(self, now: Optional[datetime] = None) -> dict:
        now = now or self._clock()
        next_executions: List[dict] = [
            {
                "chat_id": chat_id,
                "report_time": scheduled.schedule.report_time,
                "timezone": scheduled.schedule.timezone,
                "next_run": next_fire_time(scheduled.schedule, now, inclusive=True)
                .astimezone(scheduled.schedule.zone)
                .isoformat(),
            }
            for chat_id, scheduled in self._chats.items()
        ]
        return {
            "active_jobs": len(self._chats),
            "scheduled_chats": list(self._chats),
            "next_executions": next_executions,
            "last_results": {
                chat_id: {
                    **asdict(result),
                    "fired_at": result.fired_at.isoformat(),
                    "target_date": result.target_date.isoformat() if result.target_date else None,
                }
                for chat_id, result in self.last_results.items()
            },
        }
