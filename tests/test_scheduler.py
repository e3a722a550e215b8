import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chat_digest.core.errors import (
    ChatNotFound,
    DeliveryFailed,
    GenerationUnavailable,
    InvalidScheduleError,
)
from chat_digest.models import Chat
from chat_digest.services.scheduler import ChatScheduleRegistry
from chat_digest.services.schedule import DailyLocalTimeTrigger
from chat_digest.services.text_backend import TextBackendGate

from conftest import FakeDelivery, FixedClock


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class FailingBackend:
    name = "failing"

    async def generate(self, messages, context):
        raise GenerationUnavailable("quota exceeded")

    async def is_available(self):
        return True


class RecordingBackend:
    name = "recording"

    def __init__(self):
        self.calls = []

    async def generate(self, messages, context):
        self.calls.append((messages, context))
        return f"{context.target_mention} digest of {len(messages)} messages"

    async def is_available(self):
        return True


def make_chat(chat_id="-100", report_time="21:00", tz="Europe/Berlin", active=True):
    return Chat(
        chat_id=chat_id,
        title=f"Chat {chat_id}",
        report_time=report_time,
        timezone=tz,
        active=active,
    )


def job_ids(registry):
    return [job.id for job in registry.scheduler.get_jobs()]


# Timer table


def test_register_twice_leaves_one_timer(registry):
    chat = make_chat()

    registry.register(chat)
    registry.register(chat)
    chat.report_time = "07:30"
    registry.register(chat)

    assert len(registry) == 1
    assert job_ids(registry) == ["digest:-100"]
    assert registry.get("-100").schedule.report_time == "07:30"


def test_invalid_register_keeps_previous_timer(registry):
    registry.register(make_chat(report_time="21:00"))

    with pytest.raises(InvalidScheduleError):
        registry.register(make_chat(report_time="25:00"))
    with pytest.raises(InvalidScheduleError):
        registry.register(make_chat(tz="Nowhere/City"))

    assert job_ids(registry) == ["digest:-100"]
    assert registry.get("-100").schedule.report_time == "21:00"


def test_invalid_first_register_schedules_nothing(registry):
    with pytest.raises(InvalidScheduleError):
        registry.register(make_chat(report_time="9pm"))

    assert "-100" not in registry
    assert job_ids(registry) == []


def test_unregister_is_idempotent(registry):
    registry.register(make_chat())

    assert registry.unregister("-100") is True
    assert registry.unregister("-100") is False
    assert job_ids(registry) == []


def test_reconcile_registers_only_active_chats(registry):
    registered = registry.reconcile(
        [
            make_chat("-1"),
            make_chat("-2", active=False),
            make_chat("-3", report_time="bad"),
            make_chat("-4", tz="Asia/Tokyo"),
        ]
    )

    assert registered == 2
    assert sorted(job_ids(registry)) == ["digest:-1", "digest:-4"]


def test_reconcile_unschedules_chats_turned_inactive(registry):
    registry.register(make_chat("-1"))

    registry.reconcile([make_chat("-1", active=False)])

    assert "-1" not in registry


@pytest.mark.asyncio
async def test_update_chat_schedule_follows_store(registry, store):
    store.ensure_chat("-100", "Friends")

    scheduled = await registry.update_chat_schedule("-100")
    assert scheduled.schedule.report_time == "21:00"

    store.update_chat_settings("-100", report_time="06:45", timezone="UTC")
    scheduled = await registry.update_chat_schedule("-100")
    assert scheduled.schedule.timezone == "UTC"
    assert job_ids(registry) == ["digest:-100"]

    store.update_chat_settings("-100", active=False)
    assert await registry.update_chat_schedule("-100") is None
    assert "-100" not in registry


@pytest.mark.asyncio
async def test_update_chat_schedule_unknown_chat(registry):
    registry.register(make_chat("-100"))

    assert await registry.update_chat_schedule("-100") is None
    assert "-100" not in registry


# Firing


@pytest.mark.asyncio
async def test_berlin_scenario(store, generator, seed):
    # Two messages on 2024-06-12 at 10:00 and 14:00 Berlin time
    seed(utc(2024, 6, 12, 8, 0), message_id="1", content="morning")
    seed(utc(2024, 6, 12, 12, 0), message_id="2", content="afternoon")
    backend = RecordingBackend()
    delivery = FakeDelivery()
    registry = ChatScheduleRegistry(store, generator, TextBackendGate(backend), delivery)

    # 21:00 Berlin on D covers D-1, which is empty
    first = await registry.run_fire("-100", now=utc(2024, 6, 12, 19, 0))
    assert first.status == "skipped"
    assert first.target_date.isoformat() == "2024-06-11"
    assert delivery.sent == []
    assert backend.calls == []

    # 21:00 Berlin on D+1 covers D
    second = await registry.run_fire("-100", now=utc(2024, 6, 13, 19, 0))
    assert second.status == "delivered"
    assert second.target_date.isoformat() == "2024-06-12"
    messages, context = backend.calls[0]
    assert [m.content for m in messages] == ["morning", "afternoon"]
    assert context.total_messages == 2
    assert context.date_label == "2024-06-12"
    assert delivery.sent == [("-100", "@all digest of 2 messages")]


@pytest.mark.asyncio
async def test_late_fire_covers_the_day_it_was_scheduled_for(store, generator, seed):
    seed(utc(2024, 6, 11, 10, 0), message_id="1", content="on the 11th")
    seed(utc(2024, 6, 12, 10, 0), message_id="2", content="on the 12th")
    store.update_chat_settings("-100", report_time="23:58")
    backend = RecordingBackend()
    registry = ChatScheduleRegistry(store, generator, TextBackendGate(backend), FakeDelivery())

    # The 23:58 Berlin fire of the 12th, run three minutes late past midnight
    late = await registry.run_fire("-100", now=utc(2024, 6, 12, 22, 1))
    on_time = await registry.run_fire("-100", now=utc(2024, 6, 13, 21, 58))

    assert late.target_date.isoformat() == "2024-06-11"
    assert on_time.target_date.isoformat() == "2024-06-12"
    assert [messages[0].content for messages, _ in backend.calls] == ["on the 11th", "on the 12th"]


@pytest.mark.asyncio
async def test_opted_out_user_excluded_from_later_digest(store, generator, seed):
    seed(utc(2024, 6, 12, 7, 0), message_id="1", user_id="u2", content="from U2")
    seed(utc(2024, 6, 12, 10, 0), message_id="2", user_id="u1", content="from U1")
    # U2 opts out at 18:00 on D
    store.set_user_opt_out("u2", True)
    backend = RecordingBackend()
    registry = ChatScheduleRegistry(store, generator, TextBackendGate(backend), FakeDelivery())

    await registry.run_fire("-100", now=utc(2024, 6, 13, 19, 0))

    messages, context = backend.calls[0]
    assert [m.content for m in messages] == ["from U1"]
    assert context.total_messages == 2


@pytest.mark.asyncio
async def test_fire_falls_back_when_generation_fails(store, generator, seed):
    seed(utc(2024, 6, 12, 8, 0))
    delivery = FakeDelivery()
    registry = ChatScheduleRegistry(store, generator, TextBackendGate(FailingBackend()), delivery)

    result = await registry.run_fire("-100", now=utc(2024, 6, 13, 19, 0))

    assert result.status == "delivered"
    text = delivery.sent[0][1]
    assert text.startswith("@all here is what you missed in the chat:")
    assert "📊 Statistics: 1 messages during the day" in text


@pytest.mark.asyncio
async def test_fire_for_inactive_or_missing_chat(registry, store, delivery):
    store.ensure_chat("-100", "Friends")
    store.update_chat_settings("-100", active=False)

    assert (await registry.run_fire("-100")).status == "inactive"
    assert (await registry.run_fire("missing")).status == "inactive"
    assert delivery.sent == []


@pytest.mark.asyncio
async def test_delivery_failure_is_contained(store, generator, seed):
    seed(utc(2024, 6, 12, 8, 0))
    delivery = FakeDelivery(fail=True)
    registry = ChatScheduleRegistry(store, generator, TextBackendGate(RecordingBackend()), delivery)
    registry.register(store.get_chat("-100"))

    result = await registry.run_fire("-100", now=utc(2024, 6, 13, 19, 0))

    assert result.status == "failed"
    assert "DeliveryFailed" in result.error
    assert registry.last_results["-100"] is result
    # The chat keeps its timer
    assert "-100" in registry
    assert job_ids(registry) == ["digest:-100"]


@pytest.mark.asyncio
async def test_failure_sends_one_error_notice(store, generator, seed, delivery):
    seed(utc(2024, 6, 12, 8, 0))
    seed(utc(2024, 6, 12, 8, 0), chat_id="-200", message_id="1")

    class OneChatDown:
        name = "flaky"

        async def generate(self, messages, context):
            if context.chat_title == "Broken":
                raise RuntimeError("boom")
            return "fine"

        async def is_available(self):
            return True

    store.ensure_chat("-200", "Broken")
    gate = TextBackendGate(OneChatDown())
    registry = ChatScheduleRegistry(store, generator, gate, delivery)

    broken = await registry.run_fire("-200", now=utc(2024, 6, 13, 19, 0))
    healthy = await registry.run_fire("-100", now=utc(2024, 6, 13, 19, 0))

    assert broken.status == "failed"
    assert healthy.status == "delivered"
    assert delivery.sent == [
        ("-200", "❌ Could not create the daily digest: unexpected error"),
        ("-100", "fine"),
    ]


@pytest.mark.asyncio
async def test_store_failure_abandons_only_that_cycle(registry, monkeypatch, delivery):
    from chat_digest.core.errors import StoreUnavailable

    def broken_get_chat(chat_id):
        raise StoreUnavailable("database is locked")

    monkeypatch.setattr(registry.store, "get_chat", broken_get_chat)

    result = await registry.run_fire("-100", now=utc(2024, 6, 13, 19, 0))

    assert result.status == "failed"
    assert delivery.sent == [
        ("-100", "❌ Could not create the daily digest: the message history is unavailable")
    ]


@pytest.mark.asyncio
async def test_unexpected_delivery_error_never_escapes(store, generator, seed):
    seed(utc(2024, 6, 12, 8, 0))

    class BrokenChannel:
        async def send_message(self, chat_id, text, parse_mode=None):
            raise ConnectionResetError("socket closed")

    registry = ChatScheduleRegistry(
        store, generator, TextBackendGate(RecordingBackend()), BrokenChannel()
    )

    result = await registry.run_fire("-100", now=utc(2024, 6, 13, 19, 0))

    assert result.status == "failed"
    assert "ConnectionResetError" in result.error


# Concurrency


class BlockingBackend:
    """Holds every generate call until released"""

    name = "blocking"

    def __init__(self, expected_calls=1):
        self.expected_calls = expected_calls
        self.started = []
        self.all_started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, messages, context):
        self.started.append(context.chat_title)
        if len(self.started) >= self.expected_calls:
            self.all_started.set()
        await self.release.wait()
        return f"digest for {context.chat_title}"

    async def is_available(self):
        return True


@pytest.mark.asyncio
async def test_fire_in_flight_completes_after_unregister(store, generator, seed, delivery):
    seed(utc(2024, 6, 12, 8, 0))
    backend = BlockingBackend()
    registry = ChatScheduleRegistry(store, generator, TextBackendGate(backend), delivery)
    registry.register(store.get_chat("-100"))

    fire = asyncio.create_task(registry.run_fire("-100", now=utc(2024, 6, 13, 19, 0)))
    await asyncio.wait_for(backend.all_started.wait(), timeout=5)

    assert registry.unregister("-100") is True
    backend.release.set()
    result = await asyncio.wait_for(fire, timeout=5)

    assert result.status == "delivered"
    assert delivery.sent == [("-100", "digest for Friends")]
    assert "-100" not in registry


@pytest.mark.asyncio
async def test_fires_for_two_chats_run_concurrently(store, generator, seed):
    seed(utc(2024, 6, 12, 8, 0), chat_id="-100", title="Friends")
    seed(utc(2024, 6, 12, 8, 0), chat_id="-200", message_id="1", title="Family")

    class OneChatUnreachable(FakeDelivery):
        async def send_message(self, chat_id, text, parse_mode=None):
            if chat_id == "-200":
                raise DeliveryFailed("sendMessage failed (403): bot was kicked")
            return await super().send_message(chat_id, text, parse_mode)

    backend = BlockingBackend(expected_calls=2)
    delivery = OneChatUnreachable()
    registry = ChatScheduleRegistry(store, generator, TextBackendGate(backend), delivery)
    now = utc(2024, 6, 13, 19, 0)

    fires = asyncio.gather(registry.run_fire("-100", now=now), registry.run_fire("-200", now=now))
    # Both fires reach generation before either finishes
    await asyncio.wait_for(backend.all_started.wait(), timeout=5)
    assert sorted(backend.started) == ["Family", "Friends"]

    backend.release.set()
    friends, family = await asyncio.wait_for(fires, timeout=5)

    assert friends.status == "delivered"
    assert family.status == "failed"
    assert delivery.sent == [("-100", "digest for Friends")]


@pytest.mark.asyncio
async def test_running_scheduler_fires_registered_job(store, generator, gate, seed, clock):
    # The registry clock reads 2024-06-13 19:00 UTC, so the fire covers the 12th
    seed(utc(2024, 6, 12, 8, 0))

    class SignallingDelivery(FakeDelivery):
        def __init__(self):
            super().__init__()
            self.delivered = asyncio.Event()

        async def send_message(self, chat_id, text, parse_mode=None):
            response = await super().send_message(chat_id, text, parse_mode)
            self.delivered.set()
            return response

    delivery = SignallingDelivery()
    registry = ChatScheduleRegistry(store, generator, gate, delivery, clock=clock)
    registry.register(store.get_chat("-100"))
    registry.start()
    try:
        job = registry.scheduler.get_job("digest:-100")
        assert isinstance(job.trigger, DailyLocalTimeTrigger)
        assert list(job.args) == ["-100"]

        registry.scheduler.modify_job("digest:-100", next_run_time=datetime.now(timezone.utc))
        await asyncio.wait_for(delivery.delivered.wait(), timeout=5)
        # Let the executor record the run and reschedule the job
        await asyncio.sleep(0.1)

        result = registry.last_results["-100"]
        assert result.status == "delivered"
        assert result.target_date.isoformat() == "2024-06-12"
        assert delivery.sent[0][0] == "-100"

        next_run = registry.scheduler.get_job("digest:-100").next_run_time
        assert next_run > datetime.now(timezone.utc)
        assert next_run - datetime.now(timezone.utc) <= timedelta(days=1)
    finally:
        registry.shutdown()


# Preview


@pytest.mark.asyncio
async def test_trigger_empty_day_renders_empty_state(registry, store, delivery):
    store.ensure_chat("-100", "Friends")

    digest = await registry.trigger("-100")

    assert "0 messages during the day" in digest
    assert digest.startswith("@all")
    assert delivery.sent == []


@pytest.mark.asyncio
async def test_trigger_uses_today_in_chat_timezone(store, generator, seed):
    # Clock: 2024-06-13 00:30 Berlin, so "today" has just begun
    seed(utc(2024, 6, 12, 21, 0), message_id="1", content="yesterday evening")
    seed(utc(2024, 6, 12, 22, 10), message_id="2", content="after midnight")
    backend = RecordingBackend()
    registry = ChatScheduleRegistry(
        store,
        generator,
        TextBackendGate(backend),
        FakeDelivery(),
        clock=FixedClock(utc(2024, 6, 12, 22, 30)),
    )

    await registry.trigger("-100")

    messages, context = backend.calls[0]
    assert [m.content for m in messages] == ["after midnight"]
    assert context.date_label == "2024-06-13"


@pytest.mark.asyncio
async def test_trigger_surfaces_generation_errors(store, generator, seed, clock):
    seed(utc(2024, 6, 13, 8, 0))
    registry = ChatScheduleRegistry(
        store, generator, TextBackendGate(FailingBackend()), FakeDelivery(), clock=clock
    )

    with pytest.raises(GenerationUnavailable):
        await registry.trigger("-100")


@pytest.mark.asyncio
async def test_trigger_unknown_chat(registry):
    with pytest.raises(ChatNotFound):
        await registry.trigger("missing")


# Status and lifecycle


def test_status_reports_next_fire(registry, clock):
    registry.register(make_chat("-100"))

    status = registry.status(now=utc(2024, 6, 12, 10, 0))

    assert status["active_jobs"] == 1
    assert status["scheduled_chats"] == ["-100"]
    assert status["next_executions"][0]["next_run"] == "2024-06-12T21:00:00+02:00"


@pytest.mark.asyncio
async def test_status_includes_last_result(registry, store):
    store.ensure_chat("-100", "Friends")
    await registry.run_fire("-100", now=utc(2024, 6, 13, 19, 0))

    result = registry.status()["last_results"]["-100"]

    assert result["status"] == "skipped"
    assert result["target_date"] == "2024-06-12"
    assert result["fired_at"] == "2024-06-13T19:00:00+00:00"


def test_retention_job_is_not_a_chat(registry):
    registry.add_retention_job(30)

    assert job_ids(registry) == ["maintenance:retention"]
    assert len(registry) == 0
    assert registry.status()["active_jobs"] == 0


@pytest.mark.asyncio
async def test_start_and_shutdown(registry):
    registry.register(make_chat("-100"))

    registry.start()
    assert registry.scheduler.running
    job = registry.scheduler.get_job("digest:-100")
    assert job.next_run_time is not None

    registry.shutdown()
    assert len(registry) == 0
