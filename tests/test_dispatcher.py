import asyncio
import types
from typing import Any, List, Tuple

import pytest

from async_notify_service.dispatcher import QueueDispatcher, compute_backoff_seconds
from async_notify_service.models import MessageStatus
from async_notify_service.persistence import Persistence
from async_notify_service.prometheus import NotifyMetrics
from async_notify_service.transport import MailTransportError


class DummyTransport:
    def __init__(self):
        self.sent: List[Tuple[str, str, str]] = []
        self.failures: List[Exception] = []

    async def send(self, to, subject, html_body):
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append((to, subject, html_body))
        return f"<{len(self.sent)}@test>"


class BlockingTransport(DummyTransport):
    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def send(self, to, subject, html_body):
        self.started.set()
        await self.release.wait()
        return await super().send(to, subject, html_body)


class FakeClock:
    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return float(self.now)

    def advance(self, seconds: int) -> None:
        self.now += seconds


def silent_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


async def make_dispatcher(tmp_path, transport=None, **kwargs: Any):
    clock = kwargs.pop("clock", None) or FakeClock()
    kwargs.setdefault("urgent_trigger_delay", 3600)
    kwargs.setdefault("test_mode", True)
    dispatcher = QueueDispatcher(
        Persistence(str(tmp_path / "queue.db")),
        transport or DummyTransport(),
        metrics=NotifyMetrics(),
        logger=silent_logger(),
        clock=clock,
        **kwargs,
    )
    await dispatcher.init()
    return dispatcher, clock


def test_backoff_doubles_from_base():
    assert compute_backoff_seconds(1) == 10 * 60
    assert compute_backoff_seconds(2) == 20 * 60
    assert compute_backoff_seconds(3) == 40 * 60
    assert compute_backoff_seconds(1, base_minutes=1) == 120


@pytest.mark.asyncio
async def test_enqueue_requires_recipient(tmp_path):
    dispatcher, _ = await make_dispatcher(tmp_path)
    with pytest.raises(ValueError):
        await dispatcher.enqueue(to="", subject="s", content="c")


@pytest.mark.asyncio
async def test_enqueue_stores_pending_message(tmp_path):
    dispatcher, clock = await make_dispatcher(tmp_path)
    msg_id = await dispatcher.enqueue(to="a@example.com", subject="Hi", content="<p>x</p>")

    message = await dispatcher.get_message(msg_id)
    assert message.status is MessageStatus.PENDING
    assert message.retry_count == 0
    assert message.max_retries == 3
    assert message.scheduled_at == clock.now
    assert message.sent_at is None
    assert b"gns_pending_messages 1.0" in dispatcher.metrics.generate_latest()


@pytest.mark.asyncio
async def test_cycle_attempts_most_urgent_first(tmp_path):
    dispatcher, clock = await make_dispatcher(tmp_path)
    await dispatcher.enqueue(to="low@example.com", subject="s", content="c", priority="low")
    await dispatcher.enqueue(to="late-normal@example.com", subject="s", content="c", scheduled_at=clock.now - 5)
    await dispatcher.enqueue(to="early-normal@example.com", subject="s", content="c", scheduled_at=clock.now - 10)
    await dispatcher.enqueue(to="urgent@example.com", subject="s", content="c", priority="urgent")
    await dispatcher.enqueue(to="high@example.com", subject="s", content="c", priority="high")

    assert await dispatcher.process_queue() == 5
    assert [to for to, _, _ in dispatcher.transport.sent] == [
        "urgent@example.com",
        "high@example.com",
        "early-normal@example.com",
        "late-normal@example.com",
        "low@example.com",
    ]
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_cycle_respects_batch_size(tmp_path):
    dispatcher, _ = await make_dispatcher(tmp_path, batch_size=2)
    for idx in range(3):
        await dispatcher.enqueue(to=f"user{idx}@example.com", subject="s", content="c")

    assert await dispatcher.process_queue() == 2
    stats = await dispatcher.get_queue_stats()
    assert stats == {"pending": 1, "processing": 0, "sent": 2, "failed": 0, "total": 3}

    assert await dispatcher.process_queue() == 1
    assert await dispatcher.process_queue() == 0


@pytest.mark.asyncio
async def test_future_messages_wait_for_their_schedule(tmp_path):
    dispatcher, clock = await make_dispatcher(tmp_path)
    await dispatcher.enqueue(to="a@example.com", subject="s", content="c", scheduled_at=clock.now + 60)

    assert await dispatcher.process_queue() == 0
    clock.advance(60)
    assert await dispatcher.process_queue() == 1


@pytest.mark.asyncio
async def test_overlapping_cycle_is_a_no_op(tmp_path):
    transport = BlockingTransport()
    dispatcher, _ = await make_dispatcher(tmp_path, transport=transport)
    await dispatcher.enqueue(to="a@example.com", subject="s", content="c")

    first = asyncio.create_task(dispatcher.process_queue())
    await asyncio.wait_for(transport.started.wait(), timeout=2)
    assert dispatcher.is_processing is True
    assert await dispatcher.process_queue() == 0

    transport.release.set()
    assert await first == 1
    assert dispatcher.is_processing is False
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_three_failures_then_delivery(tmp_path):
    transport = DummyTransport()
    transport.failures = [MailTransportError("relay down", 451) for _ in range(3)]
    dispatcher, clock = await make_dispatcher(tmp_path, transport=transport)
    msg_id = await dispatcher.enqueue(to="a@example.com", subject="s", content="c", max_retries=3)

    for attempt, delay in ((1, 600), (2, 1200), (3, 2400)):
        assert await dispatcher.process_queue() == 1
        message = await dispatcher.get_message(msg_id)
        assert message.status is MessageStatus.PENDING
        assert message.retry_count == attempt
        assert message.scheduled_at == clock.now + delay
        assert message.last_error == "relay down"
        assert await dispatcher.process_queue() == 0
        clock.advance(delay)

    assert await dispatcher.process_queue() == 1
    message = await dispatcher.get_message(msg_id)
    assert message.status is MessageStatus.SENT
    assert message.sent_at == clock.now
    assert message.last_error is None
    assert transport.sent == [("a@example.com", "s", "c")]


@pytest.mark.asyncio
async def test_single_retry_budget_ends_in_failed(tmp_path):
    transport = DummyTransport()
    transport.failures = [RuntimeError("boom"), RuntimeError("boom again")]
    dispatcher, clock = await make_dispatcher(tmp_path, transport=transport)
    msg_id = await dispatcher.enqueue(to="a@example.com", subject="s", content="c", max_retries=1)

    await dispatcher.process_queue()
    message = await dispatcher.get_message(msg_id)
    assert message.status is MessageStatus.PENDING
    assert message.retry_count == 1

    clock.advance(compute_backoff_seconds(1))
    await dispatcher.process_queue()
    message = await dispatcher.get_message(msg_id)
    assert message.status is MessageStatus.FAILED
    assert message.retry_count == 1
    assert message.last_error == "boom again"
    assert message.sent_at is None

    clock.advance(10 * 24 * 3600)
    assert await dispatcher.process_queue() == 0
    output = dispatcher.metrics.generate_latest()
    assert b'gns_failed_total{priority="normal"} 1.0' in output


@pytest.mark.asyncio
async def test_missing_template_counts_as_failed_attempt(tmp_path):
    dispatcher, _ = await make_dispatcher(tmp_path)
    msg_id = await dispatcher.enqueue(to="a@example.com", subject="s", template_id="nope", template_data={"x": 1})

    await dispatcher.process_queue()
    message = await dispatcher.get_message(msg_id)
    assert message.status is MessageStatus.PENDING
    assert message.retry_count == 1
    assert "not found" in message.last_error
    assert dispatcher.transport.sent == []


@pytest.mark.asyncio
async def test_template_fills_body_and_subject(tmp_path):
    dispatcher, _ = await make_dispatcher(tmp_path)
    await dispatcher.persistence.add_template(
        {"id": "tpl", "name": "notification", "subject": "Hi {{ username }}", "body": "<p>{{content}} {{missing}}</p>"}
    )
    await dispatcher.enqueue(
        to="a@example.com",
        subject="ignored",
        template_id="tpl",
        template_data={"username": "alice", "content": "hello"},
    )

    await dispatcher.process_queue()
    assert dispatcher.transport.sent == [("a@example.com", "Hi alice", "<p>hello {{missing}}</p>")]


@pytest.mark.asyncio
async def test_template_without_subject_keeps_message_subject(tmp_path):
    dispatcher, _ = await make_dispatcher(tmp_path)
    await dispatcher.persistence.add_template({"id": "tpl", "name": "plain", "subject": "", "body": "{{a}}"})
    await dispatcher.enqueue(to="a@example.com", subject="Original", template_id="tpl", template_data={"a": "b"})

    await dispatcher.process_queue()
    assert dispatcher.transport.sent == [("a@example.com", "Original", "b")]


@pytest.mark.asyncio
async def test_retry_failed_requeues_with_fresh_budget(tmp_path):
    transport = DummyTransport()
    transport.failures = [RuntimeError("x"), RuntimeError("y")]
    dispatcher, clock = await make_dispatcher(tmp_path, transport=transport)
    msg_id = await dispatcher.enqueue(to="a@example.com", subject="s", content="c", max_retries=1)
    await dispatcher.process_queue()
    clock.advance(compute_backoff_seconds(1))
    await dispatcher.process_queue()
    assert (await dispatcher.get_message(msg_id)).status is MessageStatus.FAILED

    assert await dispatcher.retry_failed(["unknown"]) == 0
    assert await dispatcher.retry_failed([]) == 0
    clock.advance(5)
    assert await dispatcher.retry_failed() == 1

    message = await dispatcher.get_message(msg_id)
    assert message.status is MessageStatus.PENDING
    assert message.retry_count == 0
    assert message.last_error is None
    assert message.scheduled_at == clock.now

    assert await dispatcher.process_queue() == 1
    assert (await dispatcher.get_message(msg_id)).status is MessageStatus.SENT


@pytest.mark.asyncio
async def test_cleanup_sent_only_removes_old_sent_messages(tmp_path):
    transport = DummyTransport()
    dispatcher, clock = await make_dispatcher(tmp_path, transport=transport)
    old_id = await dispatcher.enqueue(to="old@example.com", subject="s", content="c")
    await dispatcher.process_queue()

    clock.advance(31 * 24 * 3600)
    recent_id = await dispatcher.enqueue(to="new@example.com", subject="s", content="c")
    await dispatcher.process_queue()
    pending_id = await dispatcher.enqueue(to="later@example.com", subject="s", content="c", scheduled_at=clock.now + 999)

    assert await dispatcher.cleanup_sent() == 1
    assert await dispatcher.get_message(old_id) is None
    assert await dispatcher.get_message(recent_id) is not None
    assert await dispatcher.get_message(pending_id) is not None
    clock.advance(1)
    assert await dispatcher.cleanup_sent(older_than_days=0) == 1


@pytest.mark.asyncio
async def test_urgent_enqueue_triggers_prompt_cycle(tmp_path):
    dispatcher, _ = await make_dispatcher(tmp_path, urgent_trigger_delay=0.01)
    await dispatcher.enqueue(to="urgent@example.com", subject="s", content="c", priority="urgent")

    for _ in range(100):
        if dispatcher.transport.sent:
            break
        await asyncio.sleep(0.02)
    assert dispatcher.transport.sent[0][0] == "urgent@example.com"
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_normal_enqueue_waits_for_periodic_cycle(tmp_path):
    dispatcher, _ = await make_dispatcher(tmp_path, urgent_trigger_delay=0.01)
    await dispatcher.enqueue(to="normal@example.com", subject="s", content="c", priority="normal")
    await asyncio.sleep(0.1)
    assert dispatcher.transport.sent == []


@pytest.mark.asyncio
async def test_periodic_loop_drains_queue(tmp_path):
    dispatcher, _ = await make_dispatcher(tmp_path, test_mode=False, interval=0.05)
    await dispatcher.enqueue(to="a@example.com", subject="s", content="c")
    await dispatcher.start()
    try:
        for _ in range(100):
            if dispatcher.transport.sent:
                break
            await asyncio.sleep(0.02)
    finally:
        await dispatcher.stop()
    assert len(dispatcher.transport.sent) == 1
    assert (await dispatcher.get_queue_stats())["sent"] == 1


class ReleasingTransport(DummyTransport):
    def __init__(self):
        super().__init__()
        self.released = 0

    async def release(self):
        self.released += 1


@pytest.mark.asyncio
async def test_start_requeues_messages_left_processing(tmp_path):
    persistence = Persistence(str(tmp_path / "queue.db"))
    await persistence.init_db()
    await persistence.insert_message(
        {
            "id": "stuck",
            "to": "a@example.com",
            "subject": "s",
            "content": "c",
            "priority": 2,
            "scheduled_at": 0,
            "max_retries": 3,
        }
    )
    assert await persistence.mark_processing("stuck") is True

    transport = DummyTransport()
    dispatcher, _ = await make_dispatcher(tmp_path, transport=transport)
    assert (await dispatcher.get_queue_stats())["processing"] == 1

    await dispatcher.start()
    stats = await dispatcher.get_queue_stats()
    assert stats["processing"] == 0
    assert stats["pending"] == 1

    assert await dispatcher.process_queue() == 1
    assert transport.sent == [("a@example.com", "s", "c")]
    assert (await dispatcher.get_message("stuck")).status is MessageStatus.SENT
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_failing_message_does_not_block_the_rest_of_the_batch(tmp_path):
    transport = DummyTransport()
    transport.failures = [MailTransportError("mailbox full", 452)]
    dispatcher, _ = await make_dispatcher(tmp_path, transport=transport)
    bad_id = await dispatcher.enqueue(to="bad@example.com", subject="s", content="c", priority="urgent")
    good_id = await dispatcher.enqueue(to="good@example.com", subject="s", content="c")

    assert await dispatcher.process_queue() == 2
    assert [to for to, _, _ in transport.sent] == ["good@example.com"]
    assert (await dispatcher.get_message(bad_id)).status is MessageStatus.PENDING
    assert (await dispatcher.get_message(good_id)).status is MessageStatus.SENT
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_unexpected_template_store_error_takes_retry_path(tmp_path, monkeypatch):
    dispatcher, clock = await make_dispatcher(tmp_path)
    broken_id = await dispatcher.enqueue(to="a@example.com", subject="s", template_id="tpl", priority="high")
    plain_id = await dispatcher.enqueue(to="b@example.com", subject="s", content="c")

    async def broken_get_template(template_id):
        raise RuntimeError("template store offline")

    monkeypatch.setattr(dispatcher.templates, "get_template", broken_get_template)

    assert await dispatcher.process_queue() == 2
    message = await dispatcher.get_message(broken_id)
    assert message.status is MessageStatus.PENDING
    assert message.retry_count == 1
    assert message.last_error == "template store offline"
    assert message.scheduled_at == clock.now + compute_backoff_seconds(1)
    assert (await dispatcher.get_message(plain_id)).status is MessageStatus.SENT
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_unclaimed_messages_are_not_counted(tmp_path, monkeypatch):
    dispatcher, _ = await make_dispatcher(tmp_path)
    taken_id = await dispatcher.enqueue(to="taken@example.com", subject="s", content="c")
    await dispatcher.enqueue(to="free@example.com", subject="s", content="c")
    original = dispatcher.persistence.mark_processing

    async def mark_processing(msg_id):
        if msg_id == taken_id:
            return False
        return await original(msg_id)

    monkeypatch.setattr(dispatcher.persistence, "mark_processing", mark_processing)

    assert await dispatcher.process_queue() == 1
    assert [to for to, _, _ in dispatcher.transport.sent] == ["free@example.com"]


@pytest.mark.asyncio
async def test_cleanup_sent_rejects_negative_age(tmp_path):
    dispatcher, _ = await make_dispatcher(tmp_path)
    await dispatcher.enqueue(to="a@example.com", subject="s", content="c")
    await dispatcher.process_queue()

    with pytest.raises(ValueError):
        await dispatcher.cleanup_sent(older_than_days=-1)
    assert (await dispatcher.get_queue_stats())["sent"] == 1


@pytest.mark.asyncio
async def test_trigger_without_loop_releases_its_connection(tmp_path):
    transport = ReleasingTransport()
    dispatcher, _ = await make_dispatcher(tmp_path, transport=transport, urgent_trigger_delay=0.01)
    await dispatcher.enqueue(to="urgent@example.com", subject="s", content="c", priority="urgent")

    for _ in range(100):
        if transport.released:
            break
        await asyncio.sleep(0.02)
    assert transport.sent[0][0] == "urgent@example.com"
    assert transport.released == 1
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_trigger_wakes_running_loop(tmp_path):
    transport = ReleasingTransport()
    dispatcher, _ = await make_dispatcher(
        tmp_path, transport=transport, test_mode=False, interval=3600, urgent_trigger_delay=0.01
    )
    await dispatcher.start()
    try:
        await asyncio.sleep(0.05)
        await dispatcher.enqueue(to="urgent@example.com", subject="s", content="c", priority="urgent")
        for _ in range(100):
            if transport.sent:
                break
            await asyncio.sleep(0.02)
    finally:
        await dispatcher.stop()
    assert [to for to, _, _ in transport.sent] == ["urgent@example.com"]
    assert transport.released == 0
