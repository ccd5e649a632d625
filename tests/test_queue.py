"""Processing queue tests."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FakeClock, RecordingDeadLetterStore, RecordingSender
from fastapi_ordersync.config import OrderSyncConfig
from fastapi_ordersync.emails import EmailMessage
from fastapi_ordersync.exceptions import (
    EmailSendError,
    OrderNotFoundError,
    UnhandledWebhookTypeError,
)
from fastapi_ordersync.metrics import MetricsSink
from fastapi_ordersync.queue import (
    ConcurrencyLimiter,
    ProcessingOutcome,
    ProcessingQueue,
    webhook_order_id,
)


class ScriptedProcessor:
    """Raises the scripted errors in order, then succeeds."""

    def __init__(
        self,
        clock,
        errors: list[Exception] | None = None,
        *,
        always: Exception | None = None,
    ) -> None:
        self.clock = clock
        self.errors = list(errors or [])
        self.always = always
        self.calls: list[float] = []
        self.payloads: list[dict] = []

    async def process(self, payload: dict) -> None:
        self.calls.append(self.clock())
        self.payloads.append(payload)
        if self.always is not None:
            raise self.always
        if self.errors:
            raise self.errors.pop(0)


def _payload(event_type: str = "order.created", event_id: str = "evt-1") -> dict:
    return {"type": event_type, "event_id": event_id, "data": {"id": "ORD-1"}}


@pytest.fixture()
def fake_config() -> OrderSyncConfig:
    return OrderSyncConfig(queue_tick_seconds=0.0, queue_idle_seconds=0.5)


def _queue(processor, config, clock, **kwargs) -> ProcessingQueue:
    return ProcessingQueue(
        processor, config, clock=clock, sleep=clock.sleep, **kwargs
    )


class TestConcurrencyLimiter:
    def test_acquire_until_full(self) -> None:
        limiter = ConcurrencyLimiter(2)
        assert limiter.try_acquire()
        assert limiter.try_acquire()
        assert not limiter.try_acquire()
        assert limiter.full
        limiter.release()
        assert limiter.active == 1
        assert limiter.peak == 2

    def test_over_release_raises(self) -> None:
        with pytest.raises(RuntimeError):
            ConcurrencyLimiter(1).release()

    def test_limit_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)


class TestWebhookRetries:
    async def test_backoff_follows_ladder_then_dead_letters(
        self, fake_config
    ) -> None:
        clock = FakeClock()
        processor = ScriptedProcessor(clock, always=RuntimeError("boom"))
        dead_letters = RecordingDeadLetterStore()
        metrics = MetricsSink(clock=clock)
        queue = _queue(
            processor,
            fake_config,
            clock,
            metrics=metrics,
            dead_letter_store=dead_letters,
        )

        queue.enqueue_webhook(_payload(), "order.created", "evt-1", "ORD-1")
        await queue.drain()

        assert len(processor.calls) == 5
        gaps = [b - a for a, b in zip(processor.calls, processor.calls[1:])]
        assert gaps == pytest.approx([5.0, 20.0, 90.0, 300.0], abs=0.6)
        assert queue.webhook_items == []
        assert dead_letters.entries[0]["attempts"] == 5
        assert dead_letters.entries[0]["error"] == "boom"
        assert dead_letters.entries[0]["order_id"] == "ORD-1"
        assert metrics.count("order.created", "retry") == 4
        assert metrics.count("order.created", "failed") == 1

    async def test_success_after_retry(self, fake_config) -> None:
        clock = FakeClock()
        processor = ScriptedProcessor(clock, [RuntimeError("flaky")])
        metrics = MetricsSink(clock=clock)
        queue = _queue(processor, fake_config, clock, metrics=metrics)

        queue.enqueue_webhook(_payload(), "order.created", "evt-1")
        await queue.drain()

        assert len(processor.calls) == 2
        assert metrics.count("order.created", "success") == 1
        assert queue.limiter.active == 0

    async def test_validation_error_is_not_retried(self, fake_config) -> None:
        clock = FakeClock()
        processor = ScriptedProcessor(
            clock, always=UnhandledWebhookTypeError("inventory.count.updated")
        )
        dead_letters = RecordingDeadLetterStore()
        queue = _queue(processor, fake_config, clock, dead_letter_store=dead_letters)

        queue.enqueue_webhook(_payload(), "inventory.count.updated", "evt-1")
        await queue.drain()

        assert len(processor.calls) == 1
        assert dead_letters.entries[0]["attempts"] == 1

    async def test_connection_error_triggers_reconnect(self, fake_config) -> None:
        clock = FakeClock()
        processor = ScriptedProcessor(clock, [ConnectionError("connection refused")])
        store = AsyncMock()
        queue = _queue(processor, fake_config, clock, store=store)

        queue.enqueue_webhook(_payload(), "order.created", "evt-1")
        await queue.drain()

        store.reconnect.assert_awaited_once()
        assert len(processor.calls) == 2

    async def test_failed_reconnect_does_not_stop_retries(self, fake_config) -> None:
        clock = FakeClock()
        processor = ScriptedProcessor(clock, [ConnectionError("connection refused")])
        store = AsyncMock()
        store.reconnect.side_effect = RuntimeError("still down")
        queue = _queue(processor, fake_config, clock, store=store)

        queue.enqueue_webhook(_payload(), "order.created", "evt-1")
        await queue.drain()

        assert len(processor.calls) == 2

    async def test_dead_letter_store_failure_is_logged(self, fake_config) -> None:
        clock = FakeClock()
        processor = ScriptedProcessor(clock, always=UnhandledWebhookTypeError("x"))
        dead_letters = AsyncMock()
        dead_letters.store.side_effect = RuntimeError("db down")
        queue = _queue(processor, fake_config, clock, dead_letter_store=dead_letters)

        queue.enqueue_webhook(_payload(), "x", "evt-1")
        await queue.drain()

        dead_letters.store.assert_awaited_once()


class TestConcurrency:
    async def test_never_more_than_three_in_flight(self) -> None:
        config = OrderSyncConfig(
            queue_tick_seconds=0.0,
            queue_idle_seconds=0.01,
            webhook_concurrency_defer_seconds=0.01,
        )
        in_flight = 0
        observed_peak = 0
        processed: list[str] = []

        class SlowProcessor:
            async def process(self, payload: dict) -> None:
                nonlocal in_flight, observed_peak
                in_flight += 1
                observed_peak = max(observed_peak, in_flight)
                await asyncio.sleep(0.02)
                in_flight -= 1
                processed.append(payload["event_id"])

        metrics = MetricsSink()
        queue = ProcessingQueue(SlowProcessor(), config, metrics=metrics)
        for index in range(10):
            queue.enqueue_webhook(
                _payload(event_id=f"evt-{index}"), "order.created", f"evt-{index}"
            )
        await asyncio.wait_for(queue.drain(), timeout=10)

        assert sorted(processed) == sorted(f"evt-{i}" for i in range(10))
        assert observed_peak <= 3
        assert queue.limiter.peak <= 3
        assert metrics.count("order.created", "deferred") > 0

    async def test_shared_limiter_bounds_both_queues(self, fake_config) -> None:
        clock = FakeClock()
        limiter = ConcurrencyLimiter(1)
        limiter.try_acquire()
        queue = _queue(ScriptedProcessor(clock), fake_config, clock, limiter=limiter)

        outcome = await queue.handle_immediately(_payload())

        assert outcome is ProcessingOutcome.QUEUED
        [item] = queue.webhook_items
        assert item.next_attempt == clock.now + 2.0
        limiter.release()
        await queue.close()


class TestHandleImmediately:
    async def test_success(self, fake_config) -> None:
        clock = FakeClock()
        processor = ScriptedProcessor(clock)
        metrics = MetricsSink(clock=clock)
        queue = _queue(processor, fake_config, clock, metrics=metrics)

        outcome = await queue.handle_immediately(_payload())

        assert outcome is ProcessingOutcome.PROCESSED
        assert metrics.count("order.created", "success") == 1
        assert queue.limiter.active == 0
        assert not queue.is_processing

    async def test_retryable_failure_is_queued_with_suggested_delay(
        self, fake_config
    ) -> None:
        clock = FakeClock()
        processor = ScriptedProcessor(clock, [OrderNotFoundError("ORD-1")])
        queue = _queue(processor, fake_config, clock)

        outcome = await queue.handle_immediately(_payload("order.updated"))

        assert outcome is ProcessingOutcome.QUEUED
        [item] = queue.webhook_items
        assert item.event_type == "order.updated"
        assert item.order_id == "ORD-1"
        assert item.next_attempt == clock.now + 10.0

        await queue.drain()
        assert len(processor.calls) == 2
        assert processor.calls[1] - processor.calls[0] == pytest.approx(10.0, abs=0.6)

    async def test_non_retryable_failure(self, fake_config) -> None:
        clock = FakeClock()
        processor = ScriptedProcessor(
            clock, always=UnhandledWebhookTypeError("catalog.version.updated")
        )
        dead_letters = RecordingDeadLetterStore()
        queue = _queue(processor, fake_config, clock, dead_letter_store=dead_letters)

        outcome = await queue.handle_immediately(_payload("catalog.version.updated"))

        assert outcome is ProcessingOutcome.FAILED
        assert queue.webhook_items == []
        assert dead_letters.entries[0]["event_type"] == "catalog.version.updated"

    async def test_payment_failure_records_the_payments_order(
        self, fake_config
    ) -> None:
        clock = FakeClock()
        processor = ScriptedProcessor(
            clock, always=UnhandledWebhookTypeError("payment.updated")
        )
        dead_letters = RecordingDeadLetterStore()
        queue = _queue(processor, fake_config, clock, dead_letter_store=dead_letters)
        payload = {
            "type": "payment.updated",
            "event_id": "evt-1",
            "data": {
                "id": "PAY-1",
                "object": {"payment": {"id": "PAY-1", "order_id": "ORD-7"}},
            },
        }

        outcome = await queue.handle_immediately(payload)

        assert outcome is ProcessingOutcome.FAILED
        assert dead_letters.entries[0]["order_id"] == "ORD-7"

    async def test_overrides_event_type_and_id(self, fake_config) -> None:
        clock = FakeClock()
        processor = ScriptedProcessor(clock, [RuntimeError("boom")])
        queue = _queue(processor, fake_config, clock)

        await queue.handle_immediately(
            {"event": "track_updated", "data": {}},
            event_type="shippo.track_updated",
            event_id="obj-1",
        )

        [item] = queue.webhook_items
        assert item.event_type == "shippo.track_updated"
        assert item.event_id == "obj-1"
        await queue.close()

    async def test_timeout_is_retried(self) -> None:
        config = OrderSyncConfig(webhook_immediate_timeout_seconds=0.01)

        class HangingProcessor:
            async def process(self, payload: dict) -> None:
                await asyncio.sleep(1)

        queue = ProcessingQueue(HangingProcessor(), config)
        outcome = await queue.handle_immediately(_payload())

        assert outcome is ProcessingOutcome.QUEUED
        assert queue.webhook_items[0].next_attempt > 0
        await queue.close()


class TestWebhookOrderId:
    def test_order_event_uses_data_id(self) -> None:
        assert webhook_order_id(_payload("order.updated"), "order.updated") == "ORD-1"

    def test_refund_event_uses_refund_order(self) -> None:
        payload = {
            "data": {"id": "REF-1", "object": {"refund": {"order_id": "ORD-2"}}}
        }
        assert webhook_order_id(payload, "refund.created") == "ORD-2"

    def test_payment_without_order(self) -> None:
        payload = {"data": {"id": "PAY-1", "object": {"payment": {"id": "PAY-1"}}}}
        assert webhook_order_id(payload, "payment.created") is None

    def test_other_events_name_no_order(self) -> None:
        payload = {"event": "track_updated", "data": {"object_id": "obj-1"}}
        assert webhook_order_id(payload, "shippo.track_updated") is None
        assert webhook_order_id({"data": None}, "order.created") is None


class TestEmail:
    async def test_sends_are_spaced(self, fake_config) -> None:
        clock = FakeClock()
        sent_at: list[float] = []

        class TimedSender:
            async def send(self, message) -> str:
                sent_at.append(clock())
                return "id"

        queue = _queue(
            ScriptedProcessor(clock), fake_config, clock, email_sender=TimedSender()
        )
        for index in range(3):
            queue.enqueue_email(EmailMessage("a@example.com", f"s{index}", "<p/>"))
        await queue.drain()

        assert len(sent_at) == 3
        gaps = [b - a for a, b in zip(sent_at, sent_at[1:])]
        assert all(gap >= 2.0 - 1e-9 for gap in gaps)
        assert queue.last_email_sent == sent_at[-1]

    async def test_higher_priority_first(self, fake_config) -> None:
        clock = FakeClock()
        sender = RecordingSender()
        queue = _queue(
            ScriptedProcessor(clock), fake_config, clock, email_sender=sender
        )

        queue.enqueue_email(EmailMessage("a@example.com", "routine", "<p/>"))
        queue.enqueue_email(EmailMessage("a@example.com", "urgent", "<p/>", priority=1))
        await queue.drain()

        assert [m.subject for m in sender.sent] == ["urgent", "routine"]

    async def test_webhooks_run_before_emails(self, fake_config) -> None:
        clock = FakeClock()
        order: list[str] = []

        class Processor:
            async def process(self, payload: dict) -> None:
                order.append("webhook")

        class Sender:
            async def send(self, message) -> str:
                order.append("email")
                return "id"

        queue = _queue(Processor(), fake_config, clock, email_sender=Sender())
        queue.enqueue_email(EmailMessage("a@example.com", "s", "<p/>"))
        queue.enqueue_webhook(_payload(), "order.created", "evt-1")
        await queue.drain()

        assert order == ["webhook", "email"]

    async def test_rate_limited_send_waits_longer(self, fake_config) -> None:
        clock = FakeClock()
        attempts: list[float] = []
        failures = [EmailSendError("rate_limit_exceeded: slow down")]

        class Sender:
            async def send(self, message) -> str:
                attempts.append(clock())
                if failures:
                    raise failures.pop(0)
                return "id"

        queue = _queue(
            ScriptedProcessor(clock), fake_config, clock, email_sender=Sender()
        )
        queue.enqueue_email(EmailMessage("a@example.com", "s", "<p/>"))
        await queue.drain()

        assert attempts[1] - attempts[0] == pytest.approx(60.0, abs=0.6)

    async def test_ordinary_failure_waits_thirty_seconds(self, fake_config) -> None:
        clock = FakeClock()
        attempts: list[float] = []
        failures = [EmailSendError("Email provider returned 500")]

        class Sender:
            async def send(self, message) -> str:
                attempts.append(clock())
                if failures:
                    raise failures.pop(0)
                return "id"

        queue = _queue(
            ScriptedProcessor(clock), fake_config, clock, email_sender=Sender()
        )
        queue.enqueue_email(EmailMessage("a@example.com", "s", "<p/>"))
        await queue.drain()

        assert attempts[1] - attempts[0] == pytest.approx(30.0, abs=0.6)

    async def test_gives_up_after_max_retries(self, fake_config) -> None:
        clock = FakeClock()
        sender = RecordingSender([EmailSendError("down")] * 10)
        metrics = MetricsSink(clock=clock)
        queue = _queue(
            ScriptedProcessor(clock),
            fake_config,
            clock,
            email_sender=sender,
            metrics=metrics,
        )
        queue.enqueue_email(EmailMessage("a@example.com", "s", "<p/>"))
        await queue.drain()

        assert len(sender.attempts) == 4
        assert queue.email_items == []
        assert metrics.count("email", "failed") == 1

    async def test_no_sender_drops_email(self, fake_config) -> None:
        clock = FakeClock()
        queue = _queue(ScriptedProcessor(clock), fake_config, clock)

        assert queue.enqueue_email(EmailMessage("a@example.com", "s", "<p/>")) is None
        assert queue.email_items == []

    async def test_email_waits_while_sender_is_unset(self, fake_config) -> None:
        clock = FakeClock()
        sender = RecordingSender()
        queue = _queue(
            ScriptedProcessor(clock), fake_config, clock, email_sender=sender
        )
        queue.enqueue_email(EmailMessage("a@example.com", "s", "<p/>"))
        queue.email_sender = None

        assert await queue.process_next() is False
        assert len(queue.email_items) == 1

        queue.email_sender = sender
        assert await queue.process_next() is True
        assert [m.subject for m in sender.sent] == ["s"]
        await queue.close()


async def test_status_reports_queue_depths(fake_config) -> None:
    clock = FakeClock()
    queue = _queue(
        ScriptedProcessor(clock), fake_config, clock, email_sender=RecordingSender()
    )
    queue.enqueue_webhook(_payload(), "order.created", "evt-1", delay=60)
    queue.enqueue_email(EmailMessage("a@example.com", "s", "<p/>"))

    status = queue.status()
    assert status["webhook_queue"] == 1
    assert status["email_queue"] == 1
    assert status["is_processing"] is True
    assert status["active_webhooks"] == 0
    await queue.close()
    assert not queue.is_processing
