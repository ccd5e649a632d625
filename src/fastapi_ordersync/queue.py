"""In-process retry queue for webhook reprocessing and outbound email.

The queue is not durable: pending retries live in memory and are lost on
restart. Items that exhaust their retries can be persisted through an
optional dead-letter store.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from fastapi_ordersync.classifier import classify, is_connection_error
from fastapi_ordersync.metrics import (
    OUTCOME_DEFERRED,
    OUTCOME_FAILED,
    OUTCOME_RETRY,
    OUTCOME_SUCCESS,
    MetricsSink,
)
from fastapi_ordersync.retry import compute_ladder_delay

if TYPE_CHECKING:
    from fastapi_ordersync.config import OrderSyncConfig
    from fastapi_ordersync.emails import EmailMessage
    from fastapi_ordersync.protocols import (
        DeadLetterStore,
        EmailSender,
        OrderStore,
        WebhookPayloadProcessor,
    )

logger = logging.getLogger(__name__)

EMAIL_METRIC = "email"


class ProcessingOutcome(StrEnum):
    PROCESSED = "processed"
    QUEUED = "queued"
    FAILED = "failed"


def webhook_order_id(payload: dict[str, Any], event_type: str) -> str | None:
    """Provider order id a webhook refers to, or None when it names none.

    Order events carry it as ``data.id``; payment and refund events nest
    it in the payment or refund object.
    """
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    if event_type.startswith("order."):
        return data.get("id")
    resource = event_type.partition(".")[0]
    if resource not in ("payment", "refund"):
        return None
    obj = (data.get("object") or {}).get(resource) or {}
    return obj.get("order_id")


class ConcurrencyLimiter:
    """Counter bounding how many webhooks are processed at once.

    Increments and decrements happen between awaits, so the event loop
    makes them atomic with respect to other tasks.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("Concurrency limit must be at least 1")
        self.limit = limit
        self.active = 0
        self.peak = 0

    @property
    def full(self) -> bool:
        return self.active >= self.limit

    def try_acquire(self) -> bool:
        if self.full:
            return False
        self.active += 1
        self.peak = max(self.peak, self.active)
        return True

    def release(self) -> None:
        if self.active <= 0:
            raise RuntimeError("ConcurrencyLimiter released more times than acquired")
        self.active -= 1


_sequence = itertools.count()


@dataclass
class WebhookQueueItem:
    payload: dict[str, Any]
    event_type: str
    event_id: str | None
    order_id: str | None = None
    retry_count: int = 0
    max_retries: int = 4
    next_attempt: float = 0.0
    last_error: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class EmailQueueItem:
    message: EmailMessage
    retry_count: int = 0
    max_retries: int = 3
    next_attempt: float = 0.0
    last_error: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    sequence: int = field(default_factory=lambda: next(_sequence))

    @property
    def priority(self) -> int:
        return self.message.priority


def _is_rate_limit_error(error: BaseException) -> bool:
    message = str(error).lower()
    return "rate_limit" in message or "rate limit" in message


class ProcessingQueue:
    """Priority-ordered, delayed retry scheduler.

    Webhooks always run before emails. Ready webhooks are dispatched as
    tasks while the limiter has room and deferred otherwise. Emails are
    sent one at a time, spaced by ``config.email_spacing_seconds``
    between send attempts.
    """

    def __init__(
        self,
        processor: WebhookPayloadProcessor,
        config: OrderSyncConfig,
        *,
        store: OrderStore | None = None,
        email_sender: EmailSender | None = None,
        metrics: MetricsSink | None = None,
        dead_letter_store: DeadLetterStore | None = None,
        limiter: ConcurrencyLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.processor = processor
        self.config = config
        self.store = store
        self.email_sender = email_sender
        self.metrics = metrics or MetricsSink(environment=config.environment)
        self.dead_letter_store = dead_letter_store
        self.limiter = limiter or ConcurrencyLimiter(config.webhook_max_concurrency)
        self._clock = clock
        self._sleep = sleep
        self._webhooks: list[WebhookQueueItem] = []
        self._emails: list[EmailQueueItem] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._loop_task: asyncio.Task[None] | None = None
        self._last_email_attempt: float | None = None
        self.last_email_sent: float | None = None

    @property
    def is_processing(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def webhook_items(self) -> list[WebhookQueueItem]:
        return list(self._webhooks)

    @property
    def email_items(self) -> list[EmailQueueItem]:
        return list(self._emails)

    def enqueue_webhook(
        self,
        payload: dict[str, Any],
        event_type: str,
        event_id: str | None,
        order_id: str | None = None,
        delay: float = 0.0,
    ) -> WebhookQueueItem:
        item = WebhookQueueItem(
            payload=payload,
            event_type=event_type,
            event_id=event_id,
            order_id=order_id,
            max_retries=self.config.webhook_max_retries,
            next_attempt=self._clock() + delay,
        )
        self._webhooks.append(item)
        logger.info(
            "Queued webhook %s (%s) to run in %.1fs", event_type, event_id, delay
        )
        self._ensure_running()
        return item

    def enqueue_email(self, message: EmailMessage) -> EmailQueueItem | None:
        if self.email_sender is None:
            logger.warning(
                "No email sender configured, dropping email %r to %s",
                message.subject,
                message.to,
            )
            return None
        item = EmailQueueItem(
            message=message,
            max_retries=self.config.email_max_retries,
            next_attempt=self._clock(),
        )
        self._emails.append(item)
        logger.info("Queued email %r to %s", message.subject, message.to)
        self._ensure_running()
        return item

    def _ensure_running(self) -> None:
        if not self.is_processing:
            self._loop_task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        logger.info("Processing queue started")
        try:
            while self._webhooks or self._emails or self._tasks:
                if await self.process_next():
                    await self._sleep(self.config.queue_tick_seconds)
                else:
                    await self._sleep(self._idle_delay())
        finally:
            self._loop_task = None
            logger.info("Processing queue stopped")

    async def process_next(self) -> bool:
        """Run one scheduling step. Returns False when nothing was ready."""
        now = self._clock()

        item = next((w for w in self._webhooks if w.next_attempt <= now), None)
        if item is not None:
            self._dispatch_webhook(item, now)
            return True

        email = self._next_ready_email(now)
        sender = self.email_sender
        if email is not None and sender is not None and self._email_gate_open(now):
            await self._send_email(sender, email)
            return True

        return False

    def _idle_delay(self) -> float:
        now = self._clock()
        wake_times = [item.next_attempt - now for item in self._webhooks]
        if self._emails:
            earliest = min(item.next_attempt for item in self._emails) - now
            if self._last_email_attempt is not None:
                gap = self.config.email_spacing_seconds - (
                    now - self._last_email_attempt
                )
                earliest = max(earliest, gap)
            wake_times.append(earliest)
        delay = self.config.queue_idle_seconds
        if wake_times:
            delay = min(delay, max(min(wake_times), 0.0))
        return delay

    def _dispatch_webhook(self, item: WebhookQueueItem, now: float) -> None:
        if not self.limiter.try_acquire():
            item.next_attempt = now + self.config.webhook_concurrency_defer_seconds
            logger.info(
                "Webhook processing at capacity (%d/%d), deferring %s",
                self.limiter.active,
                self.limiter.limit,
                item.event_type,
            )
            self.metrics.record(item.event_type, OUTCOME_DEFERRED)
            return
        self._webhooks.remove(item)
        task = asyncio.get_running_loop().create_task(self._process_webhook(item))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process_webhook(self, item: WebhookQueueItem) -> None:
        started = self._clock()
        logger.info(
            "Processing queued webhook %s (attempt %d/%d)",
            item.event_type,
            item.retry_count + 1,
            item.max_retries + 1,
        )
        try:
            await asyncio.wait_for(
                self.processor.process(item.payload),
                timeout=self.config.webhook_queued_timeout_seconds,
            )
        except Exception as exc:
            await self._handle_webhook_failure(item, exc)
        else:
            self.metrics.record(
                item.event_type, OUTCOME_SUCCESS, self._clock() - started
            )
            logger.info(
                "Queued webhook %s (%s) processed", item.event_type, item.event_id
            )
        finally:
            self.limiter.release()

    async def _handle_webhook_failure(
        self, item: WebhookQueueItem, exc: Exception
    ) -> None:
        item.last_error = str(exc)
        classification = classify(exc, item.event_type)
        if is_connection_error(exc):
            await self._reconnect()

        if not classification.can_retry:
            logger.error(
                "Webhook %s (%s) failed with non-retryable %s error: %s",
                item.event_type,
                item.event_id,
                classification.type,
                exc,
            )
            await self._fail_permanently(item)
            return

        if item.retry_count >= item.max_retries:
            logger.error(
                "Webhook %s (%s) permanently failed after %d retries: %s",
                item.event_type,
                item.event_id,
                item.max_retries,
                exc,
            )
            await self._fail_permanently(item)
            return

        item.retry_count += 1
        delay = compute_ladder_delay(item.retry_count, self.config.webhook_retry_delays)
        item.next_attempt = self._clock() + delay
        self._webhooks.append(item)
        self.metrics.record(item.event_type, OUTCOME_RETRY)
        logger.warning(
            "Webhook %s scheduled for retry %d/%d in %.1fs (%s)",
            item.event_type,
            item.retry_count,
            item.max_retries,
            delay,
            classification.type,
        )

    async def _fail_permanently(self, item: WebhookQueueItem) -> None:
        self.metrics.record(item.event_type, OUTCOME_FAILED)
        self.metrics.evaluate_alerts()
        if self.dead_letter_store is None:
            return
        try:
            await self.dead_letter_store.store(
                event_type=item.event_type,
                event_id=item.event_id,
                order_id=item.order_id,
                payload=item.payload,
                error=item.last_error or "",
                attempts=item.retry_count + 1,
            )
        except Exception:
            logger.exception(
                "Could not persist failed webhook %s to dead-letter store",
                item.event_id,
            )

    async def _reconnect(self) -> None:
        if self.store is None:
            return
        try:
            await self.store.reconnect()
        except Exception:
            logger.exception("Store reconnect failed")

    def _next_ready_email(self, now: float) -> EmailQueueItem | None:
        ready = [item for item in self._emails if item.next_attempt <= now]
        if not ready:
            return None
        return min(ready, key=lambda item: (-item.priority, item.sequence))

    def _email_gate_open(self, now: float) -> bool:
        if self._last_email_attempt is None:
            return True
        return now - self._last_email_attempt >= self.config.email_spacing_seconds

    async def _send_email(self, sender: EmailSender, item: EmailQueueItem) -> None:
        message = item.message
        self._last_email_attempt = self._clock()
        try:
            await sender.send(message)
        except Exception as exc:
            item.last_error = str(exc)
            if item.retry_count < item.max_retries:
                item.retry_count += 1
                delay = (
                    self.config.email_rate_limited_retry_delay_seconds
                    if _is_rate_limit_error(exc)
                    else self.config.email_retry_delay_seconds
                )
                item.next_attempt = self._clock() + delay
                self.metrics.record(EMAIL_METRIC, OUTCOME_RETRY)
                logger.warning(
                    "Email %r scheduled for retry %d/%d in %.0fs: %s",
                    message.subject,
                    item.retry_count,
                    item.max_retries,
                    delay,
                    exc,
                )
            else:
                self._emails.remove(item)
                self.metrics.record(EMAIL_METRIC, OUTCOME_FAILED)
                logger.error(
                    "Email %r permanently failed after %d retries: %s",
                    message.subject,
                    item.max_retries,
                    exc,
                )
            return
        self._emails.remove(item)
        self.last_email_sent = self._clock()
        self.metrics.record(EMAIL_METRIC, OUTCOME_SUCCESS)
        logger.info("Queued email %r sent to %s", message.subject, message.to)

    async def handle_immediately(
        self,
        payload: dict[str, Any],
        *,
        event_type: str | None = None,
        event_id: str | None = None,
    ) -> ProcessingOutcome:
        """Process a freshly received webhook on the request path.

        Never raises: failures are either queued for retry or recorded as
        permanent, so the sender always gets a prompt acknowledgement.
        ``event_type`` and ``event_id`` default to the payload's ``type``
        and ``event_id`` fields.
        """
        event_type = event_type or str(payload.get("type") or "unknown")
        event_id = event_id or payload.get("event_id")
        order_id = webhook_order_id(payload, event_type)

        if not self.limiter.try_acquire():
            logger.info(
                "Immediate webhook processing at capacity, queuing %s", event_type
            )
            self.metrics.record(event_type, OUTCOME_DEFERRED)
            self.enqueue_webhook(
                payload,
                event_type,
                event_id,
                order_id,
                delay=self.config.webhook_concurrency_defer_seconds,
            )
            return ProcessingOutcome.QUEUED

        started = self._clock()
        try:
            await asyncio.wait_for(
                self.processor.process(payload),
                timeout=self.config.webhook_immediate_timeout_seconds,
            )
        except Exception as exc:
            classification = classify(exc, event_type)
            logger.error(
                "Webhook processing failed for %s (%s): %s",
                event_type,
                event_id,
                exc,
            )
            if is_connection_error(exc):
                await self._reconnect()
            if classification.can_retry:
                self.metrics.record(event_type, OUTCOME_RETRY)
                self.enqueue_webhook(
                    payload,
                    event_type,
                    event_id,
                    order_id,
                    delay=classification.suggested_delay,
                )
                return ProcessingOutcome.QUEUED
            item = WebhookQueueItem(
                payload=payload,
                event_type=event_type,
                event_id=event_id,
                order_id=order_id,
                last_error=str(exc),
            )
            await self._fail_permanently(item)
            return ProcessingOutcome.FAILED
        finally:
            self.limiter.release()

        self.metrics.record(event_type, OUTCOME_SUCCESS, self._clock() - started)
        return ProcessingOutcome.PROCESSED

    def status(self) -> dict[str, Any]:
        return {
            "webhook_queue": len(self._webhooks),
            "email_queue": len(self._emails),
            "is_processing": self.is_processing,
            "active_webhooks": self.limiter.active,
            "peak_webhooks": self.limiter.peak,
            "last_email_sent": self.last_email_sent,
        }

    async def drain(self) -> None:
        """Wait until both queues are empty and no webhook is in flight."""
        while self._loop_task is not None:
            await self._loop_task

    async def close(self) -> None:
        """Cancel the processing loop and in-flight webhook tasks."""
        pending = list(self._tasks)
        if self._loop_task is not None:
            pending.append(self._loop_task)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._loop_task = None
        if self._webhooks or self._emails:
            logger.warning(
                "Processing queue closed with %d webhooks and %d emails pending",
                len(self._webhooks),
                len(self._emails),
            )
