"""Shipping label purchase with rate refresh and bounded retry.

The carrier's rates expire. When a purchase fails with an expired rate,
:class:`LabelService` re-quotes the shipment, picks the closest rate and
tries again, never calling the carrier more than ``label_max_attempts``
times for one order. :class:`LabelCreationQueue` retries failed
purchases later with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from fastapi_ordersync.addresses import (
    DEFAULT_ADDRESS_SOURCES,
    AddressSource,
    extract_shipping_address,
)
from fastapi_ordersync.carrier import CarrierRate
from fastapi_ordersync.exceptions import (
    CarrierError,
    LabelPurchaseError,
    OrderNotFoundError,
    RateExpiredError,
)
from fastapi_ordersync.handlers import OrderStatus, is_status_regression
from fastapi_ordersync.metrics import OUTCOME_FAILED, OUTCOME_RETRY, OUTCOME_SUCCESS
from fastapi_ordersync.retry import compute_backoff_delay

if TYPE_CHECKING:
    from fastapi_ordersync.config import OrderSyncConfig
    from fastapi_ordersync.metrics import MetricsSink
    from fastapi_ordersync.protocols import CarrierClient, OrderStore

logger = logging.getLogger(__name__)

LABEL_METRIC = "label"

RATE_EXPIRED_PATTERNS = (
    "rate expired",
    "rate_expired",
    "has expired",
    "input validation failed",
)

DEFAULT_PARCEL = {
    "length": "10",
    "width": "8",
    "height": "4",
    "distance_unit": "in",
    "mass_unit": "lb",
}


class LabelErrorCode(StrEnum):
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    RATE_REFRESH_EXHAUSTED = "RATE_REFRESH_EXHAUSTED"
    RATE_REFRESH_FAILED = "RATE_REFRESH_FAILED"
    NO_RATE = "NO_RATE"
    CARRIER_ERROR = "CARRIER_ERROR"
    UNKNOWN = "UNKNOWN"


@dataclass
class LabelResult:
    success: bool
    label_url: str | None = None
    tracking_number: str | None = None
    error: str | None = None
    error_code: str | None = None
    retry_attempt: int | None = None


def is_rate_expired_error(error: BaseException) -> bool:
    if isinstance(error, RateExpiredError):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in RATE_EXPIRED_PATTERNS)


def find_best_matching_rate(
    rates: Sequence[CarrierRate], original_carrier: str | None = None
) -> CarrierRate:
    """Prefer a rate from the carrier of the expired rate, else the first."""
    if not rates:
        raise CarrierError("No rates available")
    if original_carrier:
        wanted = original_carrier.lower()
        for rate in rates:
            if rate.carrier.lower() == wanted:
                return rate
    return rates[0]


def build_parcels(order: Any) -> list[dict[str, Any]]:
    """One parcel weighing the sum of the item weights (1 lb minimum)."""
    weight = sum(
        (Decimal(item.weight_lb or 0) * (item.quantity or 1) for item in order.items),
        Decimal("0"),
    )
    return [{**DEFAULT_PARCEL, "weight": str(max(weight, Decimal("1")))}]


def _error_code(error: BaseException) -> str:
    if isinstance(error, CarrierError):
        return error.code or LabelErrorCode.CARRIER_ERROR
    return LabelErrorCode.UNKNOWN


class LabelService:
    def __init__(
        self,
        store: OrderStore,
        carrier: CarrierClient,
        config: OrderSyncConfig,
        *,
        address_sources: Sequence[AddressSource] = DEFAULT_ADDRESS_SOURCES,
        metrics: MetricsSink | None = None,
    ) -> None:
        self.store = store
        self.carrier = carrier
        self.config = config
        self.address_sources = address_sources
        self.metrics = metrics

    @property
    def max_attempts(self) -> int:
        return self.config.label_max_attempts

    def _record(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record(LABEL_METRIC, outcome)

    async def purchase_label(
        self, order_id: str, rate_id: str | None = None
    ) -> LabelResult:
        """Buy a label for ``order_id``.

        Returns the stored label if the order already has one. Carrier
        and data errors come back as a failed :class:`LabelResult` and
        are recorded on the order.
        """
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        if order.label_url and order.tracking_number:
            logger.info("Order %s already has a label", order_id)
            return LabelResult(
                success=True,
                label_url=order.label_url,
                tracking_number=order.tracking_number,
                retry_attempt=order.retry_count,
            )

        if order.retry_count >= self.max_attempts:
            self._record(OUTCOME_FAILED)
            return LabelResult(
                success=False,
                error=(
                    f"Maximum retry attempts ({self.max_attempts}) exceeded "
                    f"for order {order_id}"
                ),
                error_code=LabelErrorCode.RETRY_EXHAUSTED,
                retry_attempt=order.retry_count,
            )

        rate_id = rate_id or order.shipping_rate_id
        if not rate_id:
            return LabelResult(
                success=False,
                error=f"Order {order_id} has no shipping rate",
                error_code=LabelErrorCode.NO_RATE,
            )

        try:
            return await self.attempt_label_creation(order, rate_id, order.retry_count)
        except Exception as exc:
            logger.error("Label purchase failed for order %s: %s", order_id, exc)
            self._record(OUTCOME_FAILED)
            await self.store.update_order(
                order_id,
                raw_data={
                    **(order.raw_data or {}),
                    "lastLabelError": str(exc),
                    "lastLabelErrorAt": datetime.now(tz=UTC).isoformat(),
                },
            )
            return LabelResult(
                success=False,
                error=str(exc),
                error_code=_error_code(exc),
                retry_attempt=order.retry_count + 1,
            )

    async def attempt_label_creation(
        self, order: Any, rate_id: str, attempt: int = 0
    ) -> LabelResult:
        """One carrier purchase; on an expired rate, refresh and recurse.

        ``retry_count`` is persisted before the carrier is called so an
        interrupted attempt still shows up on the order.
        """
        logger.info("Label attempt %d for order %s", attempt + 1, order.id)
        await self.store.update_order(
            order.id,
            retry_count=attempt + 1,
            last_retry_at=datetime.now(tz=UTC),
        )

        try:
            transaction = await self.carrier.create_transaction(
                rate_id, metadata=f"order_id={order.id}_attempt_{attempt + 1}"
            )
            if not (
                transaction.status == "SUCCESS"
                and transaction.label_url
                and transaction.tracking_number
            ):
                raise LabelPurchaseError(
                    ", ".join(transaction.messages)
                    or f"Transaction failed with status: {transaction.status}"
                )
        except Exception as exc:
            if is_rate_expired_error(exc):
                logger.warning("Rate expired for order %s, refreshing", order.id)
                return await self._handle_rate_expiration(order, attempt)
            raise

        fields: dict[str, Any] = {
            "tracking_number": transaction.tracking_number,
            "label_url": transaction.label_url,
            "label_created_at": datetime.now(tz=UTC),
            "shipping_rate_id": rate_id,
        }
        if not is_status_regression(order.status, OrderStatus.SHIPPING):
            fields["status"] = OrderStatus.SHIPPING
        await self.store.update_order(order.id, **fields)
        self._record(OUTCOME_SUCCESS)
        logger.info("Label purchased for order %s", order.id)
        return LabelResult(
            success=True,
            label_url=transaction.label_url,
            tracking_number=transaction.tracking_number,
            retry_attempt=attempt + 1,
        )

    async def _handle_rate_expiration(self, order: Any, attempt: int) -> LabelResult:
        if attempt + 1 >= self.max_attempts:
            logger.error(
                "Rate refresh limit reached for order %s after %d attempts",
                order.id,
                attempt + 1,
            )
            self._record(OUTCOME_FAILED)
            return LabelResult(
                success=False,
                error=(
                    f"Maximum rate refresh attempts ({self.max_attempts}) "
                    f"exceeded for order {order.id}"
                ),
                error_code=LabelErrorCode.RATE_REFRESH_EXHAUSTED,
                retry_attempt=attempt + 1,
            )

        try:
            address = extract_shipping_address(order, self.address_sources)
            rates = await self.carrier.get_rates(
                address_from=self.config.ship_from_address,
                address_to=address.to_carrier(),
                parcels=build_parcels(order),
            )
            best = find_best_matching_rate(rates, order.shipping_carrier)
            if not best.id:
                raise CarrierError(
                    f"Selected rate has no id (carrier {best.carrier or 'unknown'})"
                )
            await self.store.update_order(order.id, shipping_rate_id=best.id)
        except Exception as exc:
            logger.error("Rate refresh failed for order %s: %s", order.id, exc)
            self._record(OUTCOME_FAILED)
            return LabelResult(
                success=False,
                error=f"Rate refresh failed: {exc}",
                error_code=LabelErrorCode.RATE_REFRESH_FAILED,
                retry_attempt=attempt + 1,
            )

        logger.info(
            "Retrying order %s with rate %s (%s %s)",
            order.id,
            best.id,
            best.carrier,
            best.servicelevel,
        )
        self._record(OUTCOME_RETRY)
        return await self.attempt_label_creation(order, best.id, attempt + 1)


@dataclass
class LabelCreationJob:
    order_id: str
    rate_id: str
    attempt: int = 0
    last_error: str | None = None
    created_at: float = field(default_factory=time.monotonic)


class LabelCreationQueue:
    """Deferred label purchases, one job per order.

    A job becomes due ``base * multiplier**attempt`` seconds (capped)
    after it was queued. Jobs are dropped after ``label_max_attempts``.
    ``rate_id`` is the rate known when the job was queued; each attempt
    buys with the order's stored rate, which a rate refresh may have
    replaced.
    """

    def __init__(
        self,
        service: LabelService,
        config: OrderSyncConfig,
        *,
        autostart: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.service = service
        self.config = config
        self.autostart = autostart
        self._clock = clock
        self._sleep = sleep
        self._jobs: dict[str, LabelCreationJob] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def jobs(self) -> list[LabelCreationJob]:
        return list(self._jobs.values())

    def get_job(self, order_id: str) -> LabelCreationJob | None:
        return self._jobs.get(order_id)

    def add_job(
        self,
        order_id: str,
        rate_id: str,
        attempt: int = 0,
        last_error: str | None = None,
    ) -> LabelCreationJob:
        job = LabelCreationJob(
            order_id=order_id,
            rate_id=rate_id,
            attempt=attempt,
            last_error=last_error,
            created_at=self._clock(),
        )
        self._jobs[order_id] = job
        logger.info(
            "Queued label creation for order %s (attempt %d)", order_id, attempt + 1
        )
        if self.autostart:
            self._ensure_running()
        return job

    def remove_job(self, order_id: str) -> None:
        self._jobs.pop(order_id, None)

    def required_delay(self, attempt: int) -> float:
        return compute_backoff_delay(
            attempt,
            base_delay=self.config.label_base_delay_seconds,
            multiplier=self.config.label_backoff_multiplier,
            max_delay=self.config.label_max_delay_seconds,
        )

    def _remaining(self, job: LabelCreationJob, now: float) -> float:
        return self.required_delay(job.attempt) - (now - job.created_at)

    async def process_jobs(self) -> None:
        """Attempt every job whose backoff delay has elapsed."""
        for job in list(self._jobs.values()):
            if self._remaining(job, self._clock()) > 0:
                continue
            try:
                result = await self.service.purchase_label(job.order_id)
            except Exception as exc:
                logger.exception("Label job for order %s raised", job.order_id)
                result = LabelResult(
                    success=False, error=str(exc), error_code=_error_code(exc)
                )

            if result.success:
                self.remove_job(job.order_id)
            elif (
                job.attempt >= self.config.label_max_attempts - 1
                or result.error_code == LabelErrorCode.RETRY_EXHAUSTED
            ):
                logger.error(
                    "Label job for order %s failed after %d attempts: %s",
                    job.order_id,
                    job.attempt + 1,
                    result.error,
                )
                self.remove_job(job.order_id)
            else:
                self.add_job(job.order_id, job.rate_id, job.attempt + 1, result.error)

            await self._sleep(self.config.label_job_spacing_seconds)

    def _ensure_running(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        try:
            while self._jobs:
                await self.process_jobs()
                if self._jobs:
                    now = self._clock()
                    wait = min(self._remaining(job, now) for job in self._jobs.values())
                    await self._sleep(max(wait, self.config.queue_tick_seconds))
        finally:
            self._task = None

    def stats(self) -> dict[str, Any]:
        return {
            "pending_jobs": len(self._jobs),
            "jobs": [
                {
                    "order_id": job.order_id,
                    "rate_id": job.rate_id,
                    "attempt": job.attempt,
                    "last_error": job.last_error,
                }
                for job in self._jobs.values()
            ],
        }

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
