"""Webhook payload processors.

:class:`WebhookProcessor` applies payment provider events to orders,
payments and refunds. :class:`ShippoWebhookProcessor` applies carrier
label and tracking events. Every state transition for one event runs in
a single store transaction.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from fastapi_ordersync.exceptions import (
    MalformedPayloadError,
    OrderNotFoundError,
    UnhandledWebhookTypeError,
)
from fastapi_ordersync.metrics import OUTCOME_DUPLICATE
from fastapi_ordersync.schemas import ShippoWebhookPayload, SquareWebhookPayload

if TYPE_CHECKING:
    from fastapi_ordersync.emails import OrderStatusNotifier
    from fastapi_ordersync.labels import LabelCreationQueue, LabelService
    from fastapi_ordersync.metrics import MetricsSink
    from fastapi_ordersync.protocols import OrderStore

logger = logging.getLogger(__name__)


class WebhookEventType(StrEnum):
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_FULFILLMENT_UPDATED = "order.fulfillment.updated"
    PAYMENT_CREATED = "payment.created"
    PAYMENT_UPDATED = "payment.updated"
    REFUND_CREATED = "refund.created"
    REFUND_UPDATED = "refund.updated"


class OrderStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    SHIPPING = "SHIPPING"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(StrEnum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class FulfillmentType(StrEnum):
    PICKUP = "pickup"
    LOCAL_DELIVERY = "local_delivery"
    NATIONWIDE_SHIPPING = "nationwide_shipping"


STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.READY: 2,
    OrderStatus.SHIPPING: 2,
    OrderStatus.DELIVERED: 3,
    OrderStatus.COMPLETED: 3,
}

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Placeholder contact data written when an order is first seen via webhook.
PLACEHOLDER_NAME = "Pending"
PLACEHOLDER_EMAIL = "pending@example.com"
PLACEHOLDER_PHONE = "pending"


def is_status_regression(current: str, new: str) -> bool:
    """True when moving from ``current`` to ``new`` would go backwards.

    CANCELLED is terminal. Cancelling an order that already reached
    DELIVERED or COMPLETED also counts as a regression.
    """
    if current == new:
        return False
    if current == OrderStatus.CANCELLED:
        return True
    if new == OrderStatus.CANCELLED:
        return current in (OrderStatus.DELIVERED, OrderStatus.COMPLETED)
    if current == OrderStatus.COMPLETED:
        return True
    return STATUS_RANK.get(new, 0) < STATUS_RANK.get(current, 0)


def can_transition_payment(current: str, new: str) -> bool:
    """Payment status guard. PAID only moves to REFUNDED, REFUNDED is final
    and FAILED never returns to PENDING."""
    if current == new:
        return True
    if current == PaymentStatus.REFUNDED:
        return False
    if current == PaymentStatus.PAID:
        return new == PaymentStatus.REFUNDED
    if current == PaymentStatus.FAILED:
        return new != PaymentStatus.PENDING
    return True


def map_square_order_state(state: str | None) -> OrderStatus:
    match (state or "").upper():
        case "OPEN":
            return OrderStatus.PROCESSING
        case "COMPLETED":
            return OrderStatus.COMPLETED
        case "CANCELED" | "CANCELLED":
            return OrderStatus.CANCELLED
        case _:
            return OrderStatus.PENDING


def map_square_payment_status(status: str | None) -> PaymentStatus:
    match (status or "").upper():
        case "APPROVED" | "COMPLETED" | "CAPTURED":
            return PaymentStatus.PAID
        case "FAILED" | "CANCELED" | "CANCELLED":
            return PaymentStatus.FAILED
        case "REFUNDED":
            return PaymentStatus.REFUNDED
        case _:
            return PaymentStatus.PENDING


def map_fulfillment_state(
    fulfillment_type: str | None, state: str | None
) -> OrderStatus | None:
    state = (state or "").upper()
    shipping = fulfillment_type == FulfillmentType.NATIONWIDE_SHIPPING
    if state in ("PROPOSED", "RESERVED"):
        return OrderStatus.PROCESSING
    if state == "PREPARED":
        return OrderStatus.SHIPPING if shipping else OrderStatus.READY
    if state == "COMPLETED":
        return OrderStatus.DELIVERED if shipping else OrderStatus.COMPLETED
    if state in ("CANCELED", "CANCELLED"):
        return OrderStatus.CANCELLED
    return None


def _money(value: Any) -> Decimal | None:
    if not isinstance(value, dict) or value.get("amount") is None:
        return None
    return Decimal(value["amount"]) / 100


def _event_stamp(event_id: str) -> dict[str, str]:
    return {
        "lastProcessedEventId": event_id,
        "lastProcessedAt": datetime.now(tz=UTC).isoformat(),
    }


@dataclass
class StatusChange:
    order_id: str
    previous: str
    current: str


@dataclass
class PaymentOutcome:
    order_id: str
    payment_status: str
    newly_paid: bool
    fulfillment_type: str
    shipping_rate_id: str | None
    has_label: bool
    status_change: StatusChange | None = None


Handler = Callable[[SquareWebhookPayload], Awaitable[None]]


class WebhookProcessor:
    """Dispatches payment provider webhooks to their handlers."""

    def __init__(
        self,
        store: OrderStore,
        *,
        label_service: LabelService | None = None,
        label_queue: LabelCreationQueue | None = None,
        notifier: OrderStatusNotifier | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        self.store = store
        self.label_service = label_service
        self.label_queue = label_queue
        self.notifier = notifier
        self.metrics = metrics
        self._handlers: dict[WebhookEventType, Handler] = {
            WebhookEventType.ORDER_CREATED: self.handle_order_created,
            WebhookEventType.ORDER_UPDATED: self.handle_order_updated,
            WebhookEventType.ORDER_FULFILLMENT_UPDATED: self.handle_fulfillment_updated,
            WebhookEventType.PAYMENT_CREATED: self.handle_payment_created,
            WebhookEventType.PAYMENT_UPDATED: self.handle_payment_updated,
            WebhookEventType.REFUND_CREATED: self.handle_refund,
            WebhookEventType.REFUND_UPDATED: self.handle_refund,
        }
        missing = set(WebhookEventType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for webhook types: {sorted(missing)}")

    async def process(self, payload: dict[str, Any]) -> None:
        raw_type = payload.get("type")
        try:
            event_type = WebhookEventType(raw_type)
        except ValueError:
            raise UnhandledWebhookTypeError(str(raw_type)) from None
        try:
            envelope = SquareWebhookPayload.model_validate(payload)
        except ValidationError as exc:
            raise MalformedPayloadError(
                f"Invalid {event_type} payload: {exc.error_count()} errors"
            ) from exc
        await self._handlers[event_type](envelope)

    def _skip_duplicate(
        self, envelope: SquareWebhookPayload, resource: str, resource_id: str
    ) -> None:
        logger.info(
            "Event %s for %s %s already processed, skipping",
            envelope.event_id,
            resource,
            resource_id,
        )
        if self.metrics is not None:
            self.metrics.record(envelope.type, OUTCOME_DUPLICATE)

    def _notify(self, change: StatusChange | None, order: Any = None) -> None:
        if change is None or self.notifier is None:
            return
        try:
            self.notifier.order_status_changed(
                change.order_id, change.previous, change.current, order=order
            )
        except Exception:
            logger.exception(
                "Failed to queue status change notification for order %s",
                change.order_id,
            )

    async def handle_order_created(self, envelope: SquareWebhookPayload) -> None:
        data = envelope.data
        event_id = envelope.event_id
        order_data = data.object.get("order_created") or {}
        status = map_square_order_state(order_data.get("state"))

        async def apply(tx) -> None:
            existing = await tx.get_order_by_square_id(data.id)
            if existing is not None and await tx.is_event_processed(
                "order", data.id, event_id
            ):
                self._skip_duplicate(envelope, "order", data.id)
                return

            raw = {**data.object, **_event_stamp(event_id)}
            update: dict[str, Any] = {}
            if existing is not None:
                update["raw_data"] = {**(existing.raw_data or {}), **raw}
                if is_status_regression(existing.status, status):
                    logger.info(
                        "Order %s already %s, not moving back to %s",
                        data.id,
                        existing.status,
                        status,
                    )
                else:
                    update["status"] = status
            else:
                update["raw_data"] = raw

            await tx.upsert_order(
                data.id,
                create={
                    "status": status,
                    "total": _money(order_data.get("total_money")) or Decimal("0"),
                    "customer_name": PLACEHOLDER_NAME,
                    "email": PLACEHOLDER_EMAIL,
                    "phone": PLACEHOLDER_PHONE,
                    "raw_data": raw,
                },
                update=update,
            )
            await tx.record_event("order", data.id, event_id, envelope.type)

        await self.store.run_in_transaction(apply, name=f"order.created:{data.id}")
        logger.info("Processed order.created for order %s", data.id)

    async def handle_order_updated(self, envelope: SquareWebhookPayload) -> None:
        data = envelope.data
        event_id = envelope.event_id
        order_data = data.object.get("order_updated") or {}
        mapped = map_square_order_state(order_data.get("state"))

        async def apply(tx) -> StatusChange | None:
            order = await tx.get_order_by_square_id(data.id)
            if order is None:
                raise OrderNotFoundError(data.id)
            if await tx.is_event_processed("order", data.id, event_id):
                self._skip_duplicate(envelope, "order", data.id)
                return None

            fields: dict[str, Any] = {
                "raw_data": {
                    **(order.raw_data or {}),
                    **data.object,
                    **_event_stamp(event_id),
                }
            }
            total = _money(order_data.get("total_money"))
            if total is not None:
                fields["total"] = total

            change = None
            # Only terminal states are taken from order.updated.
            if mapped in TERMINAL_STATUSES and order.status != mapped:
                if is_status_regression(order.status, mapped):
                    logger.info(
                        "Ignoring %s for order %s already %s",
                        mapped,
                        data.id,
                        order.status,
                    )
                else:
                    change = StatusChange(order.id, order.status, mapped)
                    fields["status"] = mapped
                    if mapped == OrderStatus.CANCELLED and can_transition_payment(
                        order.payment_status, PaymentStatus.REFUNDED
                    ):
                        fields["payment_status"] = PaymentStatus.REFUNDED

            await tx.update_order(order, **fields)
            await tx.record_event("order", data.id, event_id, envelope.type)
            return change

        change = await self.store.run_in_transaction(
            apply, name=f"order.updated:{data.id}"
        )
        self._notify(change)

    async def handle_fulfillment_updated(self, envelope: SquareWebhookPayload) -> None:
        data = envelope.data
        event_id = envelope.event_id
        update_data = data.object.get("order_fulfillment_updated") or {}
        updates = update_data.get("fulfillment_update") or []
        first = updates[0] if updates else {}
        new_state = (first.get("new_state") or "").upper()
        if not new_state or not first.get("fulfillment_uid"):
            logger.warning(
                "No new_state or fulfillment_uid in fulfillment update for order %s",
                data.id,
            )
            return

        async def apply(tx) -> StatusChange | None:
            order = await tx.get_order_by_square_id(data.id)
            if order is None:
                raise OrderNotFoundError(data.id)
            if await tx.is_event_processed("order", data.id, event_id):
                self._skip_duplicate(envelope, "order", data.id)
                return None

            fields: dict[str, Any] = {
                "raw_data": {
                    **(order.raw_data or {}),
                    **data.object,
                    **_event_stamp(event_id),
                }
            }
            shipment = first.get("shipment_details") or (
                data.object.get("fulfillment") or {}
            ).get("shipment_details")
            if isinstance(shipment, dict):
                if shipment.get("tracking_number"):
                    fields["tracking_number"] = shipment["tracking_number"]
                if shipment.get("carrier"):
                    fields["shipping_carrier"] = shipment["carrier"]

            change = None
            new_status = map_fulfillment_state(order.fulfillment_type, new_state)
            if new_status is not None and new_status != order.status:
                if is_status_regression(order.status, new_status):
                    logger.info(
                        "Skipping fulfillment regression %s -> %s for order %s",
                        order.status,
                        new_status,
                        data.id,
                    )
                else:
                    change = StatusChange(order.id, order.status, new_status)
                    fields["status"] = new_status

            await tx.update_order(order, **fields)
            await tx.record_event("order", data.id, event_id, envelope.type)
            return change

        change = await self.store.run_in_transaction(
            apply, name=f"order.fulfillment.updated:{data.id}"
        )
        self._notify(change)

    async def handle_payment_created(self, envelope: SquareWebhookPayload) -> None:
        data = envelope.data
        event_id = envelope.event_id
        payment_data = data.object.get("payment") or {}
        square_order_id = payment_data.get("order_id")
        if not square_order_id:
            logger.warning("Payment %s received without order_id, skipping", data.id)
            return
        amount = _money(payment_data.get("amount_money"))
        if amount is None:
            logger.warning("Payment %s received without an amount, skipping", data.id)
            return

        async def apply(tx) -> StatusChange | None:
            order = await tx.get_order_by_square_id(square_order_id)
            if order is None:
                raise OrderNotFoundError(square_order_id)
            if await tx.is_event_processed("payment", data.id, event_id):
                self._skip_duplicate(envelope, "payment", data.id)
                return None

            raw = {**data.object, **_event_stamp(event_id)}
            payment = await tx.get_payment_by_square_id(data.id)
            update: dict[str, Any] = {"raw_data": raw, "amount": amount}
            if payment is None or can_transition_payment(
                payment.status, PaymentStatus.PAID
            ):
                update["status"] = PaymentStatus.PAID
            await tx.upsert_payment(
                data.id,
                create={
                    "order_id": order.id,
                    "amount": amount,
                    "status": PaymentStatus.PAID,
                    "raw_data": raw,
                },
                update=update,
            )

            fields: dict[str, Any] = {}
            change = None
            if order.payment_status != PaymentStatus.PAID and can_transition_payment(
                order.payment_status, PaymentStatus.PAID
            ):
                fields["payment_status"] = PaymentStatus.PAID
                if order.status == OrderStatus.PENDING:
                    fields["status"] = OrderStatus.PROCESSING
                    change = StatusChange(
                        order.id, order.status, OrderStatus.PROCESSING
                    )

            buyer = payment_data.get("buyer") or {}
            email = payment_data.get("buyer_email_address") or payment_data.get(
                "receipt_email"
            )
            if email and order.email == PLACEHOLDER_EMAIL:
                fields["email"] = email
            name = buyer.get("email_address") or payment_data.get("receipt_email")
            if name and order.customer_name == PLACEHOLDER_NAME:
                fields["customer_name"] = name
            if buyer.get("phone_number") and order.phone == PLACEHOLDER_PHONE:
                fields["phone"] = buyer["phone_number"]

            if fields:
                await tx.update_order(order, **fields)
            await tx.record_event("payment", data.id, event_id, envelope.type)
            return change

        change = await self.store.run_in_transaction(
            apply, name=f"payment.created:{data.id}"
        )
        self._notify(change)

    async def handle_payment_updated(self, envelope: SquareWebhookPayload) -> None:
        data = envelope.data
        event_id = envelope.event_id
        payment_data = data.object.get("payment") or {}
        square_order_id = payment_data.get("order_id")
        if not square_order_id:
            logger.warning(
                "No order_id in payment.updated for payment %s, skipping", data.id
            )
            return
        new_status = map_square_payment_status(payment_data.get("status"))
        amount = _money(payment_data.get("amount_money"))

        async def apply(tx) -> PaymentOutcome | None:
            order = await tx.get_order_by_square_id(square_order_id)
            if order is None:
                raise OrderNotFoundError(square_order_id)

            payment = await tx.get_payment_by_square_id(data.id)
            if (
                payment is not None
                and (payment.raw_data or {}).get("lastProcessedEventId") == event_id
            ) or await tx.is_event_processed("payment", data.id, event_id):
                self._skip_duplicate(envelope, "payment", data.id)
                return None

            newly_paid = (
                new_status == PaymentStatus.PAID
                and order.payment_status != PaymentStatus.PAID
                and can_transition_payment(order.payment_status, new_status)
            )
            order_status = order.status
            if newly_paid and not is_status_regression(
                order.status, OrderStatus.PROCESSING
            ):
                order_status = OrderStatus.PROCESSING

            raw = {**data.object, **_event_stamp(event_id)}
            payment_update: dict[str, Any] = {"raw_data": raw}
            if payment is None or can_transition_payment(payment.status, new_status):
                payment_update["status"] = new_status
            else:
                logger.info(
                    "Payment %s stays %s, ignoring %s",
                    data.id,
                    payment.status,
                    new_status,
                )
            if amount is not None:
                payment_update["amount"] = amount
            await tx.upsert_payment(
                data.id,
                create={
                    "order_id": order.id,
                    "amount": amount or Decimal("0"),
                    "status": new_status,
                    "raw_data": raw,
                },
                update=payment_update,
            )

            payment_status = (
                new_status
                if can_transition_payment(order.payment_status, new_status)
                else order.payment_status
            )
            previous_status = order.status
            await tx.update_order(
                order,
                payment_status=payment_status,
                status=order_status,
                raw_data={
                    **(order.raw_data or {}),
                    **data.object,
                    **_event_stamp(event_id),
                },
            )
            await tx.record_event("payment", data.id, event_id, envelope.type)

            change = None
            if order_status != previous_status:
                change = StatusChange(order.id, previous_status, order_status)
            return PaymentOutcome(
                order_id=order.id,
                payment_status=payment_status,
                newly_paid=newly_paid,
                fulfillment_type=order.fulfillment_type,
                shipping_rate_id=order.shipping_rate_id,
                has_label=bool(order.label_url),
                status_change=change,
            )

        outcome = await self.store.run_in_transaction(
            apply, name=f"payment.updated:{data.id}"
        )
        if outcome is None:
            return
        logger.info(
            "Order %s payment status now %s", outcome.order_id, outcome.payment_status
        )
        self._notify(outcome.status_change)
        if (
            outcome.newly_paid
            and outcome.fulfillment_type == FulfillmentType.NATIONWIDE_SHIPPING
            and outcome.shipping_rate_id
            and not outcome.has_label
        ):
            await self._purchase_label(outcome.order_id, outcome.shipping_rate_id)

    async def _purchase_label(self, order_id: str, rate_id: str) -> None:
        if self.label_service is None:
            logger.info(
                "No label service configured, not purchasing label for %s", order_id
            )
            return
        logger.info(
            "Payment confirmed for shipping order %s, purchasing label", order_id
        )
        try:
            result = await self.label_service.purchase_label(order_id, rate_id)
        except Exception as exc:
            logger.exception("Label purchase raised for order %s", order_id)
            if self.label_queue is not None:
                self.label_queue.add_job(order_id, rate_id, last_error=str(exc))
            return
        if result.success:
            logger.info(
                "Purchased label for order %s, tracking %s",
                order_id,
                result.tracking_number,
            )
            return
        logger.error(
            "Automatic label purchase failed for order %s: %s", order_id, result.error
        )
        if self.label_queue is not None and result.error_code != "RETRY_EXHAUSTED":
            self.label_queue.add_job(order_id, rate_id, last_error=result.error)

    async def handle_refund(self, envelope: SquareWebhookPayload) -> None:
        """Shared by refund.created and refund.updated: upsert by refund id."""
        data = envelope.data
        event_id = envelope.event_id
        refund_data = data.object.get("refund") or {}
        square_payment_id = refund_data.get("payment_id")
        refund_status = (refund_data.get("status") or "PENDING").upper()
        amount = _money(refund_data.get("amount_money"))

        async def apply(tx) -> None:
            if await tx.is_event_processed("refund", data.id, event_id):
                self._skip_duplicate(envelope, "refund", data.id)
                return

            existing = await tx.get_refund_by_square_id(data.id)
            if existing is not None:
                payment = await tx.get_payment(existing.payment_id)
            elif square_payment_id:
                if amount is None:
                    logger.warning("Refund %s received without an amount", data.id)
                    return
                payment = await tx.get_payment_by_square_id(square_payment_id)
            else:
                logger.warning("Refund %s received without a payment_id", data.id)
                return
            if payment is None:
                logger.warning(
                    "Payment %s not found for refund %s", square_payment_id, data.id
                )
                return

            update: dict[str, Any] = {"status": refund_status, "raw_data": data.object}
            if amount is not None:
                update["amount"] = amount
            await tx.upsert_refund(
                data.id,
                create={
                    "payment_id": payment.id,
                    "amount": amount or Decimal("0"),
                    "status": refund_status,
                    "reason": refund_data.get("reason"),
                    "raw_data": data.object,
                },
                update=update,
            )

            if refund_status == "COMPLETED":
                order = await tx.get_order(payment.order_id)
                if order is not None and can_transition_payment(
                    order.payment_status, PaymentStatus.REFUNDED
                ):
                    await tx.update_order(order, payment_status=PaymentStatus.REFUNDED)
            await tx.record_event("refund", data.id, event_id, envelope.type)

        await self.store.run_in_transaction(apply, name=f"{envelope.type}:{data.id}")


_ORDER_METADATA = re.compile(r"order_id=([A-Za-z0-9-]+)|Order\s+([A-Za-z0-9-]+)")

TRACKING_STATUS_MAP = {
    "TRANSIT": OrderStatus.SHIPPING,
    "DELIVERED": OrderStatus.DELIVERED,
}


def parse_order_metadata(metadata: str | None) -> str | None:
    """Pull the order id out of carrier metadata like
    ``order_id=<id>_attempt_2``."""
    if not metadata:
        return None
    match = _ORDER_METADATA.search(metadata)
    if match is None:
        return None
    return match.group(1) or match.group(2)


class ShippoWebhookProcessor:
    """Applies carrier transaction and tracking events to orders."""

    def __init__(
        self,
        store: OrderStore,
        *,
        notifier: OrderStatusNotifier | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier

    async def process(self, payload: dict[str, Any]) -> None:
        try:
            envelope = ShippoWebhookPayload.model_validate(payload)
        except ValidationError as exc:
            raise MalformedPayloadError(
                f"Invalid carrier payload: {exc.error_count()} errors"
            ) from exc

        if envelope.event in ("transaction_created", "transaction_updated"):
            await self.handle_transaction(envelope.data)
        elif envelope.event == "track_updated":
            await self.handle_track_updated(envelope.data)
        else:
            logger.info("Ignoring carrier event %s", envelope.event)

    async def handle_transaction(self, data: dict[str, Any]) -> None:
        status = (data.get("status") or "").upper()
        order_id = parse_order_metadata(data.get("metadata"))
        if order_id is None:
            logger.warning(
                "Carrier transaction %s has no order metadata", data.get("object_id")
            )
            return
        if status != "SUCCESS":
            logger.info("Carrier transaction for order %s is %s", order_id, status)
            return

        async def apply(tx) -> None:
            order = await tx.get_order(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            fields: dict[str, Any] = {}
            if data.get("tracking_number") and not order.tracking_number:
                fields["tracking_number"] = data["tracking_number"]
            if data.get("label_url") and not order.label_url:
                fields["label_url"] = data["label_url"]
                fields["label_created_at"] = datetime.now(tz=UTC)
            if fields:
                await tx.update_order(order, **fields)

        await self.store.run_in_transaction(
            apply, name=f"carrier.transaction:{order_id}"
        )

    async def handle_track_updated(self, data: dict[str, Any]) -> None:
        tracking_number = data.get("tracking_number")
        tracking_status = data.get("tracking_status") or {}
        if isinstance(tracking_status, dict):
            raw_status = tracking_status.get("status")
        else:
            raw_status = tracking_status
        new_status = TRACKING_STATUS_MAP.get((raw_status or "").upper())
        if not tracking_number or new_status is None:
            logger.info(
                "Ignoring tracking update %s for %s", raw_status, tracking_number
            )
            return

        async def apply(tx) -> StatusChange | None:
            order = await tx.get_order_by_tracking_number(tracking_number)
            if order is None:
                order_id = parse_order_metadata(data.get("metadata"))
                order = await tx.get_order(order_id) if order_id else None
            if order is None:
                logger.warning(
                    "No order found for tracking number %s", tracking_number
                )
                return None
            if order.status == new_status or is_status_regression(
                order.status, new_status
            ):
                return None
            change = StatusChange(order.id, order.status, new_status)
            await tx.update_order(order, status=new_status)
            return change

        change = await self.store.run_in_transaction(
            apply, name=f"carrier.track_updated:{tracking_number}"
        )
        if change is not None and self.notifier is not None:
            try:
                self.notifier.order_status_changed(
                    change.order_id, change.previous, change.current
                )
            except Exception:
                logger.exception(
                    "Failed to queue status change notification for order %s",
                    change.order_id,
                )
