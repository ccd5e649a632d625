"""Webhook endpoints."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request

from fastapi_ordersync.config import OrderSyncConfig
from fastapi_ordersync.dependencies import (
    get_carrier_queue,
    get_config,
    get_label_queue,
    get_metrics,
    get_queue,
)
from fastapi_ordersync.exceptions import WebhookSignatureError
from fastapi_ordersync.labels import LabelCreationQueue
from fastapi_ordersync.metrics import MetricsSink
from fastapi_ordersync.queue import ProcessingQueue
from fastapi_ordersync.schemas import QueueStatusResponse, WebhookAck
from fastapi_ordersync.signatures import (
    validate_shippo_webhook,
    validate_square_webhook,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/square", response_model=WebhookAck)
async def square_webhook(
    request: Request,
    config: OrderSyncConfig = Depends(get_config),
    queue: ProcessingQueue = Depends(get_queue),
) -> WebhookAck:
    """Validate a payment provider webhook and process or queue it."""
    # The signature covers the exact bytes received.
    raw_body = await request.body()
    notification_url = config.square_notification_url or str(request.url)
    verdict = validate_square_webhook(
        raw_body,
        request.headers,
        config.square_webhook_secret,
        notification_url,
        sandbox_secret=config.square_webhook_secret_sandbox,
        max_event_age_seconds=config.square_max_event_age_seconds,
    )
    if not verdict.valid:
        logger.warning(
            "Rejected Square webhook: %s (%s)", verdict.reason, verdict.details
        )
        raise WebhookSignatureError(verdict)

    payload = json.loads(raw_body)
    outcome = await queue.handle_immediately(payload)
    return WebhookAck(event_id=payload.get("event_id"), status=outcome.value)


@router.post("/webhooks/shippo", response_model=WebhookAck)
async def shippo_webhook(
    request: Request,
    config: OrderSyncConfig = Depends(get_config),
    queue: ProcessingQueue = Depends(get_carrier_queue),
) -> WebhookAck:
    """Validate a carrier webhook and process or queue it."""
    raw_body = await request.body()
    verdict = validate_shippo_webhook(
        raw_body, request.headers, config.shippo_webhook_secret
    )
    if not verdict.valid:
        logger.warning(
            "Rejected Shippo webhook: %s (%s)", verdict.reason, verdict.details
        )
        raise WebhookSignatureError(verdict)

    payload = json.loads(raw_body)
    data = payload.get("data") or {}
    event_id = data.get("object_id") if isinstance(data, dict) else None
    outcome = await queue.handle_immediately(
        payload, event_type=f"shippo.{payload['event']}", event_id=event_id
    )
    return WebhookAck(event_id=event_id, status=outcome.value)


@router.get("/webhooks/status", response_model=QueueStatusResponse)
async def webhook_status(
    queue: ProcessingQueue = Depends(get_queue),
    carrier_queue: ProcessingQueue = Depends(get_carrier_queue),
    label_queue: LabelCreationQueue | None = Depends(get_label_queue),
    metrics: MetricsSink = Depends(get_metrics),
) -> QueueStatusResponse:
    """Queue depths, label jobs, metrics and active alerts."""
    status = queue.status()
    return QueueStatusResponse(
        **status,
        carrier_webhook_queue=carrier_queue.status()["webhook_queue"],
        label_jobs=len(label_queue.jobs) if label_queue is not None else 0,
        metrics=metrics.snapshot(),
        alerts=[alert.as_dict() for alert in metrics.evaluate_alerts()],
    )
