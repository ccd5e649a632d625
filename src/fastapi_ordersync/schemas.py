"""Pydantic schemas for webhook envelopes and API responses."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ShippoEvent = Literal[
    "transaction_created",
    "transaction_updated",
    "track_updated",
    "batch_created",
    "batch_purchased",
    "all",
]


class SquareWebhookData(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    id: str
    object: dict[str, Any] = Field(default_factory=dict)
    deleted: bool | None = None


class SquareWebhookPayload(BaseModel):
    """Payment provider webhook envelope. ``event_id`` is the idempotency key."""

    model_config = ConfigDict(extra="allow")

    merchant_id: str
    type: str
    event_id: str
    created_at: str
    location_id: str | None = None
    data: SquareWebhookData


class ShippoWebhookPayload(BaseModel):
    """Carrier webhook envelope."""

    model_config = ConfigDict(extra="allow")

    event: ShippoEvent
    test: bool = False
    data: dict[str, Any] = Field(default_factory=dict)


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str | None = None
    status: str


class LabelRequest(BaseModel):
    rate_id: str | None = None


class LabelResponse(BaseModel):
    success: bool
    label_url: str | None = None
    tracking_number: str | None = None
    error: str | None = None
    error_code: str | None = None
    retry_attempt: int | None = None


class QueueStatusResponse(BaseModel):
    webhook_queue: int
    carrier_webhook_queue: int = 0
    email_queue: int
    is_processing: bool
    active_webhooks: int
    peak_webhooks: int
    last_email_sent: float | None = None
    label_jobs: int = 0
    metrics: dict[str, Any] = Field(default_factory=dict)
    alerts: list[dict[str, Any]] = Field(default_factory=list)
