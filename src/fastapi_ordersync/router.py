"""Router factory for fastapi-ordersync."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI

from fastapi_ordersync.carrier import ShippoClient
from fastapi_ordersync.config import OrderSyncConfig
from fastapi_ordersync.emails import OrderStatusNotifier, ResendEmailSender
from fastapi_ordersync.handlers import ShippoWebhookProcessor, WebhookProcessor
from fastapi_ordersync.labels import LabelCreationQueue, LabelService
from fastapi_ordersync.metrics import MetricsSink
from fastapi_ordersync.protocols import (
    CarrierClient,
    DeadLetterStore,
    EmailSender,
    OrderStore,
)
from fastapi_ordersync.queue import ConcurrencyLimiter, ProcessingQueue
from fastapi_ordersync.routes.labels import router as labels_router
from fastapi_ordersync.routes.webhooks import router as webhooks_router

logger = logging.getLogger(__name__)


def create_ordersync_router(
    *,
    config: OrderSyncConfig,
    store: OrderStore,
    carrier: CarrierClient | None = None,
    email_sender: EmailSender | None = None,
    dead_letter_store: DeadLetterStore | None = None,
    metrics: MetricsSink | None = None,
) -> APIRouter:
    """Create a configured API router.

    Components are built in the router lifespan and stored on
    ``app.state``. A carrier client and an email sender are created from
    ``config`` when not passed in and their API keys are set. Exception
    handlers are not installed here; call
    :func:`~fastapi_ordersync.exceptions.register_exception_handlers`
    on the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        actual_metrics = metrics or MetricsSink(environment=config.environment)

        owned_carrier = None
        actual_carrier = carrier
        if actual_carrier is None and config.shippo_api_token:
            owned_carrier = actual_carrier = ShippoClient(
                config.shippo_api_token, base_url=config.shippo_base_url
            )

        owned_sender = None
        actual_sender = email_sender
        if actual_sender is None and config.resend_api_key:
            owned_sender = actual_sender = ResendEmailSender(
                config.resend_api_key, default_from=config.email_from
            )

        label_service = None
        label_queue = None
        if actual_carrier is not None:
            label_service = LabelService(
                store, actual_carrier, config, metrics=actual_metrics
            )
            label_queue = LabelCreationQueue(label_service, config)

        processor = WebhookProcessor(
            store,
            label_service=label_service,
            label_queue=label_queue,
            metrics=actual_metrics,
        )
        limiter = ConcurrencyLimiter(config.webhook_max_concurrency)
        queue = ProcessingQueue(
            processor,
            config,
            store=store,
            email_sender=actual_sender,
            metrics=actual_metrics,
            dead_letter_store=dead_letter_store,
            limiter=limiter,
        )
        notifier = OrderStatusNotifier(
            queue, admin_email=config.admin_email, from_address=config.email_from
        )
        processor.notifier = notifier
        carrier_processor = ShippoWebhookProcessor(store, notifier=notifier)
        carrier_queue = ProcessingQueue(
            carrier_processor,
            config,
            store=store,
            metrics=actual_metrics,
            dead_letter_store=dead_letter_store,
            limiter=limiter,
        )

        app.state.ordersync_config = config
        app.state.ordersync_store = store
        app.state.ordersync_metrics = actual_metrics
        app.state.ordersync_queue = queue
        app.state.ordersync_carrier_queue = carrier_queue
        app.state.ordersync_label_service = label_service
        app.state.ordersync_label_queue = label_queue
        try:
            yield
        finally:
            await queue.close()
            await carrier_queue.close()
            if label_queue is not None:
                await label_queue.close()
            if owned_carrier is not None:
                await owned_carrier.close()
            if owned_sender is not None:
                await owned_sender.close()
            logger.info("Order sync components shut down")

    router = APIRouter(lifespan=lifespan)
    router.include_router(webhooks_router)
    router.include_router(labels_router)
    return router
