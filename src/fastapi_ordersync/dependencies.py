"""Dependency providers for request handlers."""

from __future__ import annotations

from fastapi import Request

from fastapi_ordersync.config import OrderSyncConfig
from fastapi_ordersync.labels import LabelCreationQueue, LabelService
from fastapi_ordersync.metrics import MetricsSink
from fastapi_ordersync.protocols import OrderStore
from fastapi_ordersync.queue import ProcessingQueue


def get_config(request: Request) -> OrderSyncConfig:
    """Read config from FastAPI app state."""
    return request.app.state.ordersync_config


def get_store(request: Request) -> OrderStore:
    """Read order store from FastAPI app state."""
    return request.app.state.ordersync_store


def get_queue(request: Request) -> ProcessingQueue:
    """Queue for payment provider webhooks and email."""
    return request.app.state.ordersync_queue


def get_carrier_queue(request: Request) -> ProcessingQueue:
    """Queue for carrier webhooks."""
    return request.app.state.ordersync_carrier_queue


def get_metrics(request: Request) -> MetricsSink:
    return request.app.state.ordersync_metrics


def get_label_service(request: Request) -> LabelService | None:
    """Label service, or None when no carrier is configured."""
    return getattr(request.app.state, "ordersync_label_service", None)


def get_label_queue(request: Request) -> LabelCreationQueue | None:
    return getattr(request.app.state, "ordersync_label_queue", None)
