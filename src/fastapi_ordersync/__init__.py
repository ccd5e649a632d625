"""Webhook-driven order and payment reconciliation for FastAPI."""

from typing import TYPE_CHECKING

__version__ = "0.1.0"

__all__ = [
    "LabelService",
    "OrderNotFoundError",
    "OrderStore",
    "OrderSyncConfig",
    "OrderSyncError",
    "ProcessingQueue",
    "WebhookProcessor",
    "WebhookSignatureError",
    "__version__",
    "create_ordersync_router",
    "register_exception_handlers",
]

if TYPE_CHECKING:
    from fastapi_ordersync.config import OrderSyncConfig
    from fastapi_ordersync.exceptions import (
        OrderNotFoundError,
        OrderSyncError,
        WebhookSignatureError,
        register_exception_handlers,
    )
    from fastapi_ordersync.handlers import WebhookProcessor
    from fastapi_ordersync.labels import LabelService
    from fastapi_ordersync.protocols import OrderStore
    from fastapi_ordersync.queue import ProcessingQueue
    from fastapi_ordersync.router import create_ordersync_router


def __getattr__(name: str):
    # Lazy imports to avoid loading all submodules on package import.
    if name == "OrderSyncConfig":
        from fastapi_ordersync.config import OrderSyncConfig

        return OrderSyncConfig
    if name == "create_ordersync_router":
        from fastapi_ordersync.router import create_ordersync_router

        return create_ordersync_router
    if name == "ProcessingQueue":
        from fastapi_ordersync.queue import ProcessingQueue

        return ProcessingQueue
    if name == "WebhookProcessor":
        from fastapi_ordersync.handlers import WebhookProcessor

        return WebhookProcessor
    if name == "LabelService":
        from fastapi_ordersync.labels import LabelService

        return LabelService
    if name in (
        "OrderNotFoundError",
        "OrderSyncError",
        "WebhookSignatureError",
        "register_exception_handlers",
    ):
        from fastapi_ordersync import exceptions

        return getattr(exceptions, name)
    if name == "OrderStore":
        from fastapi_ordersync import protocols

        return getattr(protocols, name)
    raise AttributeError(
        f"module 'fastapi_ordersync' has no attribute {name!r}"
    )
