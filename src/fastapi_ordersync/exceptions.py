"""Domain exceptions and their HTTP mapping."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from fastapi_ordersync.signatures import SignatureVerdict


class OrderSyncError(Exception):
    """Base class for all reconciliation errors."""


class WebhookSignatureError(OrderSyncError):
    """Inbound webhook failed signature or envelope validation."""

    def __init__(self, verdict: SignatureVerdict) -> None:
        self.verdict = verdict
        reason = verdict.reason.value if verdict.reason else "UNKNOWN"
        detail = f": {verdict.details}" if verdict.details else ""
        super().__init__(f"{reason}{detail}")

    @property
    def reason(self) -> str:
        return self.verdict.reason.value if self.verdict.reason else "UNKNOWN"


class MalformedPayloadError(OrderSyncError):
    """Webhook payload does not have the expected shape."""


class UnhandledWebhookTypeError(OrderSyncError):
    """Webhook ``type`` has no handler. Never retried."""

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(f"Unhandled webhook type: {event_type}")


class OrderNotFoundError(OrderSyncError):
    """No order matches the given reference."""

    def __init__(self, order_ref: str) -> None:
        self.order_ref = order_ref
        super().__init__(f"Order {order_ref} not found")


class AddressExtractionError(OrderSyncError):
    """No stored data shape yielded a usable shipping address."""


class CarrierError(OrderSyncError):
    """The shipping carrier rejected or failed a request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class RateExpiredError(CarrierError):
    """The carrier reports the purchased rate as expired."""


class LabelPurchaseError(CarrierError):
    """Carrier transaction did not yield a usable label."""


class EmailSendError(OrderSyncError):
    """Email provider rejected a send."""


def register_exception_handlers(app: FastAPI) -> None:
    """Register reconciliation exception handlers on a FastAPI app.

    More specific handlers must be registered first so FastAPI
    matches them before the generic OrderSyncError handler.

    Handler order (most specific first):
    1. WebhookSignatureError → 401 (400 for a malformed body)
    2. OrderNotFoundError → 404
    3. CarrierError → 502
    4. OrderSyncError → 400 (catch-all)
    """

    @app.exception_handler(WebhookSignatureError)
    async def _invalid_signature(
        request: Request,
        exc: WebhookSignatureError,
    ) -> JSONResponse:
        status_code = 400 if exc.reason == "MALFORMED_BODY" else 401
        return JSONResponse(
            status_code=status_code,
            content={
                "detail": str(exc),
                "code": exc.reason.lower(),
            },
        )

    @app.exception_handler(OrderNotFoundError)
    async def _not_found(
        request: Request,
        exc: OrderNotFoundError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={
                "detail": str(exc),
                "code": "order_not_found",
            },
        )

    @app.exception_handler(CarrierError)
    async def _carrier_error(
        request: Request,
        exc: CarrierError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content={
                "detail": str(exc),
                "code": "carrier_error",
            },
        )

    @app.exception_handler(OrderSyncError)
    async def _ordersync_error(
        request: Request,
        exc: OrderSyncError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "detail": str(exc),
                "code": "ordersync_error",
            },
        )
