"""Protocols for the collaborators the reconciliation core depends on."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

if TYPE_CHECKING:
    from fastapi_ordersync.carrier import CarrierRate, CarrierTransaction
    from fastapi_ordersync.emails import EmailMessage

T = TypeVar("T")


@runtime_checkable
class WebhookPayloadProcessor(Protocol):
    """Applies one decoded webhook payload to the store."""

    async def process(self, payload: dict[str, Any]) -> None: ...


@runtime_checkable
class OrderStore(Protocol):
    """Transactional persistence boundary for orders and payments."""

    async def run_in_transaction(
        self,
        operation: Callable[[Any], Awaitable[T]],
        *,
        name: str = "transaction",
    ) -> T: ...

    async def get_order(self, order_id: str) -> Any | None: ...

    async def update_order(self, order_id: str, **fields: Any) -> Any: ...

    async def reconnect(self) -> None: ...


@runtime_checkable
class CarrierClient(Protocol):
    """Shipping carrier API used by the label workflow."""

    async def create_transaction(
        self, rate_id: str, *, metadata: str | None = None
    ) -> CarrierTransaction: ...

    async def get_rates(
        self,
        *,
        address_from: dict[str, Any],
        address_to: dict[str, Any],
        parcels: list[dict[str, Any]],
    ) -> list[CarrierRate]: ...


@runtime_checkable
class EmailSender(Protocol):
    """Outbound email provider."""

    async def send(self, message: EmailMessage) -> str | None: ...


@runtime_checkable
class DeadLetterStore(Protocol):
    """Durable record of webhooks that exhausted their retries."""

    async def store(
        self,
        *,
        event_type: str,
        event_id: str | None,
        order_id: str | None,
        payload: dict[str, Any],
        error: str,
        attempts: int,
    ) -> str: ...
