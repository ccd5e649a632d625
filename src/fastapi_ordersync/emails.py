"""Outbound email: the Resend sender and order status notifications."""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from fastapi_ordersync.exceptions import EmailSendError

if TYPE_CHECKING:
    from fastapi_ordersync.queue import ProcessingQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    from_address: str | None = None
    priority: int = 0


class ResendEmailSender:
    """Send email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        *,
        default_from: str,
        base_url: str = "https://api.resend.com",
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._default_from = default_from
        self._headers = {"Authorization": f"Bearer {api_key}"}

    async def send(self, message: EmailMessage) -> str | None:
        response = await self._client.post(
            f"{self._base_url}/emails",
            json={
                "from": message.from_address or self._default_from,
                "to": [message.to],
                "subject": message.subject,
                "html": message.html,
            },
            headers=self._headers,
        )
        if response.status_code == 429:
            raise EmailSendError(f"rate_limit_exceeded: {response.text}")
        if not response.is_success:
            raise EmailSendError(
                f"Email provider returned {response.status_code}: {response.text}"
            )
        body = response.json()
        return body.get("id") if isinstance(body, dict) else None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class OrderStatusNotifier:
    """Queue an admin email whenever an order changes status."""

    def __init__(
        self,
        queue: ProcessingQueue,
        *,
        admin_email: str | None,
        from_address: str | None = None,
    ) -> None:
        self.queue = queue
        self.admin_email = admin_email
        self.from_address = from_address

    def order_status_changed(
        self,
        order_id: str,
        previous: str,
        current: str,
        *,
        order: Any = None,
    ) -> None:
        if not self.admin_email:
            logger.debug("No admin email configured, skipping status alert")
            return
        summary = f"Order {order_id}: {previous} → {current}"
        details = ""
        if order is not None and getattr(order, "customer_name", None):
            details = f"<p>Customer: {html.escape(order.customer_name)}</p>"
        self.queue.enqueue_email(
            EmailMessage(
                to=self.admin_email,
                subject=f"Order status changed: {current}",
                html=f"<p>{html.escape(summary)}</p>{details}",
                from_address=self.from_address,
                priority=1 if current == "CANCELLED" else 0,
            )
        )
