"""Shippo carrier API client over httpx."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from fastapi_ordersync.exceptions import CarrierError, RateExpiredError

logger = logging.getLogger(__name__)

RATE_EXPIRED_MARKERS = ("rate expired", "rate_expired", "has expired")


@dataclass(frozen=True)
class CarrierTransaction:
    status: str
    label_url: str | None = None
    tracking_number: str | None = None
    messages: list[str] = field(default_factory=list)
    object_id: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> CarrierTransaction:
        messages = []
        for message in data.get("messages") or []:
            if isinstance(message, dict):
                text = message.get("text")
                if text:
                    messages.append(str(text))
            elif message:
                messages.append(str(message))
        return cls(
            status=str(data.get("status") or "UNKNOWN").upper(),
            label_url=data.get("label_url") or data.get("labelUrl"),
            tracking_number=data.get("tracking_number") or data.get("trackingNumber"),
            messages=messages,
            object_id=data.get("object_id"),
        )


@dataclass(frozen=True)
class CarrierRate:
    id: str | None
    carrier: str
    amount: str = ""
    servicelevel: str = ""
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> CarrierRate:
        servicelevel = data.get("servicelevel")
        if isinstance(servicelevel, dict):
            servicelevel = servicelevel.get("name") or servicelevel.get("token")
        return cls(
            id=data.get("id") or data.get("object_id"),
            carrier=str(data.get("carrier") or data.get("provider") or ""),
            amount=str(data.get("amount") or ""),
            servicelevel=str(servicelevel or ""),
            raw=data,
        )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("detail", "message", "error"):
            if body.get(key):
                return str(body[key])
        messages = body.get("messages")
        if isinstance(messages, list) and messages:
            return ", ".join(
                str(m.get("text", m)) if isinstance(m, dict) else str(m)
                for m in messages
            )
    return str(body)


class ShippoClient:
    """Minimal Shippo REST client: label purchase and rate quotes."""

    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = "https://api.goshippo.com",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"ShippoToken {api_token}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(
            f"{self._base_url}{path}", json=payload, headers=self._headers
        )
        if response.is_success:
            return response.json()
        message = _error_message(response)
        if any(marker in message.lower() for marker in RATE_EXPIRED_MARKERS):
            raise RateExpiredError(message, status_code=response.status_code)
        raise CarrierError(message, status_code=response.status_code)

    async def create_transaction(
        self,
        rate_id: str,
        *,
        metadata: str | None = None,
        label_file_type: str = "PDF_4x6",
    ) -> CarrierTransaction:
        payload: dict[str, Any] = {
            "rate": rate_id,
            "label_file_type": label_file_type,
            "async": False,
        }
        if metadata:
            payload["metadata"] = metadata
        data = await self._post("/transactions/", payload)
        return CarrierTransaction.from_api(data)

    async def get_rates(
        self,
        *,
        address_from: dict[str, Any],
        address_to: dict[str, Any],
        parcels: list[dict[str, Any]],
    ) -> list[CarrierRate]:
        data = await self._post(
            "/shipments/",
            {
                "address_from": address_from,
                "address_to": address_to,
                "parcels": parcels,
                "async": False,
            },
        )
        rates = [CarrierRate.from_api(rate) for rate in data.get("rates") or []]
        logger.debug("Carrier returned %d rates", len(rates))
        return rates

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
