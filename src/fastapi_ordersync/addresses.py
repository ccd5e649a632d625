"""Shipping address extraction from the shapes orders have stored over time.

Each source handles one historical shape and returns ``None`` when the
order does not use it. :func:`extract_shipping_address` tries them in
order.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from fastapi_ordersync.exceptions import AddressExtractionError

logger = logging.getLogger(__name__)


class ShippingAddress(BaseModel):
    name: str = ""
    street1: str = ""
    street2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "US"
    phone: str = ""
    email: str = ""

    def to_carrier(self) -> dict[str, str]:
        """Address in the carrier API's field names."""
        return {
            "name": self.name,
            "street1": self.street1,
            "street2": self.street2,
            "city": self.city,
            "state": self.state,
            "zip": self.postal_code,
            "country": self.country,
            "phone": self.phone,
            "email": self.email,
        }


def _first(*values: Any) -> str:
    for value in values:
        if value:
            return str(value)
    return ""


@runtime_checkable
class AddressSource(Protocol):
    name: str

    def extract(self, order: Any) -> ShippingAddress | None: ...


def _from_square_recipient(recipient: dict[str, Any], order: Any) -> ShippingAddress:
    address = recipient.get("address") or {}
    return ShippingAddress(
        name=_first(
            recipient.get("display_name"), recipient.get("name"), order.customer_name
        ),
        street1=_first(address.get("address_line_1"), address.get("street")),
        street2=_first(address.get("address_line_2"), address.get("street2")),
        city=_first(address.get("locality"), address.get("city")),
        state=_first(
            address.get("administrative_district_level_1"), address.get("state")
        ),
        postal_code=_first(address.get("postal_code"), address.get("postalCode")),
        country=_first(address.get("country"), "US"),
        phone=_first(
            recipient.get("phone_number"), recipient.get("phone"), order.phone
        ),
        email=_first(order.email),
    )


class FulfillmentRecipientSource:
    """``rawData.fulfillment.<details_key>.recipient``."""

    def __init__(self, details_key: str) -> None:
        self.details_key = details_key
        self.name = f"fulfillment.{details_key}"

    def extract(self, order: Any) -> ShippingAddress | None:
        fulfillment = (order.raw_data or {}).get("fulfillment") or {}
        recipient = (fulfillment.get(self.details_key) or {}).get("recipient")
        if not recipient:
            return None
        return _from_square_recipient(recipient, order)


class NotesJsonSource:
    """Legacy orders stored the address as JSON in ``notes``."""

    name = "notes"

    def extract(self, order: Any) -> ShippingAddress | None:
        if not order.notes:
            return None
        try:
            notes = json.loads(order.notes)
        except json.JSONDecodeError:
            logger.debug("Order %s notes are not JSON", order.id)
            return None
        if not isinstance(notes, dict):
            return None
        address = notes.get("deliveryAddress") or notes.get("shippingAddress")
        if not isinstance(address, dict):
            return None
        return ShippingAddress(
            name=_first(
                address.get("recipientName"), address.get("name"), order.customer_name
            ),
            street1=_first(address.get("street"), address.get("street1")),
            street2=_first(address.get("street2")),
            city=_first(address.get("city")),
            state=_first(address.get("state")),
            postal_code=_first(address.get("postalCode"), address.get("zip")),
            country=_first(address.get("country"), "US"),
            phone=_first(address.get("phone"), order.phone),
            email=_first(address.get("email"), order.email),
        )


class RawAddressSource:
    name = "rawData.address"

    def extract(self, order: Any) -> ShippingAddress | None:
        raw = order.raw_data or {}
        address = raw.get("address")
        if not isinstance(address, dict):
            return None
        return ShippingAddress(
            name=_first(raw.get("recipientName"), order.customer_name),
            street1=_first(address.get("street"), address.get("address_line_1")),
            street2=_first(address.get("street2"), address.get("address_line_2")),
            city=_first(address.get("city"), address.get("locality")),
            state=_first(
                address.get("state"), address.get("administrative_district_level_1")
            ),
            postal_code=_first(address.get("postalCode"), address.get("postal_code")),
            country=_first(address.get("country"), "US"),
            phone=_first(raw.get("phone"), order.phone),
            email=_first(order.email),
        )


class RawRecipientSource:
    name = "rawData.recipient"

    def extract(self, order: Any) -> ShippingAddress | None:
        recipient = (order.raw_data or {}).get("recipient")
        if not isinstance(recipient, dict):
            return None
        return _from_square_recipient(recipient, order)


DEFAULT_ADDRESS_SOURCES: tuple[AddressSource, ...] = (
    FulfillmentRecipientSource("shipment_details"),
    FulfillmentRecipientSource("delivery_details"),
    NotesJsonSource(),
    RawAddressSource(),
    RawRecipientSource(),
)


def extract_shipping_address(
    order: Any,
    sources: Sequence[AddressSource] = DEFAULT_ADDRESS_SOURCES,
) -> ShippingAddress:
    """Return the address from the first source that recognises the order."""
    for source in sources:
        address = source.extract(order)
        if address is not None:
            logger.debug("Order %s address taken from %s", order.id, source.name)
            return address
    raw_keys = sorted((order.raw_data or {}).keys())
    raise AddressExtractionError(
        f"Unable to extract shipping address from order {order.id} "
        f"(rawData keys: {', '.join(raw_keys) or 'none'})"
    )
