"""Webhook signature validation for the payment provider and the carrier.

Both schemes are HMAC based. The carrier signs the raw body only
(hex digest); the payment provider signs ``notification_url + body``
(base64 digest). Validation never raises: it returns a
:class:`SignatureVerdict` and callers decide how to respond.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ValidationError

from fastapi_ordersync.schemas import ShippoWebhookPayload, SquareWebhookPayload

logger = logging.getLogger(__name__)

SHIPPO_SIGNATURE_HEADER = "x-shippo-signature"
SQUARE_SIGNATURE_HEADER_SHA256 = "x-square-hmacsha256-signature"
SQUARE_SIGNATURE_HEADER_SHA1 = "x-square-signature"
SQUARE_ENVIRONMENT_HEADER = "square-environment"


class SignatureFailure(StrEnum):
    MISSING_SIGNATURE = "MISSING_SIGNATURE"
    MISSING_SECRET = "MISSING_SECRET"
    MALFORMED_BODY = "MALFORMED_BODY"
    EVENT_TOO_OLD = "EVENT_TOO_OLD"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


@dataclass(frozen=True)
class SignatureVerdict:
    valid: bool
    reason: SignatureFailure | None = None
    details: str | None = None
    algorithm: str | None = None
    payload: BaseModel | None = None


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def _clean_secret(secret: str | None) -> str | None:
    if secret is None:
        return None
    return secret.strip() or None


def _to_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def compute_shippo_signature(raw_body: bytes | str, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body."""
    return hmac.new(
        secret.strip().encode("utf-8"), _to_bytes(raw_body), hashlib.sha256
    ).hexdigest()


def compute_square_signature(
    raw_body: bytes | str,
    secret: str,
    notification_url: str,
    algorithm: str = "sha256",
) -> str:
    """Base64 HMAC of ``notification_url + body``."""
    digest = hmac.new(
        secret.strip().encode("utf-8"),
        notification_url.encode("utf-8") + _to_bytes(raw_body),
        getattr(hashlib, algorithm),
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def _compare_hex(received: str, expected: str) -> bool:
    try:
        received_bytes = bytes.fromhex(received)
    except ValueError:
        return received == expected
    expected_bytes = bytes.fromhex(expected)
    if len(received_bytes) != len(expected_bytes):
        return False
    return hmac.compare_digest(received_bytes, expected_bytes)


def _compare_base64(received: str, expected: str) -> bool:
    try:
        received_bytes = base64.b64decode(received, validate=True)
    except (binascii.Error, ValueError):
        return received == expected
    expected_bytes = base64.b64decode(expected)
    if len(received_bytes) != len(expected_bytes):
        return False
    return hmac.compare_digest(received_bytes, expected_bytes)


def _parse_envelope(
    raw_body: bytes, model: type[BaseModel]
) -> tuple[BaseModel | None, str | None]:
    try:
        data: Any = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        return None, f"Invalid JSON: {exc}"
    if not isinstance(data, dict):
        return None, "Payload must be a JSON object"
    try:
        return model.model_validate(data), None
    except ValidationError as exc:
        fields = ", ".join(
            ".".join(str(part) for part in error["loc"]) for error in exc.errors()
        )
        return None, f"Invalid envelope fields: {fields}"


def validate_shippo_webhook(
    raw_body: bytes | str,
    headers: Mapping[str, str],
    secret: str | None,
) -> SignatureVerdict:
    """Validate a carrier webhook."""
    body = _to_bytes(raw_body)

    signature = _header(headers, SHIPPO_SIGNATURE_HEADER)
    if not signature:
        return SignatureVerdict(
            valid=False,
            reason=SignatureFailure.MISSING_SIGNATURE,
            details=f"Missing {SHIPPO_SIGNATURE_HEADER} header",
        )

    secret = _clean_secret(secret)
    if secret is None:
        return SignatureVerdict(
            valid=False,
            reason=SignatureFailure.MISSING_SECRET,
            details="Shippo webhook secret not configured",
        )

    payload, error = _parse_envelope(body, ShippoWebhookPayload)
    if payload is None:
        return SignatureVerdict(
            valid=False, reason=SignatureFailure.MALFORMED_BODY, details=error
        )

    expected = compute_shippo_signature(body, secret)
    if not _compare_hex(signature.strip(), expected):
        logger.warning(
            "Shippo webhook signature mismatch for event %s",
            getattr(payload, "event", None),
        )
        return SignatureVerdict(
            valid=False,
            reason=SignatureFailure.INVALID_SIGNATURE,
            details="Signature mismatch",
            algorithm="sha256",
        )

    return SignatureVerdict(valid=True, algorithm="sha256", payload=payload)


def _event_too_old(created_at: str, max_age_seconds: int) -> bool:
    try:
        created = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    except ValueError:
        return True
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    age = (datetime.now(tz=UTC) - created).total_seconds()
    return age > max_age_seconds


def validate_square_webhook(
    raw_body: bytes | str,
    headers: Mapping[str, str],
    secret: str | None,
    notification_url: str,
    *,
    sandbox_secret: str | None = None,
    max_event_age_seconds: int | None = None,
) -> SignatureVerdict:
    """Validate a payment provider webhook.

    The SHA-256 header is preferred; the legacy SHA-1 header is accepted
    when it is the only one present. Sandbox deliveries use
    ``sandbox_secret`` when it is configured.
    """
    body = _to_bytes(raw_body)

    signature = _header(headers, SQUARE_SIGNATURE_HEADER_SHA256)
    algorithm = "sha256"
    if not signature:
        signature = _header(headers, SQUARE_SIGNATURE_HEADER_SHA1)
        algorithm = "sha1"
    if not signature:
        return SignatureVerdict(
            valid=False,
            reason=SignatureFailure.MISSING_SIGNATURE,
            details=f"Missing {SQUARE_SIGNATURE_HEADER_SHA256} header",
        )

    environment = (_header(headers, SQUARE_ENVIRONMENT_HEADER) or "").lower()
    if environment == "sandbox":
        secret = _clean_secret(sandbox_secret) or _clean_secret(secret)
    else:
        secret = _clean_secret(secret)
    if secret is None:
        return SignatureVerdict(
            valid=False,
            reason=SignatureFailure.MISSING_SECRET,
            details=(
                "Square webhook secret not configured "
                f"({environment or 'production'})"
            ),
        )

    payload, error = _parse_envelope(body, SquareWebhookPayload)
    if payload is None:
        return SignatureVerdict(
            valid=False, reason=SignatureFailure.MALFORMED_BODY, details=error
        )

    if max_event_age_seconds is not None and _event_too_old(
        payload.created_at, max_event_age_seconds
    ):
        return SignatureVerdict(
            valid=False,
            reason=SignatureFailure.EVENT_TOO_OLD,
            details=f"Event created at {payload.created_at}",
        )

    expected = compute_square_signature(body, secret, notification_url, algorithm)
    if not _compare_base64(signature.strip(), expected):
        logger.warning(
            "Square webhook signature mismatch for event %s", payload.event_id
        )
        return SignatureVerdict(
            valid=False,
            reason=SignatureFailure.INVALID_SIGNATURE,
            details="Signature mismatch",
            algorithm=algorithm,
        )

    return SignatureVerdict(valid=True, algorithm=algorithm, payload=payload)
