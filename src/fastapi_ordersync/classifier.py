"""Error classification driving retry policy.

The classifier only inspects the error value. It never touches the
database or the network.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum

import httpx
from pydantic import ValidationError
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm.exc import StaleDataError

from fastapi_ordersync.exceptions import (
    MalformedPayloadError,
    OrderNotFoundError,
    UnhandledWebhookTypeError,
)


class ErrorType(StrEnum):
    DATABASE_CONNECTION = "database-connection"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    NETWORK = "network"
    RACE_CONDITION = "race-condition"
    UNKNOWN = "unknown"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ErrorClassification:
    type: ErrorType
    severity: Severity
    can_retry: bool
    suggested_delay: float


CONNECTION_MESSAGE_PATTERNS = (
    "can't reach database server",
    "connection terminated",
    "connection refused",
    "server closed the connection",
    "econnreset",
    "econnrefused",
    "etimedout",
)

TIMEOUT_MESSAGE_PATTERNS = (
    "timed out after",
    "timeout exceeded",
)

VALIDATION_MESSAGE_PATTERNS = (
    "unique constraint",
    "foreign key constraint",
    "validation",
)

CONNECTION_DELAY = 5.0
TIMEOUT_DELAY = 30.0
NETWORK_DELAY = 5.0
RACE_DELAY_ORDER_UPDATED = 10.0
RACE_DELAY = 7.0
PAYMENT_DELAY = 8.0
DEFAULT_DELAY = 12.0


def _message(error: BaseException) -> str:
    return str(error).lower()


def is_connection_error(error: BaseException) -> bool:
    """True for driver-level connection failures and pool exhaustion."""
    if isinstance(
        error,
        (
            sa_exc.OperationalError,
            sa_exc.InterfaceError,
            sa_exc.DisconnectionError,
            sa_exc.TimeoutError,
            ConnectionError,
        ),
    ):
        return True
    message = _message(error)
    return any(pattern in message for pattern in CONNECTION_MESSAGE_PATTERNS)


def _is_timeout(error: BaseException) -> bool:
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return True
    message = _message(error)
    return any(pattern in message for pattern in TIMEOUT_MESSAGE_PATTERNS)


def _is_validation(error: BaseException) -> bool:
    if isinstance(
        error,
        (
            sa_exc.IntegrityError,
            ValidationError,
            MalformedPayloadError,
            UnhandledWebhookTypeError,
        ),
    ):
        return True
    message = _message(error)
    return any(pattern in message for pattern in VALIDATION_MESSAGE_PATTERNS)


def _default_delay(event_type: str | None) -> float:
    if event_type and event_type.startswith("payment."):
        return PAYMENT_DELAY
    return DEFAULT_DELAY


def classify(
    error: BaseException, event_type: str | None = None
) -> ErrorClassification:
    """Categorise ``error`` and suggest a retry delay in seconds.

    ``event_type`` only tunes the suggested delay; it never changes the
    category.
    """
    # Integrity errors subclass DBAPIError like OperationalError does, so
    # validation has to be checked first.
    if _is_validation(error):
        return ErrorClassification(
            type=ErrorType.VALIDATION,
            severity=Severity.MEDIUM,
            can_retry=False,
            suggested_delay=0.0,
        )

    if isinstance(error, sa_exc.TimeoutError):
        return ErrorClassification(
            type=ErrorType.DATABASE_CONNECTION,
            severity=Severity.MEDIUM,
            can_retry=True,
            suggested_delay=CONNECTION_DELAY,
        )

    if is_connection_error(error):
        return ErrorClassification(
            type=ErrorType.DATABASE_CONNECTION,
            severity=Severity.HIGH,
            can_retry=True,
            suggested_delay=CONNECTION_DELAY,
        )

    if _is_timeout(error):
        return ErrorClassification(
            type=ErrorType.TIMEOUT,
            severity=Severity.MEDIUM,
            can_retry=True,
            suggested_delay=TIMEOUT_DELAY,
        )

    if isinstance(error, httpx.TransportError):
        return ErrorClassification(
            type=ErrorType.NETWORK,
            severity=Severity.MEDIUM,
            can_retry=True,
            suggested_delay=NETWORK_DELAY,
        )

    if isinstance(error, (OrderNotFoundError, StaleDataError)):
        delay = (
            RACE_DELAY_ORDER_UPDATED if event_type == "order.updated" else RACE_DELAY
        )
        return ErrorClassification(
            type=ErrorType.RACE_CONDITION,
            severity=Severity.LOW,
            can_retry=True,
            suggested_delay=delay,
        )

    return ErrorClassification(
        type=ErrorType.UNKNOWN,
        severity=Severity.HIGH,
        can_retry=True,
        suggested_delay=_default_delay(event_type),
    )
