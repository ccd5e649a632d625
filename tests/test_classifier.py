"""Error classification tests."""

import httpx
import pytest
from pydantic import BaseModel, ValidationError
from sqlalchemy import exc as sa_exc

from fastapi_ordersync.classifier import (
    ErrorType,
    Severity,
    classify,
    is_connection_error,
)
from fastapi_ordersync.exceptions import (
    MalformedPayloadError,
    OrderNotFoundError,
    UnhandledWebhookTypeError,
)


class _Model(BaseModel):
    count: int


def _validation_error() -> ValidationError:
    try:
        _Model.model_validate({"count": "many"})
    except ValidationError as exc:
        return exc
    raise AssertionError("expected a validation error")


def test_operational_error_is_connection_error() -> None:
    error = sa_exc.OperationalError("SELECT 1", {}, Exception("server closed"))
    result = classify(error)
    assert result.type == ErrorType.DATABASE_CONNECTION
    assert result.severity == Severity.HIGH
    assert result.can_retry
    assert result.suggested_delay == 5.0


def test_pool_timeout_is_medium_connection_error() -> None:
    result = classify(sa_exc.TimeoutError("QueuePool limit reached"))
    assert result.type == ErrorType.DATABASE_CONNECTION
    assert result.severity == Severity.MEDIUM


@pytest.mark.parametrize(
    "message",
    [
        "Can't reach database server at db:5432",
        "Connection terminated unexpectedly",
        "read ECONNRESET",
    ],
)
def test_connection_messages(message) -> None:
    assert is_connection_error(RuntimeError(message))
    assert classify(RuntimeError(message)).type == ErrorType.DATABASE_CONNECTION


def test_integrity_error_is_validation_and_not_retried() -> None:
    error = sa_exc.IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
    result = classify(error)
    assert result.type == ErrorType.VALIDATION
    assert result.can_retry is False


@pytest.mark.parametrize(
    "error",
    [
        MalformedPayloadError("bad"),
        UnhandledWebhookTypeError("inventory.count.updated"),
        RuntimeError("Unique constraint failed on the fields: (`square_order_id`)"),
    ],
)
def test_validation_errors_not_retried(error) -> None:
    result = classify(error)
    assert result.type == ErrorType.VALIDATION
    assert not result.can_retry


def test_pydantic_validation_error_not_retried() -> None:
    assert classify(_validation_error()).type == ErrorType.VALIDATION


def test_timeout() -> None:
    result = classify(TimeoutError())
    assert result.type == ErrorType.TIMEOUT
    assert result.suggested_delay == 30.0

    assert classify(httpx.ReadTimeout("slow")).type == ErrorType.TIMEOUT
    assert classify(RuntimeError("Query timed out after 10s")).type == ErrorType.TIMEOUT


def test_network_error() -> None:
    result = classify(httpx.ConnectError("refused by host"))
    assert result.type == ErrorType.NETWORK
    assert result.can_retry


def test_missing_order_is_race_condition() -> None:
    error = OrderNotFoundError("ORD-1")
    assert classify(error, "order.updated").suggested_delay == 10.0
    result = classify(error, "payment.updated")
    assert result.type == ErrorType.RACE_CONDITION
    assert result.severity == Severity.LOW
    assert result.suggested_delay == 7.0


def test_unknown_error_delay_depends_on_event_type() -> None:
    assert classify(RuntimeError("boom"), "payment.created").suggested_delay == 8.0
    result = classify(RuntimeError("boom"), "order.created")
    assert result.type == ErrorType.UNKNOWN
    assert result.can_retry
    assert result.suggested_delay == 12.0


def test_event_type_never_changes_category() -> None:
    error = TimeoutError()
    assert classify(error, "payment.created").type == classify(error).type
