"""Shared fixtures for fastapi-ordersync tests."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from typing import Any

import pytest

from fastapi_ordersync.config import OrderSyncConfig
from fastapi_ordersync.signatures import (
    compute_shippo_signature,
    compute_square_signature,
)

SQUARE_SECRET = "square-test-secret"
SHIPPO_SECRET = "shippo-test-secret"
NOTIFICATION_URL = "https://shop.example.com/webhooks/square"


class FakeClock:
    """Monotonic clock advanced only by its own ``sleep``."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0.0)
        await asyncio.sleep(0)


class RecordingSender:
    def __init__(self, failures: list[Exception] | None = None) -> None:
        self.sent: list[Any] = []
        self.attempts: list[Any] = []
        self._failures = list(failures or [])

    async def send(self, message) -> str:
        self.attempts.append(message)
        if self._failures:
            raise self._failures.pop(0)
        self.sent.append(message)
        return f"email-{len(self.sent)}"


class RecordingDeadLetterStore:
    def __init__(self) -> None:
        self.entries: list[dict] = []

    async def store(self, **entry) -> str:
        self.entries.append(entry)
        return f"dead-{len(self.entries)}"


def square_event(
    event_type: str,
    object_id: str,
    obj: dict[str, Any] | None = None,
    *,
    event_id: str = "evt-1",
    created_at: str | None = None,
) -> dict[str, Any]:
    """Build a payment provider webhook envelope."""
    return {
        "merchant_id": "MERCHANT",
        "type": event_type,
        "event_id": event_id,
        "created_at": created_at or datetime.now(tz=UTC).isoformat(),
        "location_id": "LOC",
        "data": {
            "type": event_type.split(".")[0],
            "id": object_id,
            "object": obj or {},
        },
    }


def order_created(
    square_order_id: str,
    *,
    event_id: str = "evt-created",
    state: str = "OPEN",
    total: int = 2500,
) -> dict:
    return square_event(
        "order.created",
        square_order_id,
        {
            "order_created": {
                "order_id": square_order_id,
                "state": state,
                "total_money": {"amount": total, "currency": "USD"},
            }
        },
        event_id=event_id,
    )


def payment_event(
    event_type: str,
    square_payment_id: str,
    square_order_id: str,
    *,
    status: str = "COMPLETED",
    amount: int = 2500,
    event_id: str = "evt-payment",
    **extra: Any,
) -> dict:
    return square_event(
        event_type,
        square_payment_id,
        {
            "payment": {
                "id": square_payment_id,
                "order_id": square_order_id,
                "status": status,
                "amount_money": {"amount": amount, "currency": "USD"},
                **extra,
            }
        },
        event_id=event_id,
    )


def sign_square(
    body: bytes, secret: str = SQUARE_SECRET, url: str = NOTIFICATION_URL
) -> dict[str, str]:
    return {
        "content-type": "application/json",
        "x-square-hmacsha256-signature": compute_square_signature(body, secret, url),
    }


def sign_shippo(body: bytes, secret: str = SHIPPO_SECRET) -> dict[str, str]:
    return {
        "content-type": "application/json",
        "x-shippo-signature": compute_shippo_signature(body, secret),
    }


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def config() -> OrderSyncConfig:
    return OrderSyncConfig(
        square_webhook_secret=SQUARE_SECRET,
        square_notification_url=NOTIFICATION_URL,
        shippo_webhook_secret=SHIPPO_SECRET,
        queue_tick_seconds=0.0,
        queue_idle_seconds=0.01,
        ship_from_address={"name": "Shop", "zip": "94103", "country": "US"},
    )


@pytest.fixture()
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture()
def dead_letters() -> RecordingDeadLetterStore:
    return RecordingDeadLetterStore()


@pytest.fixture()
async def async_engine():
    """Create an in-memory aiosqlite async engine."""
    sa = pytest.importorskip("sqlalchemy")  # noqa: F841
    from sqlalchemy.ext.asyncio import create_async_engine
    from sqlalchemy.pool import StaticPool

    from fastapi_ordersync.contrib.sqlalchemy.models import Base

    engine = create_async_engine(
        "sqlite+aiosqlite://", echo=False, poolclass=StaticPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
async def async_session_factory(async_engine):
    """Create an async session factory bound to the in-memory engine."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    factory = async_sessionmaker(
        async_engine, class_=AsyncSession, expire_on_commit=False
    )
    yield factory


@pytest.fixture()
def order_store(async_session_factory, config):
    """Create an SQLAlchemyOrderStore."""
    from fastapi_ordersync.contrib.sqlalchemy.store import SQLAlchemyOrderStore

    async def no_sleep(_: float) -> None:
        return None

    return SQLAlchemyOrderStore(async_session_factory, config=config, sleep=no_sleep)


@pytest.fixture()
def dead_letter_store(async_session_factory):
    """Create an SQLAlchemyDeadLetterStore."""
    from fastapi_ordersync.contrib.sqlalchemy.dead_letter_store import (
        SQLAlchemyDeadLetterStore,
    )

    return SQLAlchemyDeadLetterStore(async_session_factory)
