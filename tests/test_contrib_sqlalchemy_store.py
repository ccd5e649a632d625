"""SQLAlchemy order store tests."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import exc as sa_exc

from fastapi_ordersync.contrib.sqlalchemy.models import OrderItemModel, OrderModel
from fastapi_ordersync.contrib.sqlalchemy.store import (
    OrderTransaction,
    SQLAlchemyOrderStore,
)
from fastapi_ordersync.exceptions import OrderNotFoundError
from fastapi_ordersync.protocols import OrderStore


async def _create_order(order_store, **fields) -> OrderModel:
    async def create(tx: OrderTransaction) -> OrderModel:
        return await tx.upsert_order(
            fields.pop("square_order_id", "SQ-1"),
            create={"status": "PENDING", **fields},
            update={},
        )

    return await order_store.run_in_transaction(create)


def test_store_satisfies_protocol(order_store) -> None:
    assert isinstance(order_store, OrderStore)


async def test_upsert_creates_then_updates(order_store) -> None:
    created = await _create_order(order_store, total=Decimal("12.50"))
    assert created.square_order_id == "SQ-1"

    async def update(tx: OrderTransaction) -> OrderModel:
        return await tx.upsert_order(
            "SQ-1",
            create={"status": "PENDING"},
            update={"status": "PROCESSING"},
        )

    updated = await order_store.run_in_transaction(update)
    assert updated.id == created.id
    assert updated.status == "PROCESSING"


async def test_upsert_with_empty_update_keeps_row(order_store) -> None:
    created = await _create_order(order_store, status="READY")
    again = await _create_order(order_store, status="PENDING")

    assert again.id == created.id
    assert again.status == "READY"


async def test_get_and_update_order(order_store) -> None:
    created = await _create_order(order_store)

    updated = await order_store.update_order(created.id, tracking_number="9400")
    loaded = await order_store.get_order(created.id)

    assert updated.tracking_number == "9400"
    assert loaded.tracking_number == "9400"


async def test_get_order_loads_items(order_store, async_session_factory) -> None:
    created = await _create_order(order_store)
    async with async_session_factory() as session:
        session.add(
            OrderItemModel(
                order_id=created.id, name="Box", quantity=2, weight_lb=Decimal("1.5")
            )
        )
        await session.commit()

    loaded = await order_store.get_order(created.id)
    assert [item.name for item in loaded.items] == ["Box"]


async def test_update_missing_order_raises(order_store) -> None:
    with pytest.raises(OrderNotFoundError):
        await order_store.update_order("missing", status="READY")


async def test_update_unknown_field_raises(order_store) -> None:
    created = await _create_order(order_store)
    with pytest.raises(AttributeError):
        await order_store.update_order(created.id, colour="blue")


async def test_transaction_rolls_back_on_error(order_store) -> None:
    created = await _create_order(order_store)

    async def fail(tx: OrderTransaction) -> None:
        order = await tx.get_order(created.id)
        await tx.update_order(order, status="CANCELLED")
        raise ValueError("abort")

    with pytest.raises(ValueError):
        await order_store.run_in_transaction(fail)

    loaded = await order_store.get_order(created.id)
    assert loaded.status == "PENDING"


async def test_event_recording_is_idempotent(order_store) -> None:
    async def record(tx: OrderTransaction) -> bool:
        await tx.record_event("order", "SQ-1", "evt-1", "order.created")
        await tx.record_event("order", "SQ-1", "evt-1", "order.created")
        return await tx.is_event_processed("order", "SQ-1", "evt-1")

    assert await order_store.run_in_transaction(record) is True

    async def check_other(tx: OrderTransaction) -> bool:
        return await tx.is_event_processed("payment", "SQ-1", "evt-1")

    assert await order_store.run_in_transaction(check_other) is False


async def test_lookup_by_tracking_number(order_store) -> None:
    created = await _create_order(order_store)
    await order_store.update_order(created.id, tracking_number="1Z999")

    async def find(tx: OrderTransaction):
        return await tx.get_order_by_tracking_number("1Z999")

    found = await order_store.run_in_transaction(find)
    assert found.id == created.id


class TestConnectionRetry:
    async def test_transaction_retried_after_connection_error(
        self, async_session_factory, config
    ) -> None:
        sleeps = []

        async def sleep(seconds: float) -> None:
            sleeps.append(seconds)

        store = SQLAlchemyOrderStore(async_session_factory, config=config, sleep=sleep)
        store.reconnect = AsyncMock()
        calls = []

        async def operation(tx: OrderTransaction) -> str:
            calls.append(1)
            if len(calls) == 1:
                raise sa_exc.OperationalError("SELECT 1", {}, Exception("gone"))
            return "done"

        assert await store.run_in_transaction(operation) == "done"
        assert len(calls) == 2
        assert sleeps == [1.0]
        store.reconnect.assert_awaited_once()

    async def test_gives_up_after_configured_retries(
        self, async_session_factory, config
    ) -> None:
        async def sleep(seconds: float) -> None:
            return None

        store = SQLAlchemyOrderStore(async_session_factory, config=config, sleep=sleep)
        store.reconnect = AsyncMock()
        calls = []

        async def operation(tx: OrderTransaction) -> None:
            calls.append(1)
            raise ConnectionError("connection refused")

        with pytest.raises(ConnectionError):
            await store.run_in_transaction(operation)
        assert len(calls) == config.db_transaction_retries + 1

    async def test_non_connection_errors_are_not_retried(
        self, async_session_factory, config
    ) -> None:
        store = SQLAlchemyOrderStore(async_session_factory, config=config)
        calls = []

        async def operation(tx: OrderTransaction) -> None:
            calls.append(1)
            raise ValueError("bad data")

        with pytest.raises(ValueError):
            await store.run_in_transaction(operation)
        assert len(calls) == 1

    async def test_reconnect_disposes_pool_and_checks_connection(
        self, async_session_factory
    ) -> None:
        engine = AsyncMock()
        store = SQLAlchemyOrderStore(async_session_factory, engine=engine)
        store.ensure_connection = AsyncMock()

        await store.reconnect()

        engine.dispose.assert_awaited_once()
        store.ensure_connection.assert_awaited_once()

    async def test_ensure_connection(self, order_store) -> None:
        await order_store.ensure_connection()


async def test_order_payments_are_never_lazy_loaded(order_store) -> None:
    created = await _create_order(order_store)

    async def pay(tx: OrderTransaction):
        return await tx.upsert_payment(
            "PAY-1",
            create={"order_id": created.id, "amount": Decimal("5.00")},
            update={},
        )

    payment = await order_store.run_in_transaction(pay)
    assert payment.order_id == created.id

    loaded = await order_store.get_order(created.id)
    with pytest.raises(sa_exc.InvalidRequestError):
        loaded.payments
