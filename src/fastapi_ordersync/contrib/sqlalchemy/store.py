"""SQLAlchemy implementation of the transactional order store."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from fastapi_ordersync.classifier import is_connection_error
from fastapi_ordersync.config import OrderSyncConfig
from fastapi_ordersync.contrib.sqlalchemy.models import (
    OrderModel,
    PaymentModel,
    ProcessedEventModel,
    RefundModel,
)
from fastapi_ordersync.exceptions import OrderNotFoundError
from fastapi_ordersync.retry import retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UPSERT_DIALECTS = ("postgresql", "sqlite")


def _insert_for(dialect_name: str):
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


class OrderTransaction:
    """Reads and writes bound to one open database transaction.

    Reads take row locks (``SELECT ... FOR UPDATE``) on dialects that
    support them, so concurrent deliveries for the same order serialize
    on the row instead of racing past the idempotency check.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.dialect_name = session.bind.dialect.name if session.bind else ""

    async def _first(self, stmt, *, lock: bool):
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_order(self, order_id: str, *, lock: bool = True) -> OrderModel | None:
        return await self._first(
            select(OrderModel).where(OrderModel.id == order_id), lock=lock
        )

    async def get_order_by_square_id(
        self, square_order_id: str, *, lock: bool = True
    ) -> OrderModel | None:
        return await self._first(
            select(OrderModel).where(OrderModel.square_order_id == square_order_id),
            lock=lock,
        )

    async def get_order_by_tracking_number(
        self, tracking_number: str, *, lock: bool = True
    ) -> OrderModel | None:
        return await self._first(
            select(OrderModel).where(OrderModel.tracking_number == tracking_number),
            lock=lock,
        )

    async def get_payment(
        self, payment_id: str, *, lock: bool = True
    ) -> PaymentModel | None:
        return await self._first(
            select(PaymentModel).where(PaymentModel.id == payment_id), lock=lock
        )

    async def get_payment_by_square_id(
        self, square_payment_id: str, *, lock: bool = True
    ) -> PaymentModel | None:
        return await self._first(
            select(PaymentModel).where(
                PaymentModel.square_payment_id == square_payment_id
            ),
            lock=lock,
        )

    async def get_refund_by_square_id(
        self, square_refund_id: str, *, lock: bool = True
    ) -> RefundModel | None:
        return await self._first(
            select(RefundModel).where(RefundModel.square_refund_id == square_refund_id),
            lock=lock,
        )

    async def _upsert(
        self,
        model: type[Any],
        key: str,
        key_value: str,
        create: dict[str, Any],
        update: dict[str, Any],
    ) -> Any:
        """Insert ``create`` or apply ``update`` to the row matching ``key``.

        A single ``INSERT ... ON CONFLICT DO UPDATE`` on PostgreSQL and
        SQLite; other dialects fall back to a locked read then write.
        """
        values = {**create, key: key_value}
        update = {**update, "updated_at": datetime.now(tz=UTC)}
        if not hasattr(model, "updated_at"):
            update.pop("updated_at")

        if self.dialect_name in _UPSERT_DIALECTS:
            insert = _insert_for(self.dialect_name)
            stmt = insert(model).values(**values)
            if update:
                stmt = stmt.on_conflict_do_update(
                    index_elements=[getattr(model, key)], set_=update
                )
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=[getattr(model, key)])
            await self.session.execute(stmt)
            result = await self.session.execute(
                select(model)
                .where(getattr(model, key) == key_value)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one()

        existing = await self._first(
            select(model).where(getattr(model, key) == key_value), lock=True
        )
        if existing is None:
            existing = model(**values)
            self.session.add(existing)
        else:
            for field, value in update.items():
                setattr(existing, field, value)
        await self.session.flush()
        return existing

    async def upsert_order(
        self,
        square_order_id: str,
        *,
        create: dict[str, Any],
        update: dict[str, Any],
    ) -> OrderModel:
        return await self._upsert(
            OrderModel, "square_order_id", square_order_id, create, update
        )

    async def upsert_payment(
        self,
        square_payment_id: str,
        *,
        create: dict[str, Any],
        update: dict[str, Any],
    ) -> PaymentModel:
        return await self._upsert(
            PaymentModel, "square_payment_id", square_payment_id, create, update
        )

    async def upsert_refund(
        self,
        square_refund_id: str,
        *,
        create: dict[str, Any],
        update: dict[str, Any],
    ) -> RefundModel:
        return await self._upsert(
            RefundModel, "square_refund_id", square_refund_id, create, update
        )

    async def update_order(self, order: OrderModel, **fields: Any) -> OrderModel:
        for key, value in fields.items():
            if not hasattr(order, key):
                raise AttributeError(f"OrderModel has no field {key!r}")
            setattr(order, key, value)
        await self.session.flush()
        return order

    async def is_event_processed(
        self, resource_type: str, resource_id: str, event_id: str
    ) -> bool:
        result = await self.session.execute(
            select(ProcessedEventModel.id).where(
                ProcessedEventModel.resource_type == resource_type,
                ProcessedEventModel.resource_id == resource_id,
                ProcessedEventModel.event_id == event_id,
            )
        )
        return result.first() is not None

    async def record_event(
        self,
        resource_type: str,
        resource_id: str,
        event_id: str,
        event_type: str = "",
    ) -> None:
        values = {
            "resource_type": resource_type,
            "resource_id": resource_id,
            "event_id": event_id,
            "event_type": event_type,
            "processed_at": datetime.now(tz=UTC),
        }
        if self.dialect_name in _UPSERT_DIALECTS:
            insert = _insert_for(self.dialect_name)
            await self.session.execute(
                insert(ProcessedEventModel)
                .values(**values)
                .on_conflict_do_nothing(
                    index_elements=["resource_type", "resource_id", "event_id"]
                )
            )
            return
        if not await self.is_event_processed(resource_type, resource_id, event_id):
            self.session.add(ProcessedEventModel(**values))
            await self.session.flush()


class SQLAlchemyOrderStore:
    """Order store backed by SQLAlchemy async sessions.

    Models handed back from :meth:`run_in_transaction` are detached once
    the transaction commits; build the session factory with
    ``expire_on_commit=False`` so their attributes stay readable.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        config: OrderSyncConfig | None = None,
        engine: AsyncEngine | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.config = config or OrderSyncConfig()
        self.engine = engine or session_factory.kw.get("bind")
        self._sleep = sleep

    async def run_in_transaction(
        self,
        operation: Callable[[OrderTransaction], Awaitable[T]],
        *,
        name: str = "transaction",
    ) -> T:
        """Run ``operation`` atomically, retrying the whole transaction on
        connection errors."""

        async def attempt() -> T:
            async with self.session_factory() as session:
                async with session.begin():
                    return await operation(OrderTransaction(session))

        return await retry_async(
            attempt,
            attempts=self.config.db_transaction_retries + 1,
            should_retry=is_connection_error,
            base_delay=self.config.db_retry_base_delay_seconds,
            max_delay=self.config.db_retry_max_delay_seconds,
            name=name,
            before_retry=self.reconnect,
            sleep=self._sleep,
        )

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str = "database operation",
    ) -> T:
        return await retry_async(
            operation,
            attempts=self.config.db_retry_attempts,
            should_retry=is_connection_error,
            base_delay=self.config.db_retry_base_delay_seconds,
            max_delay=self.config.db_retry_max_delay_seconds,
            name=name,
            sleep=self._sleep,
        )

    async def ensure_connection(self) -> None:
        async with self.session_factory() as session:
            await session.execute(text("SELECT 1"))

    async def reconnect(self) -> None:
        """Drop pooled connections and verify a fresh one."""
        if self.engine is not None:
            logger.warning("Disposing database connection pool")
            await self.engine.dispose()
        await self.ensure_connection()

    async def get_order(self, order_id: str) -> OrderModel | None:
        async def load() -> OrderModel | None:
            async with self.session_factory() as session:
                return await session.get(OrderModel, order_id)

        return await self.with_retry(load, name=f"get_order({order_id})")

    async def update_order(self, order_id: str, **fields: Any) -> OrderModel:
        async def apply(tx: OrderTransaction) -> OrderModel:
            order = await tx.get_order(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            return await tx.update_order(order, **fields)

        return await self.run_in_transaction(apply, name=f"update_order({order_id})")
