"""SQLAlchemy dead-letter store for permanently failed webhooks."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fastapi_ordersync.contrib.sqlalchemy.models import DeadLetterModel


class SQLAlchemyDeadLetterStore:
    """Persist webhooks that exhausted their retries in a SQLAlchemy table."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        self.session_factory = session_factory

    async def store(
        self,
        *,
        event_type: str,
        event_id: str | None,
        order_id: str | None,
        payload: dict[str, Any],
        error: str,
        attempts: int,
    ) -> str:
        entry_id = str(uuid.uuid4())
        entry = DeadLetterModel(
            id=entry_id,
            event_type=event_type,
            event_id=event_id,
            order_id=order_id,
            payload=payload,
            error=error,
            attempts=attempts,
        )
        async with self.session_factory() as session:
            session.add(entry)
            await session.commit()
        return entry_id

    async def list_pending(self, limit: int = 50) -> list[dict[str, Any]]:
        """Entries not yet replayed, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeadLetterModel)
                .where(DeadLetterModel.replayed_at.is_(None))
                .order_by(DeadLetterModel.created_at)
                .limit(limit)
            )
            return [
                {
                    "id": row.id,
                    "event_type": row.event_type,
                    "event_id": row.event_id,
                    "order_id": row.order_id,
                    "payload": row.payload,
                    "error": row.error,
                    "attempts": row.attempts,
                }
                for row in result.scalars()
            ]

    async def mark_replayed(self, entry_id: str) -> None:
        async with self.session_factory() as session:
            entry = await session.get(DeadLetterModel, entry_id)
            if entry is not None:
                entry.replayed_at = datetime.now(tz=UTC)
                await session.commit()
