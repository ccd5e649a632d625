"""SQLAlchemy dead-letter store tests."""

from fastapi_ordersync.protocols import DeadLetterStore


def test_satisfies_protocol(dead_letter_store) -> None:
    assert isinstance(dead_letter_store, DeadLetterStore)


async def test_store_and_list(dead_letter_store) -> None:
    entry_id = await dead_letter_store.store(
        event_type="payment.updated",
        event_id="evt-1",
        order_id="ORD-1",
        payload={"type": "payment.updated"},
        error="boom",
        attempts=5,
    )

    [entry] = await dead_letter_store.list_pending()
    assert entry["id"] == entry_id
    assert entry["event_type"] == "payment.updated"
    assert entry["payload"] == {"type": "payment.updated"}
    assert entry["attempts"] == 5


async def test_replayed_entries_are_hidden(dead_letter_store) -> None:
    first = await dead_letter_store.store(
        event_type="order.created",
        event_id="evt-1",
        order_id=None,
        payload={},
        error="x",
        attempts=1,
    )
    await dead_letter_store.store(
        event_type="order.created",
        event_id="evt-2",
        order_id=None,
        payload={},
        error="y",
        attempts=1,
    )

    await dead_letter_store.mark_replayed(first)

    pending = await dead_letter_store.list_pending()
    assert [entry["event_id"] for entry in pending] == ["evt-2"]


async def test_mark_replayed_unknown_id_is_noop(dead_letter_store) -> None:
    await dead_letter_store.mark_replayed("missing")
    assert await dead_letter_store.list_pending() == []
