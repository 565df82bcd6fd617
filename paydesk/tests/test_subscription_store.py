"""Tests for the SQLAlchemy-backed subscription store."""

from datetime import timedelta

import pytest

from paydesk.core.database import create_store_engine
from paydesk.core.errors import RecordNotFoundError, TableNotFoundError
from paydesk.features.billing.store import SqlStore
from paydesk.tests.mocks import NOW, make_subscription, subscription_row


@pytest.mark.asyncio
async def test_insert_returns_stored_row(store):
    row = subscription_row(make_subscription(metadata={"source": "test"}))

    stored = await store.insert("subscriptions", row)

    assert stored["id"] == row["id"]
    assert stored["metadata"] == {"source": "test"}
    assert stored["cancel_at_period_end"] is False


@pytest.mark.asyncio
async def test_select_filters_and_orders(store):
    older = make_subscription(id="a", created_at=NOW - timedelta(days=20))
    newer = make_subscription(id="b", created_at=NOW - timedelta(days=1))
    other_user = make_subscription(id="c", user_id="user_bob")
    for sub in (older, newer, other_user):
        await store.insert("subscriptions", subscription_row(sub))

    rows = await store.select_many("subscriptions", {"user_id": "user_alice"}, order_by=("created_at", True))
    assert [row["id"] for row in rows] == ["b", "a"]

    first = await store.select_one("subscriptions", {"user_id": "user_alice"}, order_by=("created_at", False))
    assert first["id"] == "a"

    assert await store.select_one("subscriptions", {"user_id": "nobody"}) is None


@pytest.mark.asyncio
async def test_update_returns_updated_row(store):
    await store.insert("subscriptions", subscription_row(make_subscription(id="a")))

    updated = await store.update("subscriptions", {"id": "a"}, {"status": "past_due"})

    assert updated["status"] == "past_due"


@pytest.mark.asyncio
async def test_update_missing_row(store):
    with pytest.raises(RecordNotFoundError):
        await store.update("subscriptions", {"id": "missing"}, {"status": "active"})


@pytest.mark.asyncio
async def test_missing_table_is_distinguishable():
    """A database without the plan table reports TableNotFoundError."""
    engine = create_store_engine("sqlite://")
    try:
        with pytest.raises(TableNotFoundError) as exc_info:
            await SqlStore(engine).select_many("subscription_plans", {"active": True})
        assert exc_info.value.table == "subscription_plans"
        assert "does not exist" in exc_info.value.message
    finally:
        engine.dispose()


@pytest.mark.asyncio
async def test_unknown_table_name(store):
    with pytest.raises(TableNotFoundError):
        await store.select_many("invoices")
