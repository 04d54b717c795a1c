"""
PaymentIntent State Machine Tests
"""

import pytest

from ai_billing.intents import IntentStore, can_transition
from ai_billing.models import PaymentIntent, WebhookEvent


@pytest.fixture
def store(mongo_db):
    return IntentStore(mongo_db)


async def _create(store, status="created"):
    return await store.create(PaymentIntent(
        order_id="ord_1", provider="cryptomus", user_id="user-1", plan_id="pro", amount="20", status=status
    ))


class TestTransitionTable:
    @pytest.mark.parametrize("current,target", [
        ("created", "waiting"),
        ("waiting", "paid"),
        ("waiting", "partially_paid"),
        ("partially_paid", "paid"),
        ("partially_paid", "expired"),
        ("created", "failed"),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target) is True

    @pytest.mark.parametrize("current,target", [
        ("paid", "waiting"),
        ("paid", "expired"),
        ("expired", "paid"),
        ("failed", "paid"),
        ("partially_paid", "waiting"),
        ("waiting", "created"),
    ])
    def test_refused(self, current, target):
        assert can_transition(current, target) is False


class TestIntentStore:
    @pytest.mark.asyncio
    async def test_create_records_history(self, store, mongo_db):
        await _create(store)
        doc = mongo_db.raw.payment_intents.find_one({"order_id": "ord_1"})
        assert doc["history"][0]["status"] == "created"
        assert doc["history"][0]["source"] == "checkout"

    @pytest.mark.asyncio
    async def test_transition_follows_table(self, store):
        await _create(store)

        assert await store.transition("ord_1", "waiting") is True
        assert await store.transition("ord_1", "expired") is True
        assert await store.transition("ord_1", "paid") is False
        assert (await store.get("ord_1")).status == "expired"

    @pytest.mark.asyncio
    async def test_mark_paid_once(self, store, mongo_db):
        await _create(store, status="waiting")

        assert await store.mark_paid("ord_1", "cm-1") is True
        assert await store.mark_paid("ord_1", "cm-1") is False

        intent = await store.get("ord_1")
        assert intent.status == "paid"
        assert intent.granted is True
        assert intent.provider_payment_id == "cm-1"

    @pytest.mark.asyncio
    async def test_mark_paid_refused_after_expiry(self, store):
        await _create(store, status="expired")
        assert await store.mark_paid("ord_1") is False
        assert (await store.get("ord_1")).granted is False

    @pytest.mark.asyncio
    async def test_ensure_from_event(self, store):
        event = WebhookEvent(provider="stripe", order_id="ord_9", status="paid", user_id="user-2", plan_id="pro")

        created = await store.ensure_from_event(event)
        again = await store.ensure_from_event(event)

        assert created.order_id == "ord_9"
        assert created.status == "created"
        assert again.created_at == created.created_at

    @pytest.mark.asyncio
    async def test_ensure_from_event_without_metadata(self, store):
        event = WebhookEvent(provider="stripe", order_id="ord_9", status="paid")
        assert await store.ensure_from_event(event) is None

    @pytest.mark.asyncio
    async def test_note_keeps_status(self, store):
        await _create(store, status="waiting")
        await store.note("ord_1", "needs review")

        intent = await store.get("ord_1")
        assert intent.status == "waiting"
        assert intent.error == "needs review"
