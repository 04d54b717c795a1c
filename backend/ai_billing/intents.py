"""
PaymentIntent store and state machine.

    created -> waiting -> paid | partially_paid | expired
    partially_paid -> paid | expired | failed
    failed from any non-terminal state

Terminal: paid, expired, failed. Every transition is a conditional update
on the current status, so stale or out-of-order events are no-ops.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from pymongo.errors import DuplicateKeyError

from .ledger import storage_errors
from .models import PaymentIntent, WebhookEvent

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"paid", "expired", "failed"}

# target status -> statuses it may be reached from
ALLOWED_FROM: Dict[str, tuple] = {
    "waiting": ("created",),
    "partially_paid": ("created", "waiting"),
    "paid": ("created", "waiting", "partially_paid"),
    "expired": ("created", "waiting", "partially_paid"),
    "failed": ("created", "waiting", "partially_paid"),
}


def can_transition(current: str, target: str) -> bool:
    return current in ALLOWED_FROM.get(target, ())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class IntentStore:
    """Persistence for payment_intents."""

    def __init__(self, db):
        self.db = db

    async def create(self, intent: PaymentIntent) -> PaymentIntent:
        now = _now()
        doc = intent.model_dump()
        doc["created_at"] = doc.get("created_at") or now
        doc["updated_at"] = now
        doc["history"] = [{"status": intent.status, "at": now, "source": "checkout"}]
        with storage_errors("create_intent"):
            await self.db.payment_intents.insert_one(doc)
        return PaymentIntent.model_validate(doc)

    async def get(self, order_id: str) -> Optional[PaymentIntent]:
        with storage_errors("get_intent"):
            doc = await self.db.payment_intents.find_one({"order_id": order_id}, {"_id": 0})
        return PaymentIntent.model_validate(doc) if doc else None

    async def ensure_from_event(self, event: WebhookEvent) -> Optional[PaymentIntent]:
        """
        Return the intent for the event's order, creating it from the event
        payload when this is the first time we hear about the order.

        Returns None when the order is unknown and the event does not carry
        enough to create it.
        """
        intent = await self.get(event.order_id)
        if intent:
            return intent

        if not event.user_id or not event.plan_id:
            return None

        now = _now()
        doc = PaymentIntent(
            order_id=event.order_id,
            provider=event.provider,
            user_id=event.user_id,
            plan_id=event.plan_id,
            kind=event.kind,
            token_amount=event.token_amount,
            amount=event.amount or "0",
            currency=event.currency or "USD",
            status="created",
            provider_payment_id=event.provider_payment_id,
            created_at=now,
            updated_at=now
        ).model_dump()
        doc["history"] = [{"status": "created", "at": now, "source": "webhook"}]

        logger.warning(f"Webhook for unknown order {event.order_id}; creating intent from event payload")
        try:
            with storage_errors("create_intent_from_event"):
                await self.db.payment_intents.update_one(
                    {"order_id": event.order_id},
                    {"$setOnInsert": doc},
                    upsert=True
                )
        except DuplicateKeyError:
            logger.info(f"Intent {event.order_id} created concurrently")
        return await self.get(event.order_id)

    async def transition(
        self,
        order_id: str,
        target: str,
        source: str = "webhook",
        fields: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Move to ``target`` if the current status allows it. False otherwise."""
        allowed = ALLOWED_FROM.get(target)
        if not allowed:
            return False

        now = _now()
        update_fields = {"status": target, "updated_at": now}
        update_fields.update({k: v for k, v in (fields or {}).items() if v is not None})

        with storage_errors("transition_intent"):
            result = await self.db.payment_intents.update_one(
                {"order_id": order_id, "status": {"$in": list(allowed)}},
                {
                    "$set": update_fields,
                    "$push": {"history": {"status": target, "at": now, "source": source}}
                }
            )

        if result.modified_count == 0:
            logger.info(f"Intent {order_id}: transition to {target} not applicable")
            return False

        logger.info(f"Intent {order_id} -> {target}")
        return True

    async def mark_paid(self, order_id: str, provider_payment_id: Optional[str] = None) -> bool:
        """
        Record that tokens were granted. Also completes an intent that is
        already 'paid' but whose grant flag was never set.
        """
        now = _now()
        update_fields = {"status": "paid", "granted": True, "updated_at": now}
        if provider_payment_id:
            update_fields["provider_payment_id"] = provider_payment_id

        with storage_errors("mark_intent_paid"):
            result = await self.db.payment_intents.update_one(
                {
                    "order_id": order_id,
                    "granted": {"$ne": True},
                    "status": {"$in": list(ALLOWED_FROM["paid"]) + ["paid"]}
                },
                {
                    "$set": update_fields,
                    "$push": {"history": {"status": "paid", "at": now, "source": "grant"}}
                }
            )
        return result.modified_count > 0

    async def set_provider_payment_id(self, order_id: str, provider_payment_id: str) -> None:
        with storage_errors("set_provider_payment_id"):
            await self.db.payment_intents.update_one(
                {"order_id": order_id},
                {"$set": {"provider_payment_id": provider_payment_id, "updated_at": _now()}}
            )

    async def note(self, order_id: str, message: str) -> None:
        """Attach a note for manual review without changing status."""
        with storage_errors("note_intent"):
            await self.db.payment_intents.update_one(
                {"order_id": order_id},
                {"$set": {"error": message, "updated_at": _now()}}
            )
