"""
Webhook Reconciler

Turns verified provider callbacks into ledger grants and PaymentIntent
transitions.

Rules:
- The raw body is verified before anything is parsed or written
- Missing or invalid signatures are rejected (400) and logged as security events
- A 'paid' event grants tokens exactly once, keyed by "{provider}:{order_id}"
- 'partially_paid' never grants
- A 'paid' event for an expired/failed intent is logged for manual review, no grant
- A grant that races an expiry is kept and the intent is flagged for manual review
- Storage failures propagate so the provider retries delivery
"""

import logging
from typing import Dict, Any, Optional

from .errors import NotFoundError, SignatureError, ValidationError
from .intents import IntentStore, TERMINAL_STATUSES
from .ledger import TokenLedger, storage_errors
from .models import WebhookEvent, PaymentIntent
from .plans import get_plan_by_id
from .providers.base import PaymentProvider, RawPayload, WebhookParseError

logger = logging.getLogger(__name__)


class WebhookReconciler:
    """Applies provider events to the ledger and intent store."""

    def __init__(self, db, providers: Dict[str, PaymentProvider]):
        self.db = db
        self.providers = providers
        self.ledger = TokenLedger(db)
        self.intents = IntentStore(db)

    def _provider(self, provider_name: str) -> PaymentProvider:
        provider = self.providers.get(provider_name)
        if provider is None:
            raise ValidationError(f"Unknown payment provider: {provider_name}")
        return provider

    async def handle_webhook(
        self,
        provider_name: str,
        raw_body: RawPayload,
        signature: Optional[str]
    ) -> Dict[str, Any]:
        provider = self._provider(provider_name)

        if not signature:
            logger.warning(f"{provider_name} webhook rejected: missing signature header")
            raise SignatureError(code="MISSING_SIGNATURE")

        if not provider.verify_webhook_signature(raw_body, signature):
            logger.warning(f"SECURITY: {provider_name} webhook rejected: invalid signature")
            raise SignatureError()

        try:
            event = provider.parse_webhook(raw_body)
        except WebhookParseError as e:
            logger.error(f"{provider_name} webhook verified but malformed: {e}")
            return {"received": True, "ignored": "malformed"}

        logger.info(f"{provider_name} webhook {event.event_type} for order {event.order_id} status {event.status}")

        if event.customer_id and event.user_id:
            await self._remember_customer(event)

        if event.lifecycle:
            return await self._apply_lifecycle(event)

        if not event.order_id or not event.status:
            return {"received": True, "ignored": event.event_type or "unhandled"}

        return await self.apply_event(event)

    async def apply_event(self, event: WebhookEvent, source: str = "webhook") -> Dict[str, Any]:
        """Apply a normalized order status. Shared by webhooks and polling."""
        intent = await self.intents.ensure_from_event(event)
        if intent is None:
            logger.error(f"Event for unknown order {event.order_id} without user/plan metadata; ignored")
            return {"received": True, "ignored": "unknown_order"}

        if event.status == "paid":
            return await self._apply_paid(intent, event, source)

        changed = await self.intents.transition(
            intent.order_id,
            event.status,
            source=source,
            fields={"provider_payment_id": event.provider_payment_id}
        )
        return {"received": True, "status": event.status if changed else intent.status}

    async def _apply_paid(self, intent: PaymentIntent, event: WebhookEvent, source: str) -> Dict[str, Any]:
        order_id = intent.order_id

        if intent.status in ("expired", "failed"):
            logger.error(
                f"MANUAL REVIEW: paid event for {intent.status} intent {order_id} "
                f"(user {intent.user_id}, provider payment {event.provider_payment_id}); no tokens granted"
            )
            await self.intents.note(order_id, f"paid event received after {intent.status}")
            return {"received": True, "ignored": "terminal"}

        if intent.status == "paid" and intent.granted:
            logger.info(f"Duplicate paid event for order {order_id}")
            return {"received": True, "duplicate": True}

        grant_key = f"{intent.provider}:{order_id}"
        provider_payment_id = event.provider_payment_id or intent.provider_payment_id

        if intent.kind == "topup":
            if not intent.token_amount or intent.token_amount <= 0:
                logger.error(f"Top-up order {order_id} has no token amount; no tokens granted")
                return {"received": True, "ignored": "invalid_amount"}
            granted = await self._credit_top_up(intent, grant_key, provider_payment_id)
        else:
            plan = get_plan_by_id(intent.plan_id)
            if plan is None:
                logger.error(f"Paid order {order_id} references unknown plan {intent.plan_id}; no tokens granted")
                await self.intents.note(order_id, f"unknown plan {intent.plan_id}")
                return {"received": True, "ignored": "unknown_plan"}
            granted = await self.ledger.initialize_token_usage(
                intent.user_id,
                plan.id,
                plan.tokens,
                grant_id=grant_key,
                provider_payment_id=provider_payment_id,
                source="subscription"
            )

        if not granted:
            logger.error(f"Grant for order {order_id} was not applied")
            return {"received": True, "granted": False}

        if not await self.intents.mark_paid(order_id, provider_payment_id):
            current = await self.intents.get(order_id)
            if current is not None and current.status == "paid" and current.granted:
                logger.info(f"Order {order_id} was marked paid by a concurrent delivery")
                return {"received": True, "duplicate": True}

            status = current.status if current else "missing"
            logger.error(
                f"MANUAL REVIEW: tokens granted for order {order_id} (user {intent.user_id}, "
                f"provider payment {provider_payment_id}) but intent is {status}"
            )
            await self.intents.note(order_id, f"tokens granted while intent was {status}")
            return {"received": True, "granted": True, "review": status}

        logger.info(f"Order {order_id} paid; tokens granted to user {intent.user_id} ({source})")
        return {"received": True, "granted": True}

    async def _credit_top_up(self, intent: PaymentIntent, grant_key: str, provider_payment_id: Optional[str]) -> bool:
        # Top-ups land on a free cycle for users who never had one
        await self.ledger.activate_free_tier(intent.user_id)
        return await self.ledger.add_tokens(
            intent.user_id,
            intent.token_amount,
            grant_key,
            source="topup",
            provider_payment_id=provider_payment_id
        )

    async def _apply_lifecycle(self, event: WebhookEvent) -> Dict[str, Any]:
        """Renewals, plan changes and downgrades outside a checkout."""
        if not event.user_id:
            logger.error(f"{event.event_type} {event.event_id} has no userId metadata; ignored")
            return {"received": True, "ignored": "missing_user"}

        plan = get_plan_by_id(event.plan_id)
        if plan is None:
            logger.error(f"{event.event_type} {event.event_id} references unknown plan {event.plan_id}; ignored")
            return {"received": True, "ignored": "unknown_plan"}

        if event.lifecycle == "plan_change":
            usage = await self.ledger.get_user_token_usage(event.user_id)
            if usage is not None and usage.plan_id == plan.id:
                return {"received": True, "ignored": "plan_unchanged"}

        await self.ledger.initialize_token_usage(
            event.user_id,
            plan.id,
            plan.tokens,
            grant_id=event.grant_key,
            provider_payment_id=event.provider_payment_id,
            source="subscription"
        )
        logger.info(f"Applied {event.lifecycle} for user {event.user_id} on plan {plan.id}")
        return {"received": True, "granted": True, "lifecycle": event.lifecycle}

    async def _remember_customer(self, event: WebhookEvent) -> None:
        with storage_errors("remember_customer"):
            await self.db.billing_customers.update_one(
                {"user_id": event.user_id},
                {"$set": {"user_id": event.user_id, "stripe_customer_id": event.customer_id}},
                upsert=True
            )

    async def poll_payment(self, order_id: str) -> PaymentIntent:
        """
        Ask the provider for the current status of an order and reconcile it
        through the same path as webhooks. Used when callbacks are delayed.
        """
        intent = await self.intents.get(order_id)
        if intent is None:
            raise NotFoundError(f"Order {order_id} not found")

        if intent.status in TERMINAL_STATUSES and (intent.status != "paid" or intent.granted):
            return intent
        if not intent.provider_payment_id:
            return intent

        provider = self._provider(intent.provider)
        result = await provider.check_payment_status(intent.provider_payment_id)
        if not result.success or not result.status:
            logger.warning(f"Status poll for order {order_id} failed: {result.error or result.raw_status}")
            return intent

        event = WebhookEvent(
            provider=intent.provider,
            event_type="poll",
            order_id=order_id,
            status=result.status,
            raw_status=result.raw_status,
            user_id=intent.user_id,
            plan_id=intent.plan_id,
            kind=intent.kind,
            token_amount=intent.token_amount,
            provider_payment_id=intent.provider_payment_id
        )
        await self.apply_event(event, source="poll")
        return await self.intents.get(order_id)
