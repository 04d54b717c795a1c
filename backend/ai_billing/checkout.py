"""
Checkout Service

Creates PaymentIntents and the matching provider checkout sessions for
plan subscriptions and token top-ups, and opens Stripe customer portal
sessions.
"""

import logging
import os
import uuid
from typing import Dict, Optional

from .config import TOP_UP_MIN_TOKENS, TOP_UP_MAX_TOKENS, TOP_UP_PLAN_ID
from .errors import NotFoundError, ProviderError, ValidationError
from .intents import IntentStore
from .ledger import storage_errors
from .models import PaymentIntent, PaymentRequest, CheckoutResponse
from .plans import get_plan_by_id, top_up_price
from .providers import get_provider
from .providers.base import PaymentProvider

logger = logging.getLogger(__name__)


class CheckoutService:
    """Service for starting payments."""

    def __init__(self, db, providers: Dict[str, PaymentProvider]):
        self.db = db
        self.providers = providers
        self.intents = IntentStore(db)

    @property
    def app_url(self) -> str:
        return os.environ.get("PUBLIC_APP_URL", "http://localhost:3000").rstrip("/")

    def _urls(self) -> Dict[str, str]:
        return {
            "callback_url": f"{self.app_url}/api/webhooks/cryptomus",
            "success_url": f"{self.app_url}/dashboard?payment=success",
            "fail_url": f"{self.app_url}/pricing?payment=cancelled",
        }

    async def create_subscription_checkout(
        self,
        user_id: str,
        email: Optional[str],
        plan_id: str,
        payment_method: str
    ) -> CheckoutResponse:
        plan = get_plan_by_id(plan_id)
        if plan is None:
            raise ValidationError(code="INVALID_PLAN")
        if plan.price <= 0:
            raise ValidationError("The free plan does not require checkout")

        provider = get_provider(payment_method, self.providers)
        return await self._start(
            provider,
            user_id=user_id,
            email=email,
            plan_id=plan.id,
            kind="subscription",
            token_amount=None,
            amount=str(plan.price)
        )

    async def create_top_up(
        self,
        user_id: str,
        email: Optional[str],
        token_amount: int,
        payment_method: str
    ) -> CheckoutResponse:
        if token_amount < TOP_UP_MIN_TOKENS or token_amount > TOP_UP_MAX_TOKENS:
            raise ValidationError(
                f"Token amount must be between {TOP_UP_MIN_TOKENS} and {TOP_UP_MAX_TOKENS}"
            )

        provider = get_provider(payment_method, self.providers)
        return await self._start(
            provider,
            user_id=user_id,
            email=email,
            plan_id=TOP_UP_PLAN_ID,
            kind="topup",
            token_amount=token_amount,
            amount=str(top_up_price(token_amount))
        )

    async def _start(self, provider: PaymentProvider, **fields) -> CheckoutResponse:
        order_id = f"ord_{uuid.uuid4().hex}"
        email = fields.pop("email")

        await self.intents.create(PaymentIntent(
            order_id=order_id,
            provider=provider.name,
            currency="USD",
            **fields
        ))

        request = PaymentRequest(order_id=order_id, currency="USD", email=email, **fields, **self._urls())
        result = await provider.create_payment(request)

        if not result.success or not result.payment_url:
            error = result.error or "Payment provider returned no checkout URL"
            await self.intents.transition(order_id, "failed", source="checkout", fields={"error": error})
            logger.error(f"Checkout for order {order_id} failed at {provider.name}: {error}")
            raise ProviderError(f"Failed to create payment: {error}")

        if result.payment_id:
            await self.intents.set_provider_payment_id(order_id, result.payment_id)

        logger.info(f"Checkout {order_id} started at {provider.name} for user {fields['user_id']}")
        return CheckoutResponse(url=result.payment_url, order_id=order_id)

    async def get_checkout(self, user_id: str, order_id: str) -> PaymentIntent:
        intent = await self.intents.get(order_id)
        if intent is None or intent.user_id != user_id:
            raise NotFoundError(f"Order {order_id} not found")
        return intent

    async def create_portal_session(self, user_id: str) -> str:
        with storage_errors("get_billing_customer"):
            customer = await self.db.billing_customers.find_one({"user_id": user_id}, {"_id": 0})
        if not customer or not customer.get("stripe_customer_id"):
            raise NotFoundError("No billing account found for this user")

        provider = self.providers.get("stripe")
        if provider is None or not hasattr(provider, "create_portal_session"):
            raise ProviderError("Card payments are not configured")

        result = await provider.create_portal_session(
            customer["stripe_customer_id"],
            return_url=f"{self.app_url}/dashboard"
        )
        if not result.success or not result.payment_url:
            raise ProviderError(f"Failed to create customer portal session: {result.error}")
        return result.payment_url
