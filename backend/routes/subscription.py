"""
Subscription Routes

Endpoints:
- GET /api/subscriptions/plans - Plan catalog
- POST /api/subscriptions/create-checkout - Start a plan checkout (card or crypto)
- GET /api/subscriptions/checkout/{order_id} - Checkout status, optionally polled
- POST /api/subscriptions/customer-portal - Stripe billing portal session
"""
import logging

from fastapi import APIRouter, Depends, Query

from ai_billing.checkout import CheckoutService
from ai_billing.models import CreateCheckoutRequest
from ai_billing.plans import list_plans
from ai_billing.providers import get_providers
from ai_billing.reconciler import WebhookReconciler
from database import get_database
from utils.auth import get_current_user

logger = logging.getLogger(__name__)

subscription_router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@subscription_router.get("/plans")
async def get_plans():
    return {
        "plans": [plan.model_dump() for plan in list_plans()],
        "currency": "USD"
    }


@subscription_router.post("/create-checkout")
async def create_checkout(
    body: CreateCheckoutRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_database),
    providers=Depends(get_providers)
):
    """
    Create a checkout session for a plan.

    Tokens are granted when the provider confirms payment via webhook.
    """
    service = CheckoutService(db, providers)
    checkout = await service.create_subscription_checkout(
        user["id"],
        user.get("email"),
        body.plan_id,
        body.payment_method
    )
    return checkout.to_api()


@subscription_router.get("/checkout/{order_id}")
async def get_checkout_status(
    order_id: str,
    refresh: bool = Query(False),
    user: dict = Depends(get_current_user),
    db=Depends(get_database),
    providers=Depends(get_providers)
):
    """Current intent status. With refresh=true the provider is asked directly."""
    service = CheckoutService(db, providers)
    intent = await service.get_checkout(user["id"], order_id)

    if refresh:
        reconciler = WebhookReconciler(db, providers)
        intent = await reconciler.poll_payment(order_id)

    return intent.to_api()


@subscription_router.post("/customer-portal")
async def customer_portal(
    user: dict = Depends(get_current_user),
    db=Depends(get_database),
    providers=Depends(get_providers)
):
    service = CheckoutService(db, providers)
    url = await service.create_portal_session(user["id"])
    return {"url": url}
