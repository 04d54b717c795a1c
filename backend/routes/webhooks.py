"""
Webhook Routes

Endpoints:
- POST /api/webhooks/stripe - Stripe events (Stripe-Signature header)
- POST /api/webhooks/cryptomus - Cryptomus callbacks (sign header)

No bearer auth: the provider signature over the raw body is the credential.
"""
import logging

from fastapi import APIRouter, Depends, Request

from ai_billing.providers import get_providers
from ai_billing.reconciler import WebhookReconciler
from database import get_database

logger = logging.getLogger(__name__)

webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@webhooks_router.post("/stripe")
async def stripe_webhook(request: Request, db=Depends(get_database), providers=Depends(get_providers)):
    raw_body = await request.body()
    reconciler = WebhookReconciler(db, providers)
    return await reconciler.handle_webhook("stripe", raw_body, request.headers.get("stripe-signature"))


@webhooks_router.post("/cryptomus")
async def cryptomus_webhook(request: Request, db=Depends(get_database), providers=Depends(get_providers)):
    raw_body = await request.body()
    reconciler = WebhookReconciler(db, providers)
    return await reconciler.handle_webhook("cryptomus", raw_body, request.headers.get("sign"))
