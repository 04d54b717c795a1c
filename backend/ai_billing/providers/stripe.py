"""
Stripe Provider

Card payments through Stripe Checkout.

Features:
- Checkout Session in subscription mode (plan price) or payment mode (top-up)
- Customer portal sessions
- Webhook signature verification (Stripe-Signature header)
- Event normalization for checkout and subscription lifecycle events

Blocking SDK calls run in a worker thread bounded by PROVIDER_TIMEOUT_SECONDS.

Required Environment Variables:
- STRIPE_SECRET_KEY
- STRIPE_WEBHOOK_SECRET
"""

import asyncio
import json
import logging
import os
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any

import stripe

from ..config import PROVIDER_TIMEOUT_SECONDS, STRIPE_API_VERSION, STRIPE_SIGNATURE_TOLERANCE_SECONDS
from ..models import PaymentRequest, PaymentResult, PaymentStatusResult, WebhookEvent
from ..plans import FREE_PLAN_ID, get_plan_by_id, get_plan_by_stripe_price
from .base import PaymentProvider, RawPayload, WebhookParseError

logger = logging.getLogger(__name__)

CHECKOUT_STATUS_EVENTS = {
    "checkout.session.async_payment_succeeded": "paid",
    "checkout.session.async_payment_failed": "failed",
    "checkout.session.expired": "expired",
}

PAID_PAYMENT_STATUSES = {"paid", "no_payment_required"}


class StripeProvider(PaymentProvider):
    """Stripe Checkout adapter."""

    name = "stripe"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: float = PROVIDER_TIMEOUT_SECONDS
    ):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self.timeout = timeout

    @property
    def secret_key(self) -> str:
        return self._secret_key if self._secret_key is not None else os.environ.get("STRIPE_SECRET_KEY", "")

    @property
    def webhook_secret(self) -> str:
        if self._webhook_secret is not None:
            return self._webhook_secret
        return os.environ.get("STRIPE_WEBHOOK_SECRET", "")

    async def _call(self, fn, **kwargs):
        """Run a blocking SDK call off the event loop with a bounded timeout."""
        kwargs.setdefault("api_key", self.secret_key)
        kwargs.setdefault("stripe_version", STRIPE_API_VERSION)
        return await asyncio.wait_for(asyncio.to_thread(fn, **kwargs), timeout=self.timeout)

    # ==================== CHECKOUT ====================

    def _line_items(self, request: PaymentRequest):
        if request.kind == "topup":
            try:
                unit_amount = int(Decimal(request.amount) * 100)
            except InvalidOperation:
                raise ValueError(f"Invalid amount: {request.amount}")
            return "payment", [{
                "price_data": {
                    "currency": request.currency.lower(),
                    "unit_amount": unit_amount,
                    "product_data": {"name": f"{request.token_amount} AI tokens"}
                },
                "quantity": 1
            }]

        plan = get_plan_by_id(request.plan_id)
        if not plan or not plan.stripe_price_id:
            raise ValueError(f"Plan {request.plan_id} is not available for card checkout")
        return "subscription", [{"price": plan.stripe_price_id, "quantity": 1}]

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        metadata = {
            "userId": request.user_id,
            "planId": request.plan_id,
            "orderId": request.order_id,
            "kind": request.kind,
        }
        if request.token_amount is not None:
            metadata["tokenAmount"] = str(request.token_amount)

        try:
            mode, line_items = self._line_items(request)
            params: Dict[str, Any] = {
                "mode": mode,
                "line_items": line_items,
                "client_reference_id": request.order_id,
                "metadata": metadata,
                "success_url": request.success_url,
                "cancel_url": request.fail_url,
            }
            if request.email:
                params["customer_email"] = request.email
            if mode == "subscription":
                # Carried onto renewal invoices as subscription_details.metadata
                params["subscription_data"] = {"metadata": metadata}

            session = await self._call(stripe.checkout.Session.create, **params)
            logger.info(f"Created Stripe checkout session {session.id} for order {request.order_id}")
            return PaymentResult(success=True, payment_url=session.url, payment_id=session.id)
        except asyncio.TimeoutError:
            logger.error(f"Stripe checkout creation timed out for order {request.order_id}")
            return PaymentResult(success=False, error="Payment provider timed out")
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating checkout session: {e}")
            return PaymentResult(success=False, error=getattr(e, "user_message", None) or str(e))
        except Exception as e:
            logger.error(f"Error creating Stripe checkout session: {e}")
            return PaymentResult(success=False, error=str(e) or "Unknown error")

    async def check_payment_status(self, payment_id: str) -> PaymentStatusResult:
        try:
            session = await self._call(stripe.checkout.Session.retrieve, id=payment_id)
        except asyncio.TimeoutError:
            logger.error(f"Stripe status check timed out for session {payment_id}")
            return PaymentStatusResult(success=False, error="Payment provider timed out")
        except Exception as e:
            logger.error(f"Error checking Stripe session status: {e}")
            return PaymentStatusResult(success=False, error=str(e) or "Unknown error")

        if session.status == "expired":
            status = "expired"
        elif session.status == "complete" and session.payment_status in PAID_PAYMENT_STATUSES:
            status = "paid"
        else:
            status = "waiting"
        return PaymentStatusResult(success=True, status=status, raw_status=session.status)

    async def create_portal_session(self, customer_id: str, return_url: str) -> PaymentResult:
        try:
            session = await self._call(
                stripe.billing_portal.Session.create,
                customer=customer_id,
                return_url=return_url
            )
            return PaymentResult(success=True, payment_url=session.url, payment_id=session.id)
        except asyncio.TimeoutError:
            logger.error(f"Stripe portal session timed out for customer {customer_id}")
            return PaymentResult(success=False, error="Payment provider timed out")
        except Exception as e:
            logger.error(f"Error creating Stripe portal session: {e}")
            return PaymentResult(success=False, error=str(e) or "Unknown error")

    # ==================== WEBHOOKS ====================

    def verify_webhook_signature(self, raw_payload: RawPayload, signature: Optional[str]) -> bool:
        if not signature or not self.webhook_secret:
            return False
        payload = raw_payload.decode("utf-8") if isinstance(raw_payload, bytes) else raw_payload
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature,
                self.webhook_secret,
                tolerance=STRIPE_SIGNATURE_TOLERANCE_SECONDS
            )
            return True
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning(f"Stripe webhook signature rejected: {e}")
            return False

    def parse_webhook(self, raw_payload: RawPayload) -> WebhookEvent:
        try:
            event = json.loads(raw_payload)
        except (ValueError, TypeError) as e:
            raise WebhookParseError(f"Unparseable Stripe payload: {e}")

        if not isinstance(event, dict) or not event.get("type"):
            raise WebhookParseError("Stripe payload has no event type")

        data = (event.get("data") or {}).get("object")
        if not isinstance(data, dict):
            raise WebhookParseError("Stripe payload has no data.object")

        event_id = event.get("id")
        event_type = event["type"]
        base = {"provider": "stripe", "event_id": event_id, "event_type": event_type}

        try:
            if event_type == "checkout.session.completed":
                status = "paid" if data.get("payment_status") in PAID_PAYMENT_STATUSES else "waiting"
                return self._checkout_event(base, data, status)

            if event_type in CHECKOUT_STATUS_EVENTS:
                return self._checkout_event(base, data, CHECKOUT_STATUS_EVENTS[event_type])

            if event_type == "invoice.payment_succeeded":
                return self._invoice_event(base, data)

            if event_type == "customer.subscription.updated":
                return self._subscription_updated_event(base, data)

            if event_type == "customer.subscription.deleted":
                metadata = data.get("metadata") or {}
                return WebhookEvent(
                    **base,
                    status="paid",
                    user_id=metadata.get("userId"),
                    plan_id=FREE_PLAN_ID,
                    provider_payment_id=data.get("id"),
                    customer_id=_customer_id(data),
                    grant_key=f"stripe:{event_id}",
                    lifecycle="downgrade"
                )
        except ValueError as e:
            raise WebhookParseError(f"Invalid Stripe payload: {e}")

        # invoice.payment_failed and anything else: recorded, no transition
        return WebhookEvent(**base, customer_id=_customer_id(data))

    def _checkout_event(self, base: Dict[str, Any], session: Dict[str, Any], status: str) -> WebhookEvent:
        metadata = session.get("metadata") or {}
        order_id = session.get("client_reference_id") or metadata.get("orderId")
        token_amount = metadata.get("tokenAmount")
        amount_total = session.get("amount_total")

        return WebhookEvent(
            **base,
            order_id=order_id,
            status=status,
            raw_status=session.get("payment_status"),
            user_id=metadata.get("userId"),
            plan_id=metadata.get("planId"),
            kind=metadata.get("kind") or "subscription",
            token_amount=int(token_amount) if token_amount else None,
            amount=str(Decimal(amount_total) / 100) if amount_total is not None else None,
            currency=(session.get("currency") or "").upper() or None,
            provider_payment_id=session.get("id"),
            customer_id=_customer_id(session)
        )

    def _invoice_event(self, base: Dict[str, Any], invoice: Dict[str, Any]) -> WebhookEvent:
        if invoice.get("billing_reason") != "subscription_cycle":
            # The first invoice is granted through checkout.session.completed
            return WebhookEvent(**base, customer_id=_customer_id(invoice))

        metadata = _invoice_metadata(invoice)
        return WebhookEvent(
            **base,
            status="paid",
            raw_status=invoice.get("status"),
            user_id=metadata.get("userId"),
            plan_id=metadata.get("planId"),
            provider_payment_id=invoice.get("id"),
            customer_id=_customer_id(invoice),
            grant_key=f"stripe:{invoice.get('id')}",
            lifecycle="renewal"
        )

    def _subscription_updated_event(self, base: Dict[str, Any], subscription: Dict[str, Any]) -> WebhookEvent:
        metadata = subscription.get("metadata") or {}
        if subscription.get("status") not in ("active", "trialing"):
            return WebhookEvent(**base, customer_id=_customer_id(subscription))

        plan = get_plan_by_stripe_price(_subscription_price_id(subscription))
        plan_id = plan.id if plan else metadata.get("planId")
        return WebhookEvent(
            **base,
            status="paid",
            raw_status=subscription.get("status"),
            user_id=metadata.get("userId"),
            plan_id=plan_id,
            provider_payment_id=subscription.get("id"),
            customer_id=_customer_id(subscription),
            grant_key=f"stripe:{base['event_id']}",
            lifecycle="plan_change"
        )


def _customer_id(obj: Dict[str, Any]) -> Optional[str]:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


def _invoice_metadata(invoice: Dict[str, Any]) -> Dict[str, Any]:
    details = invoice.get("subscription_details") or {}
    if details.get("metadata"):
        return details["metadata"]
    if invoice.get("metadata"):
        return invoice["metadata"]
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        if line.get("metadata"):
            return line["metadata"]
    return {}


def _subscription_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id") if isinstance(price, dict) else price
