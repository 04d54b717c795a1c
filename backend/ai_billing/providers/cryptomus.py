"""
Cryptomus Provider

Crypto payments through the Cryptomus merchant API.

Features:
- Invoice creation (/payment) signed with the merchant API key
- Status polling (/payment/info)
- Webhook signature verification over the raw body

Required Environment Variables:
- CRYPTOMUS_API_KEY
- CRYPTOMUS_MERCHANT_ID
"""

import json
import logging
import os
from typing import Optional, Dict, Any

import httpx

from ..config import CRYPTOMUS_CONFIG, CRYPTOMUS_STATUS_MAP, PROVIDER_TIMEOUT_SECONDS
from ..models import PaymentRequest, PaymentResult, PaymentStatusResult, WebhookEvent
from ..signature import sign, verify
from .base import PaymentProvider, RawPayload, WebhookParseError

logger = logging.getLogger(__name__)


class CryptomusProvider(PaymentProvider):
    """Cryptomus merchant API adapter."""

    name = "cryptomus"

    def __init__(
        self,
        api_key: Optional[str] = None,
        merchant_id: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._api_key = api_key
        self._merchant_id = merchant_id
        self.api_base = api_base or CRYPTOMUS_CONFIG["api_base"]
        self.timeout = timeout
        self._transport = transport

    @property
    def api_key(self) -> str:
        return self._api_key if self._api_key is not None else os.environ.get("CRYPTOMUS_API_KEY", "")

    @property
    def merchant_id(self) -> str:
        return self._merchant_id if self._merchant_id is not None else os.environ.get("CRYPTOMUS_MERCHANT_ID", "")

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST a signed payload and return the ``result`` object.

        Raises httpx errors or ValueError; callers convert them to results.
        """
        headers = {
            "Content-Type": "application/json",
            "merchant": self.merchant_id,
            "sign": sign(payload, self.api_key)
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(f"{self.api_base}{path}", json=payload, headers=headers)

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400 or not isinstance(data, dict) or not data.get("result"):
            message = data.get("message") if isinstance(data, dict) else None
            raise ValueError(message or f"Cryptomus request failed with HTTP {response.status_code}")

        return data["result"]

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        metadata = {"userId": request.user_id, "planId": request.plan_id, "kind": request.kind}
        if request.token_amount is not None:
            metadata["tokenAmount"] = request.token_amount

        payload = {
            "amount": request.amount,
            "currency": request.currency,
            "order_id": request.order_id,
            "callback_url": request.callback_url,
            "success_url": request.success_url,
            "fail_url": request.fail_url,
            "is_payment_multiple": False,
            "lifetime": CRYPTOMUS_CONFIG["payment_lifetime_seconds"],
            "customer_email": request.email,
            "merchant_id": self.merchant_id,
            "metadata": metadata
        }

        try:
            result = await self._post("/payment", payload)
            logger.info(f"Created Cryptomus payment {result.get('uuid')} for order {request.order_id}")
            return PaymentResult(
                success=True,
                payment_url=result.get("url"),
                payment_id=result.get("uuid")
            )
        except httpx.TimeoutException:
            logger.error(f"Cryptomus payment creation timed out for order {request.order_id}")
            return PaymentResult(success=False, error="Payment provider timed out")
        except Exception as e:
            logger.error(f"Error creating Cryptomus payment: {e}")
            return PaymentResult(success=False, error=str(e) or "Unknown error")

    async def check_payment_status(self, payment_id: str) -> PaymentStatusResult:
        payload = {"uuid": payment_id, "merchant_id": self.merchant_id}
        try:
            result = await self._post("/payment/info", payload)
            raw_status = result.get("status") or result.get("payment_status")
            return PaymentStatusResult(
                success=True,
                status=CRYPTOMUS_STATUS_MAP.get(raw_status),
                raw_status=raw_status
            )
        except httpx.TimeoutException:
            logger.error(f"Cryptomus status check timed out for payment {payment_id}")
            return PaymentStatusResult(success=False, error="Payment provider timed out")
        except Exception as e:
            logger.error(f"Error checking Cryptomus payment status: {e}")
            return PaymentStatusResult(success=False, error=str(e) or "Unknown error")

    def verify_webhook_signature(self, raw_payload: RawPayload, signature: Optional[str]) -> bool:
        return verify(raw_payload, signature, self.api_key)

    def parse_webhook(self, raw_payload: RawPayload) -> WebhookEvent:
        try:
            payload = json.loads(raw_payload)
        except (ValueError, TypeError) as e:
            raise WebhookParseError(f"Unparseable Cryptomus payload: {e}")

        if not isinstance(payload, dict) or not payload.get("order_id"):
            raise WebhookParseError("Cryptomus payload has no order_id")

        metadata = _extract_metadata(payload)
        raw_status = payload.get("status") or payload.get("payment_status")
        token_amount = metadata.get("tokenAmount")

        try:
            return WebhookEvent(
                provider="cryptomus",
                event_id=payload.get("uuid"),
                event_type=payload.get("type", "payment"),
                order_id=str(payload["order_id"]),
                status=CRYPTOMUS_STATUS_MAP.get(raw_status),
                raw_status=raw_status,
                user_id=metadata.get("userId"),
                plan_id=metadata.get("planId"),
                kind=metadata.get("kind") or "subscription",
                token_amount=int(token_amount) if token_amount is not None else None,
                amount=_as_str(payload.get("amount")),
                currency=payload.get("currency"),
                provider_payment_id=payload.get("uuid")
            )
        except ValueError as e:
            raise WebhookParseError(f"Invalid Cryptomus payload: {e}")


def _extract_metadata(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Metadata arrives as an object, or as a JSON string in additional_data."""
    metadata = payload.get("metadata")
    if isinstance(metadata, dict):
        return metadata
    for candidate in (metadata, payload.get("additional_data")):
        if isinstance(candidate, str) and candidate:
            try:
                parsed = json.loads(candidate)
            except ValueError:
                continue
            if isinstance(parsed, dict):
                return parsed
    return {}


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)
