"""
Payment provider adapters and selection by payment method.
"""

from typing import Dict, Optional

from ..config import PAYMENT_METHODS
from ..errors import ValidationError
from .base import PaymentProvider, WebhookParseError
from .cryptomus import CryptomusProvider
from .stripe import StripeProvider

_providers: Optional[Dict[str, PaymentProvider]] = None


def build_providers() -> Dict[str, PaymentProvider]:
    return {
        "stripe": StripeProvider(),
        "cryptomus": CryptomusProvider(),
    }


def get_providers() -> Dict[str, PaymentProvider]:
    """FastAPI dependency returning the shared provider registry."""
    global _providers
    if _providers is None:
        _providers = build_providers()
    return _providers


def get_provider(payment_method: str, providers: Optional[Dict[str, PaymentProvider]] = None) -> PaymentProvider:
    """card -> stripe, crypto -> cryptomus. Anything else is a 400."""
    name = PAYMENT_METHODS.get(payment_method)
    if not name:
        raise ValidationError(code="INVALID_PAYMENT_METHOD")
    registry = providers if providers is not None else get_providers()
    return registry[name]


__all__ = [
    "PaymentProvider",
    "WebhookParseError",
    "CryptomusProvider",
    "StripeProvider",
    "build_providers",
    "get_providers",
    "get_provider",
]
