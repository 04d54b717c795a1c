"""
Payment provider interface.

Adapters never raise for remote failures: HTTP errors, missing result
payloads, timeouts and unexpected exceptions come back as a result with
success=False and a human-readable error.
"""

from abc import ABC, abstractmethod
from typing import Optional, Union

from ..models import PaymentRequest, PaymentResult, PaymentStatusResult, WebhookEvent

RawPayload = Union[bytes, str]


class WebhookParseError(ValueError):
    """Verified payload that cannot be normalized into a WebhookEvent."""


class PaymentProvider(ABC):
    name: str = ""

    @abstractmethod
    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        ...

    @abstractmethod
    async def check_payment_status(self, payment_id: str) -> PaymentStatusResult:
        ...

    @abstractmethod
    def verify_webhook_signature(self, raw_payload: RawPayload, signature: Optional[str]) -> bool:
        ...

    @abstractmethod
    def parse_webhook(self, raw_payload: RawPayload) -> WebhookEvent:
        """Normalize a verified payload. Raises WebhookParseError when malformed."""
        ...
