"""
Billing error taxonomy.

Each error carries the HTTP status it maps to. Provider adapters never
raise these across their boundary; they return failure results instead.
"""

from typing import Optional

from .config import ERROR_CODES


class BillingError(Exception):
    """Base class for billing errors that map to an HTTP response."""

    status_code = 500
    code = "BILLING_ERROR"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        if code:
            self.code = code
        self.message = message or ERROR_CODES.get(self.code, "Billing error")
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "message": self.message}


class ValidationError(BillingError):
    """Bad input shape or unknown identifiers."""
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthError(BillingError):
    status_code = 401
    code = "UNAUTHORIZED"


class InsufficientTokens(BillingError):
    """Expected business outcome, not a bug."""

    status_code = 402
    code = "INSUFFICIENT_TOKENS"

    def __init__(self, required: int = 0, remaining: int = 0, message: Optional[str] = None):
        self.required = required
        self.remaining = remaining
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": "Insufficient tokens",
            "code": self.code,
            "message": self.message,
            "requiredTokens": self.required,
            "remainingTokens": self.remaining,
        }


class SignatureError(BillingError):
    """Webhook rejected: missing or invalid provider signature."""
    status_code = 400
    code = "INVALID_SIGNATURE"


class ProviderError(BillingError):
    status_code = 502
    code = "PROVIDER_ERROR"


class NotFoundError(BillingError):
    status_code = 404
    code = "NOT_FOUND"


class StorageError(BillingError):
    """
    Persistence layer unavailable. Retryable.

    The public message is generic; the underlying cause is kept on
    ``__cause__`` for logs only.
    """
    status_code = 500
    code = "STORAGE_UNAVAILABLE"

    def __init__(self, operation: str = "", message: Optional[str] = None):
        self.operation = operation
        super().__init__(message)
