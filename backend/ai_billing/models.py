"""
AI Billing Data Models

Pydantic models for ledger, payment and gate operations.
Stored documents use snake_case; API payloads are rendered in camelCase
through the alias generator on ``ApiModel``.
"""

from typing import Optional, List, Literal, Dict, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


IntentStatus = Literal["created", "waiting", "paid", "partially_paid", "expired", "failed"]
TransactionKind = Literal["debit", "credit", "grant"]
TransactionSource = Literal["prompt", "subscription", "topup", "admin", "refund"]
ProviderName = Literal["stripe", "cryptomus"]
IntentKind = Literal["subscription", "topup"]


class ApiModel(BaseModel):
    """Accepts both snake_case and camelCase, serializes to camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# ==================== LEDGER MODELS ====================

class TokenUsage(ApiModel):
    """Materialized balance for one user (cache of the transaction log)"""
    user_id: str
    plan_id: str
    tokens_total: int
    tokens_used: int
    tokens_remaining: int
    cycle_start: Optional[str] = None  # ISO datetime string
    cycle_end: Optional[str] = None  # ISO datetime string
    updated_at: Optional[str] = None


class TokenTransaction(ApiModel):
    """Immutable ledger entry"""
    id: str
    user_id: str
    delta: int
    kind: TransactionKind
    source: TransactionSource
    related_prompt_id: Optional[str] = None
    related_model_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    timestamp: str  # ISO datetime string


class BalanceAudit(ApiModel):
    """Result of comparing the materialized row with the log"""
    user_id: str
    consistent: bool
    tokens_used_row: int
    tokens_used_log: int
    tokens_total_row: int
    tokens_total_log: int


# ==================== PAYMENT MODELS ====================

class PaymentIntent(ApiModel):
    """One checkout attempt"""
    order_id: str
    provider: ProviderName
    user_id: str
    plan_id: str
    kind: IntentKind = "subscription"
    token_amount: Optional[int] = None
    amount: str
    currency: str = "USD"
    status: IntentStatus = "created"
    provider_payment_id: Optional[str] = None
    granted: bool = False
    error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class PaymentRequest(BaseModel):
    """Input to a provider's create_payment"""
    order_id: str
    amount: str
    currency: str = "USD"
    user_id: str
    plan_id: str
    kind: IntentKind = "subscription"
    token_amount: Optional[int] = None
    email: Optional[str] = None
    callback_url: Optional[str] = None
    success_url: Optional[str] = None
    fail_url: Optional[str] = None


class PaymentResult(BaseModel):
    success: bool
    payment_url: Optional[str] = None
    payment_id: Optional[str] = None
    error: Optional[str] = None


class PaymentStatusResult(BaseModel):
    success: bool
    status: Optional[IntentStatus] = None
    raw_status: Optional[str] = None
    error: Optional[str] = None


class WebhookEvent(BaseModel):
    """Provider callback normalized to the PaymentIntent vocabulary"""
    provider: ProviderName
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    order_id: Optional[str] = None
    status: Optional[IntentStatus] = None
    raw_status: Optional[str] = None
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    kind: IntentKind = "subscription"
    token_amount: Optional[int] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    provider_payment_id: Optional[str] = None
    customer_id: Optional[str] = None
    # Lifecycle events that grant outside a checkout (renewal, plan change, downgrade)
    grant_key: Optional[str] = None
    lifecycle: Optional[Literal["renewal", "plan_change", "downgrade"]] = None


# ==================== GENERATION MODELS ====================

class GenerationResult(BaseModel):
    """What the generation collaborator reports back"""
    job_id: str
    model: str
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class GenerationOutcome(BaseModel):
    """Result of a gated generation call"""
    result: GenerationResult
    estimated_tokens: int
    tokens_charged: int
    transaction_id: str
    billing_shortfall: bool = False
    token_usage: Optional[TokenUsage] = None


# ==================== REQUEST BODIES ====================

class GenerateRequest(ApiModel):
    prompt: str = Field(..., min_length=1)
    model: Optional[str] = None
    estimated_tokens: Optional[int] = Field(None, gt=0)


class CheckAvailabilityRequest(ApiModel):
    estimated_tokens: int = Field(..., gt=0)


class DeductRequest(ApiModel):
    token_count: int = Field(..., gt=0)
    prompt_id: str = Field(..., min_length=1)
    model_id: Optional[str] = None


class TopUpRequest(ApiModel):
    token_amount: int = Field(..., gt=0)
    payment_method: str


class CreateCheckoutRequest(ApiModel):
    plan_id: str = Field(..., min_length=1)
    payment_method: str = "card"


class CheckoutResponse(ApiModel):
    url: str
    order_id: str
