"""
Token Routes

Endpoints:
- POST /api/tokens/check-availability - Read-only balance check
- POST /api/tokens/deduct - Debit tokens for a prompt (idempotent on promptId)
- POST /api/tokens/activate-free - Start the free tier for a new user
- GET /api/tokens/get-usage - Balance plus paginated transactions
- POST /api/tokens/top-up - Start a top-up checkout
"""
import logging

from fastapi import APIRouter, Depends, Query

from ai_billing.checkout import CheckoutService
from ai_billing.errors import ValidationError
from ai_billing.ledger import TokenLedger
from ai_billing.models import CheckAvailabilityRequest, DeductRequest, TopUpRequest
from ai_billing.plans import usage_percentage, is_low_on_tokens
from ai_billing.providers import get_providers
from database import get_database
from utils.auth import get_current_user

logger = logging.getLogger(__name__)

tokens_router = APIRouter(prefix="/tokens", tags=["Tokens"])


@tokens_router.post("/check-availability")
async def check_availability(
    body: CheckAvailabilityRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    ledger = TokenLedger(db)
    has_enough = await ledger.has_enough_tokens(user["id"], body.estimated_tokens)
    return {"hasEnoughTokens": has_enough}


@tokens_router.post("/deduct")
async def deduct(
    body: DeductRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    """
    Debit tokens for a prompt that already ran.

    The prompt id is the idempotency key: retrying the same call debits once.
    """
    ledger = TokenLedger(db)
    applied = await ledger.deduct_tokens(
        user["id"],
        body.token_count,
        transaction_id=f"prompt:{body.prompt_id}",
        model_id=body.model_id,
        prompt_id=body.prompt_id
    )
    usage = await ledger.get_user_token_usage(user["id"])

    if not applied:
        raise ValidationError(code="INSUFFICIENT_TOKENS")

    return {"success": True, "tokenUsage": usage.to_api() if usage else None}


@tokens_router.post("/activate-free")
async def activate_free(
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    """Called once after signup. Existing usage records are never reset."""
    ledger = TokenLedger(db)
    activated = await ledger.activate_free_tier(user["id"])
    usage = await ledger.get_user_token_usage(user["id"])
    return {"activated": activated, "tokenUsage": usage.to_api() if usage else None}


@tokens_router.get("/get-usage")
async def get_usage(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    ledger = TokenLedger(db)
    usage = await ledger.get_user_token_usage(user["id"])
    transactions = await ledger.get_token_transactions(user["id"], limit=limit, offset=offset)

    return {
        "tokenUsage": usage.to_api() if usage else None,
        "usagePercentage": usage_percentage(usage) if usage else 0.0,
        "isLowOnTokens": is_low_on_tokens(usage) if usage else True,
        "transactions": [t.to_api() for t in transactions],
        "limit": limit,
        "offset": offset,
    }


@tokens_router.post("/top-up")
async def top_up(
    body: TopUpRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_database),
    providers=Depends(get_providers)
):
    """Start a one-time token purchase. Tokens are credited by the webhook."""
    service = CheckoutService(db, providers)
    checkout = await service.create_top_up(
        user["id"],
        user.get("email"),
        body.token_amount,
        body.payment_method
    )
    return checkout.to_api()
