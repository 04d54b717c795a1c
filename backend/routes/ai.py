"""
AI Routes - metered generation

Endpoints:
- POST /api/ai/generate - Generate text behind the token gate
- GET /api/ai/models - Available models
"""
import logging

from fastapi import APIRouter, Depends

from ai_billing.config import AI_MODELS, DEFAULT_MODEL
from ai_billing.generation import TextGenerator, get_generator
from ai_billing.guard import RequestGate
from ai_billing.ledger import TokenLedger
from ai_billing.models import GenerateRequest
from database import get_database
from utils.auth import get_current_user

logger = logging.getLogger(__name__)

ai_router = APIRouter(prefix="/ai", tags=["AI"])


@ai_router.post("/generate")
async def generate(
    body: GenerateRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_database),
    generator: TextGenerator = Depends(get_generator)
):
    """
    Generate a response and debit the tokens it actually used.

    Refused with 402 when the estimate exceeds the remaining balance.
    """
    gate = RequestGate(TokenLedger(db), generator)
    outcome = await gate.generate(
        user["id"],
        body.prompt,
        model=body.model,
        estimated_tokens=body.estimated_tokens
    )
    result = outcome.result

    return {
        "id": result.job_id,
        "model": result.model,
        "content": result.content,
        "usage": {
            "promptTokens": result.prompt_tokens,
            "completionTokens": result.completion_tokens,
            "totalTokens": result.total_tokens,
        },
        "estimatedTokens": outcome.estimated_tokens,
        "tokenUsage": outcome.token_usage.to_api() if outcome.token_usage else None,
        "billingShortfall": outcome.billing_shortfall,
    }


@ai_router.get("/models")
async def list_models():
    return {
        "models": [{"id": model_id, **info} for model_id, info in AI_MODELS.items()],
        "default": DEFAULT_MODEL
    }
