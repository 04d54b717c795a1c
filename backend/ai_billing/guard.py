"""
Request Gate - token guard around AI generation

Enforces:
- Balance pre-check against an estimate before the model is called
- Debit of the ACTUAL usage afterwards, idempotent on "prompt:{job_id}"
- Shortfall recording when the post-hoc debit cannot be applied

IMPORTANT: This gate is the ONLY place where generation is metered.
The generator is injected at construction; nothing is patched at runtime.
"""

import logging
import math
from typing import Callable, Optional

from .config import CHARS_PER_TOKEN, ESTIMATE_MULTIPLIER
from .errors import InsufficientTokens, StorageError
from .generation import TextGenerator, resolve_model
from .ledger import TokenLedger
from .models import GenerationOutcome

logger = logging.getLogger(__name__)


def estimate_tokens(prompt: str) -> int:
    """Coarse pre-call estimate: ceil(len/4) tokens, doubled for the response."""
    return math.ceil(len(prompt) / CHARS_PER_TOKEN) * ESTIMATE_MULTIPLIER


class RequestGate:
    """
    Usage:
        gate = RequestGate(TokenLedger(db), generator)
        outcome = await gate.generate(user_id, prompt, model="gpt-4o")
    """

    def __init__(
        self,
        ledger: TokenLedger,
        generator: TextGenerator,
        estimator: Callable[[str], int] = estimate_tokens
    ):
        self.ledger = ledger
        self.generator = generator
        self.estimator = estimator

    async def generate(
        self,
        user_id: str,
        prompt: str,
        model: Optional[str] = None,
        estimated_tokens: Optional[int] = None
    ) -> GenerationOutcome:
        model = resolve_model(model)
        estimate = estimated_tokens or self.estimator(prompt)

        if not await self.ledger.has_enough_tokens(user_id, estimate):
            usage = await self.ledger.get_user_token_usage(user_id)
            remaining = usage.tokens_remaining if usage else 0
            logger.info(f"Generation refused for user {user_id}: needs ~{estimate}, has {remaining}")
            raise InsufficientTokens(required=estimate, remaining=remaining)

        result = await self.generator.generate(prompt, model)

        transaction_id = f"prompt:{result.job_id}"
        charged = result.total_tokens
        shortfall = False

        if charged > 0:
            try:
                applied = await self.ledger.deduct_tokens(
                    user_id,
                    charged,
                    transaction_id=transaction_id,
                    model_id=model,
                    prompt_id=result.job_id
                )
                reason = "insufficient_balance"
            except StorageError:
                # The generation already ran; its result is still returned
                applied = False
                reason = "storage_unavailable"

            if not applied:
                shortfall = True
                logger.error(
                    f"BILLING SHORTFALL: generation {result.job_id} for user {user_id} "
                    f"used {charged} tokens that could not be debited ({reason})"
                )
                try:
                    await self.ledger.record_shortfall(
                        user_id, charged, transaction_id, model_id=model, reason=reason
                    )
                except StorageError:
                    logger.error(f"Shortfall for {transaction_id} could not be recorded")

        try:
            token_usage = await self.ledger.get_user_token_usage(user_id)
        except StorageError:
            token_usage = None

        return GenerationOutcome(
            result=result,
            estimated_tokens=estimate,
            tokens_charged=0 if shortfall else charged,
            transaction_id=transaction_id,
            billing_shortfall=shortfall,
            token_usage=token_usage
        )
