"""
Token Ledger

Core balance operations:
- Balance queries and availability checks
- Debits (atomic, concurrency-safe, idempotent)
- Credits for top-ups, refunds and admin adjustments
- Cycle grants for subscriptions
- Free-tier activation for new users
- Append-only transaction log

CRITICAL: Every balance mutation is ONE conditional find_one_and_update on
the user's token_usage document. The filter carries both the balance check
(tokens_remaining >= amount) and the idempotency check (key not yet in
applied_ids), so over-spending and double application are impossible under
any interleaving of concurrent requests or replayed webhooks.

Idempotency keys are scoped to the user: two users may reuse the same key
and each is applied once against their own balance.

The token_usage row is a materialized cache of token_transactions. Both are
written by this module only.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone, timedelta
from typing import Optional, List, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError, DuplicateKeyError

from .config import BILLING_CYCLE_DAYS, IDEMPOTENCY_WINDOW
from .errors import StorageError, ValidationError
from .models import TokenUsage, TokenTransaction, BalanceAudit
from .plans import get_free_plan

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


@contextmanager
def storage_errors(operation: str):
    """Re-raise driver failures as StorageError. DuplicateKeyError passes through."""
    try:
        yield
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        logger.error(f"Storage failure during {operation}: {e}")
        raise StorageError(operation) from e


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _push_key(key: str) -> Dict[str, Any]:
    return {"applied_ids": {"$each": [key], "$slice": -IDEMPOTENCY_WINDOW}}


def _require_positive(amount: int, name: str = "amount"):
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"{name} must be a positive integer")


class TokenLedger:
    """Service for user token balances and their transaction log."""

    def __init__(self, db):
        self.db = db

    # ==================== READS ====================

    async def get_user_token_usage(self, user_id: str) -> Optional[TokenUsage]:
        with storage_errors("get_user_token_usage"):
            doc = await self.db.token_usage.find_one({"user_id": user_id}, {"_id": 0})
        if not doc:
            return None
        return TokenUsage.model_validate(doc)

    async def has_enough_tokens(self, user_id: str, amount: int) -> bool:
        """Read-only check. False when the user has no usage record."""
        usage = await self.get_user_token_usage(user_id)
        if usage is None:
            return False
        return usage.tokens_remaining >= amount

    async def get_token_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[TokenTransaction]:
        """Newest first. Stateless limit/offset pagination."""
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = max(0, int(offset))

        with storage_errors("get_token_transactions"):
            cursor = self.db.token_transactions.find(
                {"user_id": user_id},
                {"_id": 0}
            ).sort([("timestamp", -1), ("_id", -1)]).skip(offset).limit(limit)
            docs = await cursor.to_list(length=limit)

        return [TokenTransaction.model_validate(doc) for doc in docs]

    # ==================== DEBITS ====================

    async def deduct_tokens(
        self,
        user_id: str,
        amount: int,
        transaction_id: str,
        model_id: Optional[str] = None,
        prompt_id: Optional[str] = None
    ) -> bool:
        """
        Atomically debit tokens.

        Returns:
            True if the debit was applied (or had already been applied under
            the same transaction_id), False on insufficient balance or when
            the user has no usage record. Nothing is written on False.
        """
        _require_positive(amount)
        if not transaction_id:
            raise ValidationError("transaction_id is required")

        # Keys older than the applied_ids window are still caught by the log
        if await self._transaction_exists(user_id, transaction_id):
            logger.info(f"Debit {transaction_id} already applied for user {user_id}")
            return True

        now = _now().isoformat()
        with storage_errors("deduct_tokens"):
            updated = await self.db.token_usage.find_one_and_update(
                {
                    "user_id": user_id,
                    "tokens_remaining": {"$gte": amount},
                    "applied_ids": {"$ne": transaction_id}
                },
                {
                    "$inc": {
                        "tokens_used": amount,
                        "tokens_remaining": -amount,
                        "version": 1
                    },
                    "$set": {"updated_at": now},
                    "$push": _push_key(transaction_id)
                },
                projection={"cycle_id": 1, "tokens_remaining": 1},
                return_document=ReturnDocument.AFTER
            )

        if updated is None:
            if not await self._was_applied(user_id, transaction_id):
                logger.info(f"Debit of {amount} tokens refused for user {user_id}: insufficient balance or no record")
                return False
            logger.info(f"Debit {transaction_id} replayed for user {user_id}")
            cycle_id = await self._current_cycle_id(user_id)
        else:
            cycle_id = updated.get("cycle_id")

        await self._append_transaction({
            "id": transaction_id,
            "user_id": user_id,
            "delta": -amount,
            "kind": "debit",
            "source": "prompt",
            "related_prompt_id": prompt_id,
            "related_model_id": model_id,
            "provider_payment_id": None,
            "cycle_id": cycle_id,
            "timestamp": now
        })
        return True

    # ==================== CREDITS ====================

    async def add_tokens(
        self,
        user_id: str,
        amount: int,
        transaction_id: str,
        source: str = "topup",
        provider_payment_id: Optional[str] = None
    ) -> bool:
        """
        Credit tokens on top of the current cycle (top-ups, refunds, admin).

        Idempotent on transaction_id within the user. Returns False if the user has no usage
        record to credit.
        """
        _require_positive(amount)
        if not transaction_id:
            raise ValidationError("transaction_id is required")

        if await self._transaction_exists(user_id, transaction_id):
            logger.info(f"Credit {transaction_id} already applied for user {user_id}")
            return True

        now = _now().isoformat()
        with storage_errors("add_tokens"):
            updated = await self.db.token_usage.find_one_and_update(
                {"user_id": user_id, "applied_ids": {"$ne": transaction_id}},
                {
                    "$inc": {
                        "tokens_total": amount,
                        "tokens_remaining": amount,
                        "version": 1
                    },
                    "$set": {"updated_at": now},
                    "$push": _push_key(transaction_id)
                },
                projection={"cycle_id": 1},
                return_document=ReturnDocument.AFTER
            )

        if updated is None:
            if not await self._was_applied(user_id, transaction_id):
                logger.warning(f"Credit {transaction_id} refused: no token usage record for user {user_id}")
                return False
            cycle_id = await self._current_cycle_id(user_id)
        else:
            cycle_id = updated.get("cycle_id")

        await self._append_transaction({
            "id": transaction_id,
            "user_id": user_id,
            "delta": amount,
            "kind": "credit",
            "source": source,
            "related_prompt_id": None,
            "related_model_id": None,
            "provider_payment_id": provider_payment_id,
            "cycle_id": cycle_id,
            "timestamp": now
        })
        logger.info(f"Credited {amount} tokens to user {user_id} ({source})")
        return True

    # ==================== GRANTS ====================

    async def initialize_token_usage(
        self,
        user_id: str,
        plan_id: str,
        token_grant: int,
        grant_id: Optional[str] = None,
        provider_payment_id: Optional[str] = None,
        source: str = "subscription"
    ) -> bool:
        """
        Start a new billing cycle for a user.

        Creates the usage record if missing, otherwise replaces it:
        tokens_used resets to 0 and tokens_total/remaining become the grant.

        Idempotency:
        - With grant_id: the grant is applied at most once per id.
        - Without: a no-op while an active cycle for the same plan exists.

        Returns True when the grant is applied or was already in effect.
        """
        if isinstance(token_grant, bool) or not isinstance(token_grant, int) or token_grant < 0:
            raise ValidationError("token_grant must be a non-negative integer")

        if grant_id and await self._transaction_exists(user_id, grant_id):
            logger.info(f"Grant {grant_id} already applied for user {user_id}")
            return True

        now = _now()
        now_iso = now.isoformat()
        key = grant_id or f"grant:{user_id}:{plan_id}:{now_iso}"
        cycle_fields = self._cycle_fields(plan_id, token_grant, key, now)

        applied = False
        with storage_errors("initialize_token_usage"):
            existing = await self.db.token_usage.find_one({"user_id": user_id}, {"_id": 1})
            if existing is None:
                try:
                    await self.db.token_usage.insert_one({
                        "user_id": user_id,
                        **cycle_fields,
                        "version": 1,
                        "applied_ids": [key],
                        "created_at": now_iso
                    })
                    applied = True
                except DuplicateKeyError:
                    # Created concurrently; fall through to the conditional replace
                    logger.info(f"Token usage for user {user_id} created concurrently")

            if not applied:
                query: Dict[str, Any] = {"user_id": user_id, "applied_ids": {"$ne": key}}
                if not grant_id:
                    query["$or"] = [
                        {"plan_id": {"$ne": plan_id}},
                        {"cycle_end": {"$lte": now_iso}}
                    ]
                result = await self.db.token_usage.update_one(
                    query,
                    {
                        "$set": cycle_fields,
                        "$inc": {"version": 1},
                        "$push": _push_key(key)
                    }
                )
                applied = result.modified_count > 0

        if not applied:
            if grant_id:
                logger.info(f"Grant {grant_id} replayed for user {user_id}")
                await self._append_transaction(self._grant_entry(
                    key, user_id, token_grant, source, provider_payment_id, now_iso, key
                ))
            else:
                logger.info(f"User {user_id} already has an active {plan_id} cycle; grant skipped")
            return True

        await self._append_transaction(self._grant_entry(
            key, user_id, token_grant, source, provider_payment_id, now_iso, key
        ))
        logger.info(f"Granted {token_grant} tokens to user {user_id} on plan {plan_id}")
        return True

    async def activate_free_tier(self, user_id: str) -> bool:
        """
        Open a free-tier cycle for a user who has no usage record yet.

        A user who already has a record, free or paid, is left untouched.
        Returns True only when the free cycle was created by this call.
        """
        free = get_free_plan()
        key = f"free:{user_id}"
        now = _now()
        now_iso = now.isoformat()

        with storage_errors("activate_free_tier"):
            try:
                await self.db.token_usage.insert_one({
                    "user_id": user_id,
                    **self._cycle_fields(free.id, free.tokens, key, now),
                    "version": 1,
                    "applied_ids": [key],
                    "created_at": now_iso
                })
            except DuplicateKeyError:
                logger.debug(f"User {user_id} already has token usage; free tier not activated")
                return False

        await self._append_transaction(self._grant_entry(
            key, user_id, free.tokens, "subscription", None, now_iso, key
        ))
        logger.info(f"Activated free tier for user {user_id} ({free.tokens} tokens)")
        return True

    @staticmethod
    def _cycle_fields(plan_id: str, token_grant: int, key: str, now: datetime) -> Dict[str, Any]:
        now_iso = now.isoformat()
        return {
            "plan_id": plan_id,
            "tokens_total": token_grant,
            "tokens_used": 0,
            "tokens_remaining": token_grant,
            "cycle_start": now_iso,
            "cycle_end": (now + timedelta(days=BILLING_CYCLE_DAYS)).isoformat(),
            "cycle_id": key,
            "updated_at": now_iso
        }

    @staticmethod
    def _grant_entry(key, user_id, token_grant, source, provider_payment_id, now_iso, cycle_id) -> Dict[str, Any]:
        return {
            "id": key,
            "user_id": user_id,
            "delta": token_grant,
            "kind": "grant",
            "source": source,
            "related_prompt_id": None,
            "related_model_id": None,
            "provider_payment_id": provider_payment_id,
            "cycle_id": cycle_id,
            "timestamp": now_iso
        }

    # ==================== SHORTFALLS & AUDIT ====================

    async def record_shortfall(
        self,
        user_id: str,
        tokens: int,
        transaction_id: str,
        model_id: Optional[str] = None,
        reason: str = "insufficient_balance"
    ) -> None:
        """Record a debit that could not be applied after generation ran."""
        with storage_errors("record_shortfall"):
            await self.db.token_shortfalls.update_one(
                {"user_id": user_id, "transaction_id": transaction_id},
                {"$setOnInsert": {
                    "id": str(uuid.uuid4()),
                    "transaction_id": transaction_id,
                    "user_id": user_id,
                    "tokens": tokens,
                    "model_id": model_id,
                    "reason": reason,
                    "resolved": False,
                    "created_at": _now().isoformat()
                }},
                upsert=True
            )

    async def audit_balance(self, user_id: str) -> Optional[BalanceAudit]:
        """
        Recompute the current cycle from the log and compare it with the
        materialized row. Returns None when the user has no record.
        """
        with storage_errors("audit_balance"):
            row = await self.db.token_usage.find_one({"user_id": user_id}, {"_id": 0})
            if not row:
                return None
            entries = await self.db.token_transactions.find(
                {"user_id": user_id, "cycle_id": row.get("cycle_id")},
                {"_id": 0, "delta": 1, "kind": 1}
            ).to_list(length=None)

        used_log = -sum(e["delta"] for e in entries if e["kind"] == "debit")
        total_log = sum(e["delta"] for e in entries if e["kind"] in ("grant", "credit"))

        audit = BalanceAudit(
            user_id=user_id,
            consistent=(
                used_log == row["tokens_used"]
                and total_log == row["tokens_total"]
                and row["tokens_used"] + row["tokens_remaining"] == row["tokens_total"]
            ),
            tokens_used_row=row["tokens_used"],
            tokens_used_log=used_log,
            tokens_total_row=row["tokens_total"],
            tokens_total_log=total_log
        )
        if not audit.consistent:
            logger.error(f"Balance audit mismatch for user {user_id}: {audit.model_dump()}")
        return audit

    # ==================== INTERNALS ====================

    async def _transaction_exists(self, user_id: str, transaction_id: str) -> bool:
        with storage_errors("lookup_transaction"):
            doc = await self.db.token_transactions.find_one(
                {"user_id": user_id, "id": transaction_id},
                {"_id": 1}
            )
        return doc is not None

    async def _was_applied(self, user_id: str, key: str) -> bool:
        with storage_errors("lookup_applied"):
            doc = await self.db.token_usage.find_one(
                {"user_id": user_id, "applied_ids": key},
                {"_id": 1}
            )
        return doc is not None

    async def _current_cycle_id(self, user_id: str) -> Optional[str]:
        with storage_errors("lookup_cycle"):
            doc = await self.db.token_usage.find_one({"user_id": user_id}, {"_id": 0, "cycle_id": 1})
        return doc.get("cycle_id") if doc else None

    async def _append_transaction(self, entry: Dict[str, Any]) -> None:
        """Insert a log row once per (user_id, id). Replays are no-ops."""
        try:
            with storage_errors("append_transaction"):
                await self.db.token_transactions.update_one(
                    {"user_id": entry["user_id"], "id": entry["id"]},
                    {"$setOnInsert": entry},
                    upsert=True
                )
        except DuplicateKeyError:
            # Concurrent upsert of the same id
            logger.debug(f"Transaction {entry['id']} already recorded")
