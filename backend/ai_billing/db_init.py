"""
AI Billing index setup.

Collections are created lazily by MongoDB; this module only makes sure the
unique indexes the ledger relies on exist:

- token_usage.user_id: one usage record per user
- token_transactions (user_id, id): one log row per idempotency key per user
- token_shortfalls (user_id, transaction_id): one shortfall per failed debit
- payment_intents.order_id: one intent per checkout order

Nothing is ever dropped. Production runs need BILLING_INIT_CONFIRM=YES.

Usage:
    appforge-billing-init [--dry-run]
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from typing import List, Tuple

from pymongo.errors import OperationFailure

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.1.0"

# (collection, index_spec, options)
REQUIRED_INDEXES = [
    ("token_usage", [("user_id", 1)], {"unique": True, "name": "idx_user_id_unique"}),

    ("token_transactions", [("user_id", 1), ("id", 1)], {"unique": True, "name": "idx_user_transaction_unique"}),
    ("token_transactions", [("user_id", 1), ("timestamp", -1)], {"name": "idx_user_timestamp"}),
    ("token_transactions", [("user_id", 1), ("cycle_id", 1)], {"name": "idx_user_cycle"}),

    ("token_shortfalls", [("user_id", 1), ("transaction_id", 1)], {"unique": True, "name": "idx_user_transaction_unique"}),
    ("token_shortfalls", [("resolved", 1), ("created_at", -1)], {"name": "idx_resolved_created"}),

    ("payment_intents", [("order_id", 1)], {"unique": True, "name": "idx_order_id_unique"}),
    ("payment_intents", [("user_id", 1), ("created_at", -1)], {"name": "idx_user_created"}),

    ("billing_customers", [("user_id", 1)], {"unique": True, "name": "idx_user_id_unique"}),
]


def check_environment() -> Tuple[bool, str]:
    """Returns (allowed, message). Production needs an explicit confirmation."""
    env = os.environ.get("ENVIRONMENT", "development")
    if env.lower() == "production" and os.environ.get("BILLING_INIT_CONFIRM") != "YES":
        return False, "Refusing to touch a production database without BILLING_INIT_CONFIRM=YES"
    return True, f"Environment: {env}"


async def ensure_indexes(db, dry_run: bool = False) -> List[str]:
    """Create every missing index. Safe to call on each startup."""
    results = []
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        collection = db[collection_name]
        label = f"{collection_name}.{options['name']}"

        if options["name"] in await collection.index_information():
            results.append(f"{label}: exists")
        elif dry_run:
            results.append(f"{label}: would create")
        else:
            try:
                await collection.create_index(index_spec, **options)
                results.append(f"{label}: created")
            except OperationFailure as e:
                # Another process created it first
                if "already exists" not in str(e).lower():
                    raise
                results.append(f"{label}: exists")
    return results


async def update_version_stamp(db) -> None:
    await db.billing_meta.update_one(
        {"_id": "billing_init"},
        {"$set": {"version": INIT_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
        upsert=True
    )


async def run_init(dry_run: bool = False) -> int:
    from database import check_db_connection, close_client, get_database

    allowed, message = check_environment()
    if not allowed:
        logger.error(message)
        return 1
    logger.info(message)

    connected, error = await check_db_connection()
    if not connected:
        logger.error(error)
        return 1

    try:
        db = get_database()
        for line in await ensure_indexes(db, dry_run):
            logger.info(line)
        if not dry_run:
            await update_version_stamp(db)
            logger.info(f"Billing indexes at {INIT_VERSION}")
    finally:
        close_client()
    return 0


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    parser = argparse.ArgumentParser(description="Create the AI billing indexes")
    parser.add_argument('--dry-run', action='store_true', help='List missing indexes without creating them')
    args = parser.parse_args()

    sys.exit(asyncio.run(run_init(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
