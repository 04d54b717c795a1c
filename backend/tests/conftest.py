"""
Shared fixtures for the billing test suite.

Stateful tests run against mongomock behind a small async wrapper that
mirrors the parts of the motor API the billing code uses. Every call yields
to the event loop first, so concurrent coroutines interleave the way they
would against a real server.
"""

import asyncio
import hashlib
import hmac
import os
import time

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "appforge_test")

import mongomock  # noqa: E402
import pytest  # noqa: E402
from pymongo.errors import ServerSelectionTimeoutError  # noqa: E402

from ai_billing.db_init import REQUIRED_INDEXES  # noqa: E402
from ai_billing.ledger import TokenLedger  # noqa: E402


class AsyncCursor:
    def __init__(self, cursor, collection):
        self._cursor = cursor
        self._collection = collection

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def skip(self, count):
        self._cursor = self._cursor.skip(count)
        return self

    def limit(self, count):
        self._cursor = self._cursor.limit(count)
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        self._collection._check_fault("find")
        docs = list(self._cursor)
        return docs if length is None else docs[:length]


class AsyncCollection:
    """motor-style awaitable facade over a mongomock collection."""

    def __init__(self, collection, database):
        self._collection = collection
        self._database = database

    def _check_fault(self, operation):
        error = self._database.faults.get((self._collection.name, operation))
        if error is not None:
            raise error

    def find(self, *args, **kwargs):
        return AsyncCursor(self._collection.find(*args, **kwargs), self)

    def __getattr__(self, name):
        method = getattr(self._collection, name)

        async def call(*args, **kwargs):
            await asyncio.sleep(0)
            self._check_fault(name)
            return method(*args, **kwargs)

        return call


class AsyncDatabase:
    def __init__(self, database):
        self._database = database
        self.faults = {}

    def __getattr__(self, name):
        return AsyncCollection(self._database[name], self)

    def __getitem__(self, name):
        return AsyncCollection(self._database[name], self)

    @property
    def raw(self):
        """The synchronous mongomock database, for assertions."""
        return self._database

    def fail(self, collection, operation, error=None):
        self.faults[(collection, operation)] = error or ServerSelectionTimeoutError("simulated outage")

    def recover(self):
        self.faults.clear()

    async def command(self, name):
        await asyncio.sleep(0)
        return {"ok": 1.0}


@pytest.fixture
def mongo_db():
    database = mongomock.MongoClient()["appforge_test"]
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        database[collection_name].create_index(index_spec, **options)
    return AsyncDatabase(database)


@pytest.fixture
def ledger(mongo_db):
    return TokenLedger(mongo_db)


def seed_usage(mongo_db, user_id="user-1", plan_id="pro", total=1000, used=0, cycle_end=None, cycle_id=None):
    """Insert a usage record directly, bypassing the ledger."""
    cycle_id = cycle_id or f"seed:{user_id}"
    mongo_db.raw.token_usage.insert_one({
        "user_id": user_id,
        "plan_id": plan_id,
        "tokens_total": total,
        "tokens_used": used,
        "tokens_remaining": total - used,
        "cycle_start": "2026-01-01T00:00:00+00:00",
        "cycle_end": cycle_end or "2099-01-01T00:00:00+00:00",
        "cycle_id": cycle_id,
        "version": 1,
        "applied_ids": [],
    })
    if total:
        mongo_db.raw.token_transactions.insert_one({
            "id": cycle_id,
            "user_id": user_id,
            "delta": total,
            "kind": "grant",
            "source": "subscription",
            "cycle_id": cycle_id,
            "timestamp": "2026-01-01T00:00:00+00:00",
        })


def stripe_signature_header(body, secret, timestamp=None):
    """Build a Stripe-Signature header the way Stripe signs webhook deliveries."""
    ts = int(timestamp if timestamp is not None else time.time())
    text = body.decode("utf-8") if isinstance(body, bytes) else body
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{text}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def seeded(mongo_db):
    def _seed(**kwargs):
        seed_usage(mongo_db, **kwargs)
    return _seed
