"""
Billing DB Init Tests
"""

import mongomock
import pytest
from pymongo.errors import DuplicateKeyError

from ai_billing.db_init import (
    INIT_VERSION,
    REQUIRED_INDEXES,
    check_environment,
    ensure_indexes,
    update_version_stamp,
)
from conftest import AsyncDatabase


class TestEnvironmentGuard:
    def test_development_allowed(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "development")
        allowed, _ = check_environment()
        assert allowed is True

    def test_production_requires_confirmation(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.delenv("BILLING_INIT_CONFIRM", raising=False)
        allowed, message = check_environment()
        assert allowed is False
        assert "BILLING_INIT_CONFIRM" in message

        monkeypatch.setenv("BILLING_INIT_CONFIRM", "YES")
        allowed, _ = check_environment()
        assert allowed is True


class TestIndexes:
    @pytest.mark.asyncio
    async def test_creates_then_skips(self):
        db = AsyncDatabase(mongomock.MongoClient()["init_test"])

        first = await ensure_indexes(db)
        second = await ensure_indexes(db)

        assert all(line.endswith(": created") for line in first)
        assert all(line.endswith(": exists") for line in second)
        assert len(first) == len(REQUIRED_INDEXES)

        info = db.raw.token_transactions.index_information()
        assert info["idx_user_transaction_unique"]["unique"] is True

    @pytest.mark.asyncio
    async def test_transaction_ids_unique_per_user_only(self):
        db = AsyncDatabase(mongomock.MongoClient()["init_test"])
        await ensure_indexes(db)

        db.raw.token_transactions.insert_one({"user_id": "alice", "id": "prompt:p1"})
        db.raw.token_transactions.insert_one({"user_id": "bob", "id": "prompt:p1"})

        with pytest.raises(DuplicateKeyError):
            db.raw.token_transactions.insert_one({"user_id": "alice", "id": "prompt:p1"})

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self):
        db = AsyncDatabase(mongomock.MongoClient()["init_test"])

        lines = await ensure_indexes(db, dry_run=True)

        assert all(line.endswith(": would create") for line in lines)
        assert db.raw.token_usage.index_information() == {}

    @pytest.mark.asyncio
    async def test_version_stamp(self, mongo_db):
        await update_version_stamp(mongo_db)
        await update_version_stamp(mongo_db)

        stamps = list(mongo_db.raw.billing_meta.find({}))
        assert len(stamps) == 1
        assert stamps[0]["version"] == INIT_VERSION
