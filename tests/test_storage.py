"""
Unit tests for storage layer.

Tests schema creation, record persistence and the charge audit trail.
"""

import os
import tempfile
from datetime import datetime, timezone

import pytest

from enhance_guard.core.types import CostClass, Tier
from enhance_guard.storage.db import get_connection
from enhance_guard.storage.models import CreditChargeEvent, UsageRecord
from enhance_guard.storage.repository import (
    InMemoryUsageStore,
    SQLiteUsageStore,
    fetch_recent_charge_events,
    initialize_schema,
    insert_charge_event,
)


def _charge(account_id: str = "acct-1", minute: int = 0, cost_class: CostClass = CostClass.BUDGET):
    return CreditChargeEvent(
        timestamp=datetime(2024, 1, 1, 12, minute, 0, tzinfo=timezone.utc),
        account_id=account_id,
        tier=Tier.FREE,
        cost_class=cost_class,
        provider="openai",
        task="simple_enhance",
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify both tables are created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
                )
                tables = [row[0] for row in cursor.fetchall()]
                assert "usage_record" in tables
                assert "credit_charge_event" in tables

                cursor = conn.execute("PRAGMA table_info(credit_charge_event)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == [
                    'id', 'timestamp', 'account_id', 'tier', 'cost_class', 'provider', 'task'
                ]
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        """Initializing twice must not fail or drop data."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            insert_charge_event(_charge(), db_path)
            initialize_schema(db_path)

            assert len(fetch_recent_charge_events(db_path=db_path)) == 1


class TestUsageRecord:
    """Test the usage record model."""

    def test_dict_conversion_preserves_fields(self):
        record = UsageRecord(
            tier=Tier.PRO,
            budget_consumed=3,
            premium_consumed=1,
            period_start=datetime(2024, 2, 1, tzinfo=timezone.utc),
        )
        assert UsageRecord.from_dict(record.to_dict()) == record

    def test_incremented_returns_copy(self):
        record = UsageRecord(Tier.FREE, 0, 0, datetime(2024, 2, 1, tzinfo=timezone.utc))
        updated = record.incremented(CostClass.PREMIUM)

        assert record.premium_consumed == 0
        assert updated.premium_consumed == 1
        assert record.incremented(CostClass.FREE) is record

    def test_negative_counters_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            UsageRecord(Tier.FREE, -1, 0, datetime(2024, 2, 1, tzinfo=timezone.utc))


class TestInMemoryUsageStore:
    """Test the in-memory store."""

    def test_get_missing_key(self):
        assert InMemoryUsageStore().get("usage:nobody") is None

    def test_values_are_copied(self):
        """Mutating a returned value must not change the stored one."""
        store = InMemoryUsageStore()
        store.set("k", {"count": 1})
        value = store.get("k")
        value["count"] = 99

        assert store.get("k") == {"count": 1}

    def test_recent_charges_newest_first(self):
        store = InMemoryUsageStore()
        store.append_charge(_charge("a", minute=1))
        store.append_charge(_charge("b", minute=2))
        store.append_charge(_charge("a", minute=3))

        charges = store.recent_charges("a")
        assert [c.timestamp.minute for c in charges] == [3, 1]
        assert len(store.recent_charges(limit=2)) == 2


class TestSQLiteUsageStore:
    """Test the SQLite store."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_set_then_get(self):
        store = SQLiteUsageStore(self.db_path)
        store.set("usage:acct-1", {"tier": "free", "budget_consumed": 2})

        assert store.get("usage:acct-1") == {"tier": "free", "budget_consumed": 2}
        assert store.get("usage:other") is None

    def test_set_overwrites(self):
        store = SQLiteUsageStore(self.db_path)
        store.set("k", {"v": 1})
        store.set("k", {"v": 2})

        assert store.get("k") == {"v": 2}

    def test_values_survive_new_store_instance(self):
        """Records persist across store instances on the same file."""
        SQLiteUsageStore(self.db_path).set("k", {"v": 1})

        assert SQLiteUsageStore(self.db_path).get("k") == {"v": 1}

    def test_charges_round_trip_through_audit_table(self):
        store = SQLiteUsageStore(self.db_path)
        store.append_charge(_charge("acct-1", minute=1))
        store.append_charge(_charge("acct-2", minute=2, cost_class=CostClass.PREMIUM))

        charges = store.recent_charges()
        assert [c.account_id for c in charges] == ["acct-2", "acct-1"]
        assert charges[0].cost_class == CostClass.PREMIUM
        assert charges[1].provider == "openai"
        assert charges[1].task == "simple_enhance"
        assert charges[1].timestamp == datetime(2024, 1, 1, 12, 1, 0, tzinfo=timezone.utc)

    def test_fetch_filters_by_account_and_limit(self):
        initialize_schema(self.db_path)
        for minute in range(5):
            insert_charge_event(_charge("acct-1", minute=minute), self.db_path)
        insert_charge_event(_charge("acct-2", minute=9), self.db_path)

        events = fetch_recent_charge_events("acct-1", limit=3, db_path=self.db_path)
        assert len(events) == 3
        assert all(e.account_id == "acct-1" for e in events)
        assert [e.timestamp.minute for e in events] == [4, 3, 2]
