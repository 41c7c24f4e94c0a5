"""
Tests for storage backends, the atomic unit of work and record locks
"""

import threading
import pytest
from decimal import Decimal
from datetime import datetime, timezone

from contract_billing.storage import (
    InMemoryStorage, RecordLocks, SQLiteStorage, StorageRecord, parse_datetime, parse_decimal
)


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "status": "pending",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    """Each test runs against both backends"""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "billing.db")
    yield backend
    backend.close()


class TestStorageBackends:
    """Test basic operations on every backend"""

    def test_basic_operations(self, storage):
        """Test save, load, find and delete"""
        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data
        assert storage.load("test_table", "missing") is None

        storage.save("test_table", "record_2", {"id": "record_2", "status": "paid"})
        assert len(storage.load_all("test_table")) == 2

        results = storage.find("test_table", {"status": "pending"})
        assert [r["id"] for r in results] == ["test_001"]

        assert storage.delete("test_table", "record_1") is True
        assert storage.delete("test_table", "record_1") is False
        assert storage.load("test_table", "record_1") is None

    def test_find_with_membership_filter(self, storage):
        for record_id, status in (("a", "pending"), ("b", "overdue"), ("c", "paid")):
            storage.save("installments", record_id, {"id": record_id, "status": status})

        results = storage.find("installments", {"status": ["pending", "overdue"]})

        assert sorted(r["id"] for r in results) == ["a", "b"]

    def test_atomic_commits(self, storage):
        with storage.atomic():
            storage.save("test_table", "one", {"id": "one"})
            storage.save("test_table", "two", {"id": "two"})

        assert len(storage.load_all("test_table")) == 2

    def test_atomic_rolls_back_on_error(self, storage):
        storage.save("test_table", "kept", {"id": "kept", "value": 1})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("test_table", "kept", {"id": "kept", "value": 2})
                storage.save("test_table", "new", {"id": "new"})
                raise RuntimeError("abort")

        assert storage.load("test_table", "kept") == {"id": "kept", "value": 1}
        assert storage.load("test_table", "new") is None

    def test_nested_atomic_rolls_back_outer(self, storage):
        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("test_table", "outer", {"id": "outer"})
                with storage.atomic():
                    storage.save("test_table", "inner", {"id": "inner"})
                raise ValueError("abort after inner unit")

        assert storage.load_all("test_table") == []

    def test_record_locks_shared_per_store(self, storage):
        assert storage.record_locks is storage.record_locks


def test_sqlite_persists_across_connections(tmp_path):
    path = tmp_path / "persist.db"
    first = SQLiteStorage(path)
    first.save("contracts", "c1", {"id": "c1", "status": "draft"})
    first.close()

    second = SQLiteStorage(path)
    assert second.load("contracts", "c1") == {"id": "c1", "status": "draft"}
    second.close()


class TestRecordLocks:
    """Test per-record locking"""

    def test_same_key_same_lock(self):
        locks = RecordLocks()
        assert locks.lock_for("installment:1") is locks.lock_for("installment:1")
        assert locks.lock_for("installment:1") is not locks.lock_for("installment:2")

    def test_hold_is_reentrant(self):
        locks = RecordLocks()
        with locks.hold("contract:1", "installment:1"):
            with locks.hold("installment:1"):
                pass

    def test_hold_excludes_other_threads(self):
        locks = RecordLocks()
        acquired = []

        with locks.hold("installment:1"):
            worker = threading.Thread(
                target=lambda: acquired.append(locks.lock_for("installment:1").acquire(timeout=0.1))
            )
            worker.start()
            worker.join()

        assert acquired == [False]


class TestStorageRecord:
    """Test record serialization helpers"""

    def test_to_dict_encodes_values(self):
        now = datetime(2025, 1, 10, 9, 30, tzinfo=timezone.utc)
        record = StorageRecord(id="r1", created_at=now, updated_at=now)

        data = record.to_dict()

        assert data == {"id": "r1", "created_at": now.isoformat(), "updated_at": now.isoformat()}
        assert parse_datetime(data["created_at"]) == now

    def test_touch_updates_timestamp(self):
        then = datetime(2020, 1, 1, tzinfo=timezone.utc)
        record = StorageRecord(id="r1", created_at=then, updated_at=then)

        record.touch()

        assert record.updated_at > then
        assert record.created_at == then

    def test_parse_helpers_accept_none(self):
        assert parse_datetime(None) is None
        assert parse_decimal(None) is None
        assert parse_decimal("10.50") == Decimal("10.50")
