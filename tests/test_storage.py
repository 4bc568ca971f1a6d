"""
Tests for storage backends and atomic batches
"""

import pytest
import os
import tempfile

from ledger_core.config import LedgerConfig
from ledger_core.storage import InMemoryStorage, SQLiteStorage, create_storage


record = {"id": "rec_001", "lease_id": "lease_1", "amount": 10050}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(":memory:")
    yield backend
    backend.close()


class TestBasicOperations:
    """Test save/load/find on every backend"""

    def test_save_and_load(self, storage):
        storage.save("charges", "rec_001", record)
        assert storage.load("charges", "rec_001") == record
        assert storage.load("charges", "missing") is None

    def test_exists_and_count(self, storage):
        storage.save("charges", "rec_001", record)
        assert storage.exists("charges", "rec_001")
        assert not storage.exists("charges", "rec_002")
        assert storage.count("charges") == 1

    def test_save_overwrites_in_place(self, storage):
        """Updating a record keeps a single row"""
        storage.save("charges", "rec_001", record)
        storage.save("charges", "rec_001", {**record, "amount": 1})
        assert storage.count("charges") == 1
        assert storage.load("charges", "rec_001")["amount"] == 1

    def test_find_matches_all_filters(self, storage):
        storage.save("charges", "a", {"id": "a", "lease_id": "l1", "status": "open"})
        storage.save("charges", "b", {"id": "b", "lease_id": "l1", "status": "paid"})
        storage.save("charges", "c", {"id": "c", "lease_id": "l2", "status": "open"})

        results = storage.find("charges", {"lease_id": "l1", "status": "open"})
        assert [r["id"] for r in results] == ["a"]
        assert len(storage.load_all("charges")) == 3

    def test_loaded_records_are_copies(self, storage):
        storage.save("charges", "rec_001", record)
        loaded = storage.load("charges", "rec_001")
        loaded["amount"] = 0
        assert storage.load("charges", "rec_001")["amount"] == 10050

    def test_find_mixed_filters(self, storage):
        """Scalar filters and None-valued filters combine"""
        storage.save("charges", "a", {"id": "a", "lease_id": "l1", "voided_at": None, "amount": 100})
        storage.save("charges", "b", {"id": "b", "lease_id": "l1", "voided_at": "2024-03-01", "amount": 100})
        storage.save("charges", "c", {"id": "c", "lease_id": "l1", "voided_at": None, "amount": 200})

        results = storage.find("charges", {"lease_id": "l1", "voided_at": None, "amount": 100})
        assert [r["id"] for r in results] == ["a"]

    def test_rejects_unsafe_table_names(self, storage):
        with pytest.raises(ValueError, match="Invalid table name"):
            storage.save("charges; DROP TABLE x", "a", {"id": "a"})


class TestAtomicBatches:
    """Test that batches commit or roll back as a whole"""

    def test_commit_persists_all_writes(self, storage):
        with storage.atomic():
            storage.save("charges", "a", {"id": "a"})
            storage.save("payments", "p", {"id": "p"})
        assert storage.exists("charges", "a")
        assert storage.exists("payments", "p")

    def test_exception_rolls_back_every_write(self, storage):
        storage.save("charges", "a", {"id": "a", "paid_amount": 0})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("charges", "a", {"id": "a", "paid_amount": 500})
                storage.save("payments", "p", {"id": "p"})
                raise RuntimeError("write failed")

        assert storage.load("charges", "a")["paid_amount"] == 0
        assert not storage.exists("payments", "p")

    def test_nested_batches_roll_back_with_outer(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("charges", "inner", {"id": "inner"})
                storage.save("charges", "outer", {"id": "outer"})
                raise RuntimeError("outer failed")

        assert storage.count("charges") == 0

    def test_storage_usable_after_rollback(self, storage):
        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("charges", "a", {"id": "a"})
                raise ValueError("boom")

        with storage.atomic():
            storage.save("charges", "b", {"id": "b"})
        assert storage.exists("charges", "b")
        assert not storage.exists("charges", "a")


class TestSQLitePersistence:
    """Test that SQLite keeps data across connections"""

    def test_reopen_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "ledger.db")
            storage = SQLiteStorage(path)
            storage.save("charges", "rec_001", record)
            storage.close()

            reopened = SQLiteStorage(path)
            assert reopened.load("charges", "rec_001") == record
            reopened.close()

    def test_load_all_keeps_insertion_order(self):
        storage = SQLiteStorage(":memory:")
        for record_id in ["c", "a", "b"]:
            storage.save("charges", record_id, {"id": record_id})
        storage.save("charges", "c", {"id": "c", "updated": True})
        assert [r["id"] for r in storage.load_all("charges")] == ["c", "a", "b"]
        storage.close()


class TestCreateStorage:
    """Test backend selection from configuration"""

    def test_memory_url(self):
        assert isinstance(create_storage(LedgerConfig(database_url="memory://")), InMemoryStorage)

    def test_sqlite_memory_url(self):
        storage = create_storage(LedgerConfig(database_url="sqlite://"))
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported database_url"):
            create_storage(LedgerConfig(database_url="postgresql://localhost/ledger"))
