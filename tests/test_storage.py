"""
Tests for storage backends, transaction support and pagination
"""

import pytest
import tempfile
from decimal import Decimal
from datetime import datetime, timezone, timedelta
from pathlib import Path
from dataclasses import dataclass

from lending_ledger.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, Page, paginate
)


BASE_TIME = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


def make_record(record_id: str, minutes: int = 0, **fields):
    timestamp = (BASE_TIME + timedelta(minutes=minutes)).isoformat()
    record = {"id": record_id, "created_at": timestamp, "updated_at": timestamp}
    record.update(fields)
    return record


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Each backend, fresh per test"""
    if request.param == "memory":
        backend = InMemoryStorage()
        yield backend
        backend.close()
    else:
        with tempfile.TemporaryDirectory() as temp_dir:
            backend = SQLiteStorage(Path(temp_dir) / "test.db")
            yield backend
            backend.close()


class TestStorageInterface:
    """Behaviour shared by every backend"""

    def test_basic_operations(self, storage):
        """Test basic CRUD operations"""
        record = make_record("CUS-00001", name="Asha", amount="100.50")

        storage.save("customers", "CUS-00001", record)
        assert storage.load("customers", "CUS-00001") == record
        assert storage.exists("customers", "CUS-00001")
        assert not storage.exists("customers", "CUS-00002")
        assert storage.load("customers", "CUS-00002") is None

        storage.save("customers", "CUS-00002", make_record("CUS-00002", 1, name="Ravi"))
        assert len(storage.load_all("customers")) == 2
        assert storage.count("customers") == 2

        assert storage.delete("customers", "CUS-00001")
        assert not storage.delete("customers", "CUS-00001")
        assert storage.count("customers") == 1

        storage.clear_table("customers")
        assert storage.count("customers") == 0

    def test_update_replaces_data(self, storage):
        storage.save("loans", "L1", make_record("L1", status="active"))
        storage.save("loans", "L1", make_record("L1", status="closed"))

        assert storage.count("loans") == 1
        assert storage.load("loans", "L1")["status"] == "closed"

    def test_find_and_count_with_filters(self, storage):
        storage.save("loans", "L1", make_record("L1", 0, customer_id="CUS-00001", status="active"))
        storage.save("loans", "L2", make_record("L2", 1, customer_id="CUS-00001", status="closed"))
        storage.save("loans", "L3", make_record("L3", 2, customer_id="CUS-00002", status="active"))

        active = storage.find("loans", {"status": "active"})
        assert [r["id"] for r in active] == ["L1", "L3"]
        assert storage.count("loans", {"customer_id": "CUS-00001"}) == 2
        assert storage.count("loans", {"customer_id": "CUS-00001", "status": "active"}) == 1
        assert storage.count("loans", {"missing_field": "x"}) == 0

    def test_filters_compare_storable_values(self, storage):
        storage.save("payments", "P1", make_record("P1", amount=str(Decimal('10.00'))))
        assert storage.count("payments", {"amount": Decimal('10.00')}) == 1

    def test_load_all_in_creation_order(self, storage):
        storage.save("loans", "late", make_record("late", 10))
        storage.save("loans", "early", make_record("early", 0))
        ids = [r["id"] for r in storage.load_all("loans")]
        if isinstance(storage, SQLiteStorage):
            assert ids == ["early", "late"]
        else:
            assert set(ids) == {"early", "late"}

    def test_find_latest(self, storage):
        assert storage.find_latest("loans") is None

        storage.save("loans", "L1", make_record("L1", 0, sequence_number=1, customer_id="A"))
        storage.save("loans", "L2", make_record("L2", 5, sequence_number=2, customer_id="B"))
        storage.save("loans", "L3", make_record("L3", 3, sequence_number=3, customer_id="A"))

        assert storage.find_latest("loans")["id"] == "L2"
        assert storage.find_latest("loans", {"customer_id": "A"})["id"] == "L3"

    def test_find_latest_tie_goes_to_later_record(self, storage):
        storage.save("loans", "L1", make_record("L1", 0))
        storage.save("loans", "L2", make_record("L2", 0))
        assert storage.find_latest("loans")["id"] == "L2"

    def test_loaded_records_are_copies(self, storage):
        storage.save("customers", "C1", make_record("C1", name="Asha"))
        loaded = storage.load("customers", "C1")
        loaded["name"] = "changed"
        assert storage.load("customers", "C1")["name"] == "Asha"


class TestTransactionSupport:
    """Test atomic transaction support"""

    def test_in_memory_atomic_context_manager(self):
        """In-memory atomic blocks commit and propagate errors"""
        storage = InMemoryStorage()

        with storage.atomic():
            storage.save("loans", "L1", make_record("L1"))
            storage.save("loans", "L2", make_record("L2"))
        assert storage.count("loans") == 2

        with pytest.raises(ValueError):
            with storage.atomic():
                raise ValueError("Simulated error")

    def test_sqlite_commit_and_rollback(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            storage.save("loans", "L1", make_record("L1"))

            with pytest.raises(ValueError):
                with storage.atomic():
                    storage.save("loans", "L2", make_record("L2"))
                    storage.save("loans", "L1", make_record("L1", status="closed"))
                    raise ValueError("Simulated error")

            assert storage.count("loans") == 1
            assert not storage.exists("loans", "L2")
            assert "status" not in storage.load("loans", "L1")

            storage.close()

    def test_sqlite_nested_blocks_commit_once(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            storage.save("loans", "L0", make_record("L0"))

            with pytest.raises(RuntimeError):
                with storage.atomic():
                    with storage.atomic():
                        storage.save("loans", "L1", make_record("L1"))
                    storage.save("loans", "L2", make_record("L2"))
                    raise RuntimeError("outer failure")

            assert storage.count("loans") == 1

            with storage.atomic():
                with storage.atomic():
                    storage.save("loans", "L1", make_record("L1"))
            assert storage.count("loans") == 2

            storage.close()

    def test_sqlite_data_survives_reopen(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)
            storage.save("customers", "CUS-00001", make_record("CUS-00001", name="Asha"))
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("customers", "CUS-00001")["name"] == "Asha"
            reopened.close()


class TestStorageRecord:
    """Test StorageRecord serialization"""

    def test_storage_record_serialization(self):
        @dataclass
        class SampleRecord(StorageRecord):
            name: str
            amount: Decimal
            due_date: datetime

        now = datetime.now(timezone.utc)
        record = SampleRecord(
            id="test_001",
            created_at=now,
            updated_at=now,
            name="Sample",
            amount=Decimal("100.50"),
            due_date=now
        )

        data = record.to_dict()
        assert data["id"] == "test_001"
        assert data["amount"] == "100.50"
        assert data["created_at"] == now.isoformat()
        assert data["due_date"] == now.isoformat()


class TestPagination:
    """Test list slicing into pages"""

    def test_paginate(self):
        page = paginate(list(range(25)), page=2, limit=10)
        assert page.items == list(range(10, 20))
        assert page.total == 25
        assert page.pages == 3
        assert page.count == 10

    def test_last_and_out_of_range_pages(self):
        assert paginate(list(range(25)), page=3, limit=10).items == [20, 21, 22, 23, 24]
        beyond = paginate(list(range(25)), page=9, limit=10)
        assert beyond.items == []
        assert beyond.total == 25

    def test_page_and_limit_are_clamped(self):
        page = paginate([1, 2, 3], page=0, limit=0)
        assert page.page == 1
        assert page.limit == 1
        assert page.items == [1]

    def test_map_keeps_paging(self):
        page = paginate([1, 2, 3], page=1, limit=2).map(lambda n: n * 10)
        assert page.items == [10, 20]
        assert page.total == 3
        assert page.pages == 2

    def test_empty_page(self):
        assert Page(items=[], total=0, page=1, limit=10).pages == 0
