"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
import os
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from types import SimpleNamespace
from unittest.mock import Mock

from sacco_core.currency import Money, Currency
from sacco_core.storage import (
    InMemoryStorage, SQLiteStorage, PostgreSQLStorage, StorageInterface, StorageRecord,
    DuplicateKeyError, storage_from_url
)


class Colour(Enum):
    RED = "red"
    BLUE = "blue"


@dataclass
class SampleRecord(StorageRecord):
    amount: Money
    colour: Colour
    due: date
    rate: Decimal
    note: Optional[str] = None
    paid_at: Optional[datetime] = None


class StorageContract:
    """Behaviour every backend must provide; subclasses supply make_storage"""

    def make_storage(self):
        raise NotImplementedError

    def setup_method(self):
        self.storage = self.make_storage()

    def teardown_method(self):
        self.storage.close()

    def test_basic_operations(self):
        """Test save, load, find, count and delete"""
        self.storage.save("items", "a", {"id": "a", "kind": "x", "n": 1})
        self.storage.save("items", "b", {"id": "b", "kind": "y", "n": 2})

        assert self.storage.load("items", "a") == {"id": "a", "kind": "x", "n": 1}
        assert self.storage.exists("items", "b")
        assert not self.storage.exists("items", "missing")
        assert self.storage.count("items") == 2
        assert [r["id"] for r in self.storage.find("items", {"kind": "y"})] == ["b"]
        assert len(self.storage.load_all("items")) == 2

        assert self.storage.delete("items", "a")
        assert not self.storage.delete("items", "a")
        assert self.storage.load("items", "a") is None

        self.storage.clear_table("items")
        assert self.storage.count("items") == 0

    def test_save_overwrites_same_id(self):
        """Test that saving an existing id replaces the document"""
        self.storage.save("items", "a", {"id": "a", "n": 1})
        self.storage.save("items", "a", {"id": "a", "n": 2})

        assert self.storage.count("items") == 1
        assert self.storage.load("items", "a")["n"] == 2

    def test_unique_constraint(self):
        """Test that a registered unique field combination is enforced"""
        self.storage.register_unique("targets", ("member_id", "period_id"))
        self.storage.save("targets", "t1", {"id": "t1", "member_id": "m1", "period_id": "p1"})
        self.storage.save("targets", "t2", {"id": "t2", "member_id": "m1", "period_id": "p2"})

        with pytest.raises(DuplicateKeyError) as exc_info:
            self.storage.save("targets", "t3", {"id": "t3", "member_id": "m1", "period_id": "p1"})
        assert exc_info.value.fields == ("member_id", "period_id")

        # Re-saving the owner of the key is fine
        self.storage.save("targets", "t1", {"id": "t1", "member_id": "m1", "period_id": "p1", "x": 1})
        assert self.storage.count("targets") == 2
        assert self.storage.load("targets", "t1")["x"] == 1

    def test_unique_constraint_ignores_missing_values(self):
        """Test that documents without the unique fields do not collide"""
        self.storage.register_unique("loans", ("loan_number",))
        self.storage.save("loans", "l1", {"id": "l1", "loan_number": None})
        self.storage.save("loans", "l2", {"id": "l2", "loan_number": None})
        assert self.storage.count("loans") == 2

    def test_unique_registered_after_table_exists(self):
        """Test registering a constraint on a table that already has rows"""
        self.storage.save("years", "y1", {"id": "y1", "year": 2025})
        self.storage.register_unique("years", ("year",))

        with pytest.raises(DuplicateKeyError):
            self.storage.save("years", "y2", {"id": "y2", "year": 2025})

    def test_atomic_commits(self):
        """Test that a successful atomic block persists its writes"""
        with self.storage.atomic():
            self.storage.save("items", "a", {"id": "a"})
            self.storage.save("items", "b", {"id": "b"})

        assert self.storage.count("items") == 2
        assert not self.storage.in_transaction

    def test_atomic_rolls_back_on_error(self):
        """Test that a failing atomic block leaves no partial writes"""
        self.storage.save("items", "keep", {"id": "keep", "n": 1})

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("items", "new", {"id": "new"})
                self.storage.save("items", "keep", {"id": "keep", "n": 2})
                self.storage.delete("items", "keep")
                raise RuntimeError("boom")

        assert self.storage.load("items", "new") is None
        assert self.storage.load("items", "keep") == {"id": "keep", "n": 1}

    def test_nested_atomic_is_one_transaction(self):
        """Test that an inner block's writes roll back with the outer block"""
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                with self.storage.atomic():
                    self.storage.save("items", "inner", {"id": "inner"})
                assert self.storage.in_transaction
                raise RuntimeError("outer failure")

        assert self.storage.load("items", "inner") is None

    def test_duplicate_inside_transaction_rolls_back(self):
        """Test that a unique violation aborts the whole transaction"""
        self.storage.register_unique("periods", ("year", "sequence"))
        self.storage.save("periods", "p1", {"id": "p1", "year": 2025, "sequence": 1})

        with pytest.raises(DuplicateKeyError):
            with self.storage.atomic():
                self.storage.save("periods", "p2", {"id": "p2", "year": 2025, "sequence": 2})
                self.storage.save("periods", "p3", {"id": "p3", "year": 2025, "sequence": 1})

        assert self.storage.load("periods", "p2") is None
        assert self.storage.count("periods") == 1

    def test_compare_and_save(self):
        """Test optimistic version checks"""
        self.storage.save("loans", "l1", {"id": "l1", "version": 1, "status": "pending"})

        assert self.storage.compare_and_save("loans", "l1", {"id": "l1", "version": 2, "status": "approved"},
                                             {"version": 1})
        assert self.storage.load("loans", "l1")["status"] == "approved"

        # Stale version loses
        assert not self.storage.compare_and_save("loans", "l1", {"id": "l1", "version": 2, "status": "rejected"},
                                                 {"version": 1})
        assert self.storage.load("loans", "l1")["status"] == "approved"

        # Missing record never matches
        assert not self.storage.compare_and_save("loans", "nope", {"id": "nope", "version": 1}, {"version": 0})

    def test_record_round_trip(self):
        """Test that StorageRecord documents survive a save/load cycle"""
        now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        record = SampleRecord(
            id="r1",
            created_at=now,
            updated_at=now,
            amount=Money(Decimal('1050.00'), Currency.EUR),
            colour=Colour.BLUE,
            due=date(2025, 3, 31),
            rate=Decimal('0.05'),
            paid_at=now
        )
        self.storage.save("records", record.id, record.to_dict())

        loaded = SampleRecord.from_dict(self.storage.load("records", "r1"))
        assert loaded == record
        assert self.storage.load("records", "r1")["amount"] == {"amount": "1050.00", "currency": "EUR"}


class TestInMemoryStorage(StorageContract):
    """In-memory backend"""

    def make_storage(self):
        return InMemoryStorage()

    def test_loaded_documents_are_copies(self):
        """Test that mutating a loaded document does not change storage"""
        self.storage.save("items", "a", {"id": "a", "tags": ["x"]})
        loaded = self.storage.load("items", "a")
        loaded["tags"].append("y")

        assert self.storage.load("items", "a")["tags"] == ["x"]


class TestSQLiteStorage(StorageContract):
    """SQLite backend on an in-memory database"""

    def make_storage(self):
        return SQLiteStorage(":memory:")


class TestSQLiteFileStorage:
    """SQLite backend on a file"""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "sacco.db")

    def test_data_persists_across_connections(self):
        """Test that committed data and unique indexes survive reopening"""
        storage = SQLiteStorage(self.db_path)
        storage.register_unique("periods", ("year", "sequence"))
        storage.save("periods", "p1", {"id": "p1", "year": 2025, "sequence": 1})
        storage.close()

        reopened = SQLiteStorage(self.db_path)
        reopened.register_unique("periods", ("year", "sequence"))
        assert reopened.load("periods", "p1")["year"] == 2025
        with pytest.raises(DuplicateKeyError):
            reopened.save("periods", "p2", {"id": "p2", "year": 2025, "sequence": 1})
        reopened.close()


class TestStorageFromUrl:
    """Backend selection from database URLs"""

    def test_memory_url(self):
        """Test memory:// selects the in-memory backend"""
        assert isinstance(storage_from_url("memory://"), InMemoryStorage)

    def test_sqlite_urls(self):
        """Test sqlite URLs select SQLite with the right path"""
        storage = storage_from_url("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

        path = os.path.join(tempfile.mkdtemp(), "ledger.db")
        storage = storage_from_url(f"sqlite:///{path}")
        assert storage.db_path == path
        storage.close()

    def test_unknown_url(self):
        """Test that unsupported schemes are rejected"""
        with pytest.raises(ValueError):
            storage_from_url("mysql://localhost/sacco")


class FakeIntegrityError(Exception):
    pass


class TestPostgreSQLWrites:
    """Statement handling of the PostgreSQL backend over a recording connection"""

    def setup_method(self):
        self.statements = []
        cursor = Mock()
        cursor.rowcount = 1
        cursor.execute.side_effect = self._execute
        self.connection = Mock()
        self.connection.cursor.return_value = cursor

        storage = PostgreSQLStorage.__new__(PostgreSQLStorage)
        StorageInterface.__init__(storage)
        storage.psycopg2 = SimpleNamespace(IntegrityError=FakeIntegrityError)
        storage.connection_string = "postgresql://localhost/sacco"
        storage._connection = self.connection
        storage._in_transaction = False
        storage._tables = {"loans"}
        storage._unique["loans"] = [("loan_number",)]
        self.storage = storage

    def _execute(self, sql, params=None):
        statement = " ".join(sql.split())
        self.statements.append(statement)
        if statement.startswith("INSERT") and params[0] == "taken":
            raise FakeIntegrityError('duplicate key value violates unique constraint "uq_loans_loan_number"')

    def test_duplicate_inside_transaction_keeps_it_usable(self):
        """Test that a unique violation only undoes its own statement"""
        with self.storage.atomic():
            with pytest.raises(DuplicateKeyError) as exc_info:
                self.storage.save("loans", "taken", {"loan_number": "LN-2025-0001"})
            self.storage.save("loans", "free", {"loan_number": "LN-2025-0002"})

        assert exc_info.value.fields == ("loan_number",)
        assert self.statements[0] == "SAVEPOINT sacco_write"
        assert self.statements[1].startswith("INSERT")
        assert self.statements[2] == "ROLLBACK TO SAVEPOINT sacco_write"
        assert self.statements[3] == "SAVEPOINT sacco_write"
        assert self.statements[4].startswith("INSERT")
        assert self.statements[5] == "RELEASE SAVEPOINT sacco_write"
        self.connection.rollback.assert_not_called()
        self.connection.commit.assert_called_once()

    def test_duplicate_outside_transaction_rolls_back(self):
        """Test autocommit writes without savepoints"""
        with pytest.raises(DuplicateKeyError):
            self.storage.save("loans", "taken", {"loan_number": "LN-2025-0001"})

        assert not any("SAVEPOINT" in s for s in self.statements)
        self.connection.rollback.assert_called_once()

    def test_compare_and_save_reports_match(self):
        """Test the conditional update result"""
        with self.storage.atomic():
            assert self.storage.compare_and_save("loans", "free", {"version": 2}, {"version": 1})

        assert self.statements[1].startswith("UPDATE")
        assert self.statements[2] == "RELEASE SAVEPOINT sacco_write"
