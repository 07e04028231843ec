"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (persistence) and PostgreSQL. Records are stored as JSON documents; all
monetary values are stored as Decimal strings.

Besides plain CRUD every backend supports:
- re-entrant atomic() transactions that leave no partial writes on error
- unique constraints over document fields (register_unique)
- compare_and_save() for optimistic version checks
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple, Sequence
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import copy
import sqlite3
import json
import threading
import typing
from dataclasses import dataclass, fields as dataclass_fields
from pathlib import Path
from contextlib import contextmanager

from .currency import Money, Currency


class DuplicateKeyError(Exception):
    """Raised by a backend when a unique constraint would be violated"""

    def __init__(self, table: str, fields: Sequence[str], detail: str = ""):
        self.table = table
        self.fields = tuple(fields)
        super().__init__(f"Unique constraint on {table}({', '.join(fields)}) violated {detail}".strip())


def _encode(value: Any) -> Any:
    """Convert a domain value into its JSON document form"""
    if isinstance(value, Money):
        return {"amount": str(value.amount), "currency": value.currency.code}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any, hint: Any) -> Any:
    """Convert a JSON document value back using the dataclass type hint"""
    if value is None:
        return None

    origin = typing.get_origin(hint)
    if origin is Union:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        hint = args[0] if len(args) == 1 else Any
        origin = typing.get_origin(hint)

    if hint is Money:
        return Money(Decimal(value["amount"]), Currency[value["currency"]])
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    if hint is datetime:
        return datetime.fromisoformat(value) if isinstance(value, str) else value
    if hint is date:
        return date.fromisoformat(value) if isinstance(value, str) else value
    if hint is Decimal:
        return Decimal(str(value))
    if origin in (list, List):
        (item_hint,) = typing.get_args(hint) or (Any,)
        return [_decode(v, item_hint) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: _encode(getattr(self, f.name)) for f in dataclass_fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        hints = typing.get_type_hints(cls)
        kwargs = {}
        for f in dataclass_fields(cls):
            if f.name in data:
                kwargs[f.name] = _decode(data[f.name], hints.get(f.name, Any))
        return cls(**kwargs)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._unique: Dict[str, List[Tuple[str, ...]]] = {}

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected: Dict[str, Any]) -> bool:
        """
        Save only if the stored record exists and matches every expected field.

        Returns:
            True if the record was written, False if the check failed
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def register_unique(self, table: str, fields: Sequence[str]) -> None:
        """Declare that the combination of fields must be unique in table"""
        key = tuple(fields)
        with self._lock:
            constraints = self._unique.setdefault(table, [])
            if key not in constraints:
                constraints.append(key)
                self._on_unique_registered(table, key)

    def _on_unique_registered(self, table: str, fields: Tuple[str, ...]) -> None:
        """Hook for backends that materialize unique indexes"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Re-entrant: only the outermost block begins and commits. The backend
        lock is held for the whole block so concurrent callers on the same
        storage instance are serialized and never observe partial writes.
        """
        with self._lock:
            if self._tx_depth == 0:
                self.begin_transaction()
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self.rollback()
                raise
            else:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _check_unique(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        for fields in self._unique.get(table, []):
            values = tuple(data.get(f) for f in fields)
            if any(v is None for v in values):
                continue
            for other_id, other in self._data[table].items():
                if other_id != record_id and tuple(other.get(f) for f in fields) == values:
                    raise DuplicateKeyError(table, fields, f"by record {other_id}")

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            document = json.loads(json.dumps(data, default=str))
            self._check_unique(table, record_id, document)
            self._data[table][record_id] = document

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(json.loads(json.dumps(record)))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected: Dict[str, Any]) -> bool:
        """Save only if the stored record matches the expected fields"""
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None:
                return False
            for key, value in expected.items():
                if current.get(key) != value:
                    return False
            self.save(table, record_id, data)
            return True

    def begin_transaction(self) -> None:
        """Snapshot all tables so rollback can restore them"""
        with self._lock:
            self._snapshot = copy.deepcopy(self._data)

    def commit(self) -> None:
        """Discard the snapshot"""
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        """Restore the snapshot taken at transaction start"""
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._in_transaction = False
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.execute("PRAGMA busy_timeout = 5000")
                self._connection.commit()

    def _maybe_commit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _create_unique_index(self, table: str, fields: Tuple[str, ...]) -> None:
        columns = ", ".join(f"json_extract(data, '$.{f}')" for f in fields)
        self._connection.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{'_'.join(fields)}
            ON {table} ({columns})
        """)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            if table in self._tables:
                return
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            for fields in self._unique.get(table, []):
                self._create_unique_index(table, fields)
            self._maybe_commit()
            self._tables.add(table)

    def _on_unique_registered(self, table: str, fields: Tuple[str, ...]) -> None:
        if table in self._tables:
            self._create_unique_index(table, fields)
            self._maybe_commit()

    def _raise_duplicate(self, table: str, error: sqlite3.IntegrityError) -> None:
        if not self._in_transaction:
            self._connection.rollback()
        message = str(error)
        for fields in self._unique.get(table, []):
            if f"uq_{table}_{'_'.join(fields)}" in message:
                raise DuplicateKeyError(table, fields, message) from error
        raise DuplicateKeyError(table, ("id",), message) from error

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                """, (record_id, data_json, now, now))
            except sqlite3.IntegrityError as e:
                self._raise_duplicate(table, e)

            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._maybe_commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(record)

            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected: Dict[str, Any]) -> bool:
        """Conditional UPDATE guarded by json_extract comparisons"""
        with self._lock:
            self._ensure_table(table)
            conditions = ["id = ?"]
            params: List[Any] = [json.dumps(data, default=str), datetime.now(timezone.utc).isoformat(), record_id]
            for key, value in expected.items():
                conditions.append(f"json_extract(data, '$.{key}') = ?")
                params.append(value)

            try:
                cursor = self._connection.execute(f"""
                    UPDATE {table} SET data = ?, updated_at = ?
                    WHERE {' AND '.join(conditions)}
                """, params)
            except sqlite3.IntegrityError as e:
                self._raise_duplicate(table, e)

            self._maybe_commit()
            return cursor.rowcount == 1

    def begin_transaction(self) -> None:
        """Start an IMMEDIATE transaction so writers are serialized across connections"""
        with self._lock:
            if not self._in_transaction:
                if self._connection.in_transaction:
                    self._connection.commit()
                self._connection.execute("BEGIN IMMEDIATE")
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False
                # Tables created inside the rolled back transaction are gone
                self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str):
        super().__init__()
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install sacco-core[postgres]")

        self.connection_string = connection_string
        self._connection = None
        self._in_transaction = False
        self._tables: set = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            if self._connection:
                self._connection.close()

            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    def _maybe_commit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _create_unique_index(self, cursor, table: str, fields: Tuple[str, ...]) -> None:
        columns = ", ".join(f"(data ->> '{f}')" for f in fields)
        cursor.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{'_'.join(fields)}
            ON {table} ({columns})
        """)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            if table in self._tables:
                return
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data JSONB NOT NULL,
                        created_at TIMESTAMP DEFAULT NOW(),
                        updated_at TIMESTAMP DEFAULT NOW()
                    )
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_data
                    ON {table} USING gin(data)
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                    ON {table}(created_at)
                """)
                for fields in self._unique.get(table, []):
                    self._create_unique_index(cursor, table, fields)
                self._maybe_commit()
            finally:
                cursor.close()
            self._tables.add(table)

    def _on_unique_registered(self, table: str, fields: Tuple[str, ...]) -> None:
        if table in self._tables:
            cursor = self._connection.cursor()
            try:
                self._create_unique_index(cursor, table, fields)
                self._maybe_commit()
            finally:
                cursor.close()

    def _raise_duplicate(self, table: str, error: Exception) -> None:
        if not self._in_transaction:
            self._connection.rollback()
        message = str(error)
        for fields in self._unique.get(table, []):
            if f"uq_{table}_{'_'.join(fields)}" in message:
                raise DuplicateKeyError(table, fields, message) from error
        raise DuplicateKeyError(table, ("id",), message) from error

    @contextmanager
    def _write(self, table: str):
        """
        Cursor for one write statement.

        Inside a transaction the statement runs under a savepoint, so a unique
        violation only undoes that statement and the transaction stays usable
        for the caller's next attempt.
        """
        cursor = self._connection.cursor()
        savepoint = self._in_transaction
        try:
            if savepoint:
                cursor.execute("SAVEPOINT sacco_write")
            try:
                yield cursor
            except self.psycopg2.IntegrityError as e:
                if savepoint:
                    cursor.execute("ROLLBACK TO SAVEPOINT sacco_write")
                self._raise_duplicate(table, e)
            if savepoint:
                cursor.execute("RELEASE SAVEPOINT sacco_write")
            self._maybe_commit()
        finally:
            cursor.close()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc)
            data_json = json.dumps(data, default=str)

            with self._write(table) as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT data FROM {table} WHERE id = %s
                """, (record_id,))
                row = cursor.fetchone()
                if row:
                    return dict(row['data'])
                return None
            finally:
                cursor.close()

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT data FROM {table} ORDER BY created_at
                """)
                return [dict(row['data']) for row in cursor.fetchall()]
            finally:
                cursor.close()

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    DELETE FROM {table} WHERE id = %s
                """, (record_id,))
                self._maybe_commit()
                return cursor.rowcount > 0
            finally:
                cursor.close()

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT 1 FROM {table} WHERE id = %s LIMIT 1
                """, (record_id,))
                return cursor.fetchone() is not None
            finally:
                cursor.close()

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                if not filters:
                    cursor.execute(f"""
                        SELECT data FROM {table} ORDER BY created_at
                    """)
                else:
                    cursor.execute(f"""
                        SELECT data FROM {table}
                        WHERE data @> %s::jsonb
                        ORDER BY created_at
                    """, (json.dumps(filters, default=str),))

                return [dict(row['data']) for row in cursor.fetchall()]
            finally:
                cursor.close()

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT COUNT(*) as count FROM {table}
                """)
                return cursor.fetchone()['count']
            finally:
                cursor.close()

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"DELETE FROM {table}")
                self._maybe_commit()
            finally:
                cursor.close()

    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected: Dict[str, Any]) -> bool:
        """Conditional UPDATE guarded by JSONB containment of the expected fields"""
        with self._lock:
            self._ensure_table(table)

            with self._write(table) as cursor:
                cursor.execute(f"""
                    UPDATE {table} SET data = %s, updated_at = %s
                    WHERE id = %s AND data @> %s::jsonb
                """, (json.dumps(data, default=str), datetime.now(timezone.utc),
                      record_id, json.dumps(expected, default=str)))
                written = cursor.rowcount == 1
            return written

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # PostgreSQL transactions start automatically
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False
                self._tables.clear()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def storage_from_url(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    memory://               -> InMemoryStorage
    sqlite:///path/to/db    -> SQLiteStorage (sqlite:// for an in-memory database)
    postgresql://...        -> PostgreSQLStorage
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
