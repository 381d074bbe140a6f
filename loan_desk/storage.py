"""
Storage Backend Module

Provides the document storage interface and implementations for in-memory
(testing) and SQLite (persistence). Records are JSON documents keyed by id;
monetary values are stored as Decimal strings and timestamps as ISO-8601 UTC
strings with fixed precision, so string order equals time order.

Filters are dictionaries of field -> value. A plain value means equality; a
dict value holds operators: ``$in``, ``$ne``, ``$gte``, ``$lte``.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import copy
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager

from .errors import ConflictError, TransientStoreError


def format_timestamp(value: datetime) -> str:
    """Render a datetime as a fixed-width UTC ISO string"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse a stored timestamp back to an aware datetime"""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = format_timestamp(value)
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = parse_timestamp(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = parse_timestamp(data['updated_at'])

        return cls(**data)


@dataclass(frozen=True)
class UniqueIndex:
    """A uniqueness constraint on one document field.

    When ``min_value`` is set the constraint is partial: only numeric values
    greater than or equal to it take part.
    """
    field: str
    min_value: Optional[int] = None

    def covers(self, value: Any) -> bool:
        if value is None:
            return False
        if self.min_value is None:
            return True
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return value >= self.min_value

    @property
    def name(self) -> str:
        return f"ux_{self.field}"


def _compare(left: Any, op: str, right: Any) -> bool:
    try:
        if op == "$gte":
            return left >= right
        if op == "$lte":
            return left <= right
    except TypeError:
        return False
    raise ValueError(f"Unsupported filter operator: {op}")


def matches_filters(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """Check a record against a filter document"""
    for key, condition in filters.items():
        present = key in record
        value = record.get(key)

        if isinstance(condition, dict):
            for op, operand in condition.items():
                if op == "$in":
                    if not present or value not in operand:
                        return False
                elif op == "$ne":
                    if present and value == operand:
                        return False
                elif op in ("$gte", "$lte"):
                    if not present or value is None or not _compare(value, op, operand):
                        return False
                else:
                    raise ValueError(f"Unsupported filter operator: {op}")
        else:
            if not present or value != condition:
                return False
    return True


def _to_document(data: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize to plain JSON types and detach from the caller"""
    return json.loads(json.dumps(data, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record; raises ConflictError on unique violations"""
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
    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> bool:
        """Merge changes into a record; returns False if it does not exist"""
        pass

    @abstractmethod
    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  changes: Dict[str, Any]) -> bool:
        """Merge changes only while the record still matches expected; returns False otherwise"""
        pass

    @abstractmethod
    def delete_many(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete every record matching filters; returns the count removed"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def create_collection(self, table: str) -> None:
        """Create a collection if it does not exist"""
        pass

    @abstractmethod
    def create_unique_index(self, table: str, index: UniqueIndex) -> None:
        """Declare a uniqueness constraint; raises ConflictError if existing data violates it"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def find_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Return the first record matching filters, or None"""
        results = self.find(table, filters)
        return results[0] if results else None

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing.

    Transactions snapshot the whole data set and restore it on rollback.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, List[UniqueIndex]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _check_unique(self, table: str, record_id: str, data: Dict[str, Any],
                      indexes: Optional[List[UniqueIndex]] = None) -> None:
        for index in indexes or self._unique.get(table, []):
            value = data.get(index.field)
            if not index.covers(value):
                continue
            for other_id, other in self._data[table].items():
                if other_id != record_id and other.get(index.field) == value:
                    raise ConflictError(
                        f"Duplicate value {value!r} for unique field '{index.field}' in {table}"
                    )

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            document = _to_document(data)
            self._check_unique(table, record_id, document)
            self._data[table][record_id] = document

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return copy.deepcopy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [copy.deepcopy(record) for record in self._data[table].values()]

    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> bool:
        """Merge changes into an existing record"""
        return self.update_if(table, record_id, {}, changes)

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  changes: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None or not matches_filters(current, expected):
                return False
            merged = dict(current)
            merged.update(_to_document(changes))
            self._check_unique(table, record_id, merged)
            self._data[table][record_id] = merged
            return True

    def delete_many(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete all matching records from memory"""
        with self._lock:
            self._ensure_table(table)
            doomed = [
                record_id for record_id, record in self._data[table].items()
                if matches_filters(record, filters)
            ]
            for record_id in doomed:
                del self._data[table][record_id]
            return len(doomed)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                copy.deepcopy(record) for record in self._data[table].values()
                if matches_filters(record, filters)
            ]

    def create_collection(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)

    def create_unique_index(self, table: str, index: UniqueIndex) -> None:
        with self._lock:
            self._ensure_table(table)
            declared = self._unique.setdefault(table, [])
            if index in declared:
                return
            # Reject if existing data already violates the constraint
            seen = set()
            for record in self._data[table].values():
                value = record.get(index.field)
                if not index.covers(value):
                    continue
                if value in seen:
                    raise ConflictError(
                        f"Existing data violates unique field '{index.field}' in {table}"
                    )
                seen.add(value)
            declared.append(index)

    def begin_transaction(self) -> None:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = copy.deepcopy(self._data)

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence.

    Unique indexes are SQLite expression indexes over ``json_extract`` so the
    database itself rejects duplicates, including writes from other processes.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Set isolation_level to 'DEFERRED' to enable manual transaction control
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @contextmanager
    def _translate_errors(self):
        """Map sqlite3 errors onto the engine's error kinds"""
        try:
            yield
        except sqlite3.IntegrityError as e:
            if not self._in_transaction:
                self._connection.rollback()
            raise ConflictError(f"Unique constraint violated: {e}") from e
        except sqlite3.Error as e:
            raise TransientStoreError(f"SQLite error: {e}") from e

    def _maybe_commit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
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
            self._maybe_commit()
            self._tables.add(table)

    def _write(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = format_timestamp(datetime.now(timezone.utc))
        data_json = json.dumps(data, default=str)
        # ON CONFLICT(id) rather than INSERT OR REPLACE: REPLACE would silently
        # delete rows that collide on the unique data indexes.
        self._connection.execute(f"""
            INSERT INTO {table} (id, data, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
        """, (record_id, data_json, now, now))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            self._write(table, record_id, data)
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._translate_errors():
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
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> bool:
        """Merge changes into a record"""
        return self.update_if(table, record_id, {}, changes)

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  changes: Dict[str, Any]) -> bool:
        """Read, check and write under the connection lock"""
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row is None:
                return False
            merged = json.loads(row['data'])
            if not matches_filters(merged, expected):
                return False
            merged.update(_to_document(changes))
            self._write(table, record_id, merged)
            self._maybe_commit()
            return True

    def _matching_rows(self, table: str, filters: Dict[str, Any]) -> List[Tuple[str, Dict[str, Any]]]:
        cursor = self._connection.execute(f"""
            SELECT id, data FROM {table} ORDER BY created_at
        """)
        rows = []
        for row in cursor.fetchall():
            record = json.loads(row['data'])
            if matches_filters(record, filters):
                rows.append((row['id'], record))
        return rows

    def delete_many(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete all matching records"""
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            ids = [record_id for record_id, _ in self._matching_rows(table, filters)]
            self._connection.executemany(
                f"DELETE FROM {table} WHERE id = ?", [(record_id,) for record_id in ids]
            )
            self._maybe_commit()
            return len(ids)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (JSON documents filtered in Python)"""
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            return [record for _, record in self._matching_rows(table, filters)]

    def create_collection(self, table: str) -> None:
        with self._lock, self._translate_errors():
            self._ensure_table(table)

    def create_unique_index(self, table: str, index: UniqueIndex) -> None:
        expression = f"json_extract(data, '$.{index.field}')"
        where = ""
        if index.min_value is not None:
            where = f"WHERE {expression} >= {int(index.min_value)}"
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            self._connection.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS {table}_{index.name}
                ON {table}({expression}) {where}
            """)
            self._maybe_commit()

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # SQLite with isolation_level='DEFERRED' starts transactions implicitly
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

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
