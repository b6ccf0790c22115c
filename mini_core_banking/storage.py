"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). All monetary values stored as Decimal
strings.

Every write happens inside a unit of work (``atomic()``). Units of work nest
through savepoints and only the outermost one commits. Updates carry the
version the caller read; a version mismatch is a ConflictError. Inserts may
declare unique fields; a collision is a DuplicateKeyError. ``lock_rows``
takes per-row locks in a single global order (table, id) and, inside a unit
of work, holds them until the outermost unit ends.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
import typing
from dataclasses import dataclass, field, fields
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConflictError, DuplicateKeyError, NotFoundError

R = TypeVar("R", bound="StorageRecord")


def _encode(value: Any) -> Any:
    """Convert a record value to its JSON-safe storage form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any, hint: Any) -> Any:
    """Convert a stored value back using the declared field type"""
    if value is None:
        return None

    if typing.get_origin(hint) is Union:
        candidates = [arg for arg in typing.get_args(hint) if arg is not type(None)]
        hint = candidates[0] if len(candidates) == 1 else Any

    if hint is Decimal:
        return Decimal(value)
    if hint is datetime:
        return datetime.fromisoformat(value)
    if hint is date:
        return date.fromisoformat(value)
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint[value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls: Type[R], data: Dict[str, Any]) -> R:
        """Create instance from dictionary"""
        hints = typing.get_type_hints(cls)
        values = {
            f.name: _decode(data[f.name], hints[f.name])
            for f in fields(cls)
            if f.name in data
        }
        return cls(**values)


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


@dataclass
class _Write:
    """A write staged in a unit of work"""
    kind: str  # insert or update
    table: str
    record_id: str
    data: Dict[str, Any]
    expected_version: Optional[int] = None
    unique: Dict[str, str] = field(default_factory=dict)


class _UnitOfWork:
    """Per-thread state of the outermost atomic block"""

    def __init__(self):
        self.writes: List[_Write] = []
        self.locks: List[Any] = []
        self.savepoints = 0

    def release_locks(self) -> None:
        for lock in reversed(self.locks):
            lock.release()
        self.locks.clear()


class RowLockRegistry:
    """Lazily created re-entrant lock per (table, record id)"""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, key: Tuple[str, str]) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._local = threading.local()
        self._row_locks = RowLockRegistry()

    def _unit(self) -> Optional[_UnitOfWork]:
        return getattr(self._local, "unit", None)

    @property
    def in_unit_of_work(self) -> bool:
        return self._unit() is not None

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_fields: Sequence[str] = ()) -> int:
        """Insert a new record at version 1; returns the version"""
        pass

    @abstractmethod
    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> int:
        """Replace a record if its version still matches; returns the new version"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple key equality)"""
        results = []
        for record in self.load_all(table):
            if all(key in record and record[key] == value for key, value in filters.items()):
                results.append(record)
        return results

    def find_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """First record matching filters, if any"""
        matches = self.find(table, filters)
        return matches[0] if matches else None

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self.load_all(table))

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    # Unit of work hooks

    def begin_transaction(self) -> None:
        """Start the outermost unit of work"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the outermost unit of work"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard the outermost unit of work"""
        pass

    def end_transaction(self) -> None:
        """Called after commit or rollback of the outermost unit of work"""
        pass

    @abstractmethod
    def savepoint(self) -> Any:
        """Mark a nested unit of work; returns a token"""
        pass

    @abstractmethod
    def rollback_to(self, token: Any) -> None:
        """Undo everything staged since the savepoint"""
        pass

    def release_savepoint(self, token: Any) -> None:
        """Keep everything staged since the savepoint"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        unit = self._unit()
        if unit is not None:
            token = self.savepoint()
            try:
                yield
            except Exception:
                self.rollback_to(token)
                raise
            else:
                self.release_savepoint(token)
            return

        unit = _UnitOfWork()
        self._local.unit = unit
        try:
            self.begin_transaction()
        except Exception:
            self._local.unit = None
            raise

        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise
        finally:
            self._local.unit = None
            self.end_transaction()
            unit.release_locks()

    @contextmanager
    def lock_rows(self, table: str, record_ids: Iterable[str]):
        """
        Lock rows in ascending (table, id) order.

        Inside a unit of work the locks are held until the outermost unit
        commits or rolls back; outside one they are released on exit.
        """
        keys = sorted({(table, record_id) for record_id in record_ids})
        acquired = []
        for key in keys:
            lock = self._row_locks.get(key)
            lock.acquire()
            acquired.append(lock)

        unit = self._unit()
        try:
            yield
        finally:
            if unit is not None:
                unit.locks.extend(acquired)
            else:
                for lock in reversed(acquired):
                    lock.release()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[Tuple[str, str], Dict[str, str]] = {}
        self._lock = threading.RLock()

    def _committed(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._data.get(table, {}).get(record_id)

    def _current(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Record as seen by this thread: staged writes first, then committed"""
        unit = self._unit()
        if unit is not None:
            for write in reversed(unit.writes):
                if write.table == table and write.record_id == record_id:
                    return write.data
        return self._committed(table, record_id)

    def _unique_taken(self, table: str, field_name: str, value: str) -> bool:
        with self._lock:
            if value in self._unique.get((table, field_name), {}):
                return True
        unit = self._unit()
        if unit is not None:
            for write in unit.writes:
                if write.table == table and write.unique.get(field_name) == value:
                    return True
        return False

    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_fields: Sequence[str] = ()) -> int:
        """Stage an insert after checking id and unique fields"""
        record = _copy(data)
        record["version"] = 1
        unique = {name: str(record[name]) for name in unique_fields}

        with self.atomic():
            if self._current(table, record_id) is not None:
                raise DuplicateKeyError(table, "id", record_id)
            for name, value in unique.items():
                if self._unique_taken(table, name, value):
                    raise DuplicateKeyError(table, name, value)
            self._unit().writes.append(_Write("insert", table, record_id, record, unique=unique))
        return 1

    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> int:
        """Stage an update if the version seen by this thread still matches"""
        with self.atomic():
            current = self._current(table, record_id)
            if current is None:
                raise NotFoundError(table, record_id)
            if current.get("version") != expected_version:
                raise ConflictError(table, record_id, expected_version, current.get("version"))

            record = _copy(data)
            record["version"] = expected_version + 1
            self._unit().writes.append(
                _Write("update", table, record_id, record, expected_version=expected_version)
            )
        return expected_version + 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._current(table, record_id)
        return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            rows = dict(self._data.get(table, {}))
        unit = self._unit()
        if unit is not None:
            for write in unit.writes:
                if write.table == table:
                    rows[write.record_id] = write.data
        return [_copy(record) for record in rows.values()]

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}
            for key in [key for key in self._unique if key[0] == table]:
                del self._unique[key]

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def commit(self) -> None:
        """Validate every staged write against committed state, then apply all"""
        unit = self._unit()
        with self._lock:
            pending: Dict[Tuple[str, str], Dict[str, Any]] = {}
            pending_unique: Dict[Tuple[str, str], Dict[str, str]] = {}

            for write in unit.writes:
                key = (write.table, write.record_id)
                existing = pending[key] if key in pending else self._data.get(write.table, {}).get(write.record_id)

                if write.kind == "insert":
                    if existing is not None:
                        raise DuplicateKeyError(write.table, "id", write.record_id)
                    for name, value in write.unique.items():
                        index_key = (write.table, name)
                        if value in self._unique.get(index_key, {}) or value in pending_unique.get(index_key, {}):
                            raise DuplicateKeyError(write.table, name, value)
                        pending_unique.setdefault(index_key, {})[value] = write.record_id
                else:
                    actual = existing.get("version") if existing is not None else None
                    if actual != write.expected_version:
                        raise ConflictError(write.table, write.record_id, write.expected_version, actual)

                pending[key] = write.data

            for (table, record_id), record in pending.items():
                self._data.setdefault(table, {})[record_id] = record
            for index_key, index in pending_unique.items():
                self._unique.setdefault(index_key, {}).update(index)

        unit.writes.clear()

    def rollback(self) -> None:
        unit = self._unit()
        if unit is not None:
            unit.writes.clear()

    def savepoint(self) -> int:
        return len(self._unit().writes)

    def rollback_to(self, token: int) -> None:
        del self._unit().writes[token:]


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    One connection is shared by all threads; a unit of work holds the
    connection lock from BEGIN to COMMIT, so units of work are serialized.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode: transactions are opened explicitly by atomic()
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        with self._lock:
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS unique_keys (
                    table_name TEXT NOT NULL,
                    field TEXT NOT NULL,
                    value TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    PRIMARY KEY (table_name, field, value)
                )
            """)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_fields: Sequence[str] = ()) -> int:
        """Insert a record and its unique keys"""
        record = _copy(data)
        record["version"] = 1
        now = datetime.now(timezone.utc).isoformat()

        with self.atomic():
            self._ensure_table(table)
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (?, ?, 1, ?, ?)
                """, (record_id, json.dumps(record, default=str), now, now))
            except sqlite3.IntegrityError:
                raise DuplicateKeyError(table, "id", record_id) from None

            for name in unique_fields:
                value = str(record[name])
                try:
                    self._connection.execute("""
                        INSERT INTO unique_keys (table_name, field, value, record_id)
                        VALUES (?, ?, ?, ?)
                    """, (table, name, value, record_id))
                except sqlite3.IntegrityError:
                    raise DuplicateKeyError(table, name, value) from None
        return 1

    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> int:
        """Compare-and-swap update on the version column"""
        record = _copy(data)
        record["version"] = expected_version + 1
        now = datetime.now(timezone.utc).isoformat()

        with self.atomic():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, version = ?, updated_at = ?
                WHERE id = ? AND version = ?
            """, (json.dumps(record, default=str), expected_version + 1, now, record_id, expected_version))

            if cursor.rowcount == 0:
                row = self._connection.execute(
                    f"SELECT version FROM {table} WHERE id = ?", (record_id,)
                ).fetchone()
                if row is None:
                    raise NotFoundError(table, record_id)
                raise ConflictError(table, record_id, expected_version, row["version"])
        return expected_version + 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row["data"])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY rowid")
            return [json.loads(row["data"]) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
            return row["count"]

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self.atomic():
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._connection.execute("DELETE FROM unique_keys WHERE table_name = ?", (table,))

    def begin_transaction(self) -> None:
        """Take the connection lock and open a write transaction"""
        self._lock.acquire()
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except Exception:
            self._lock.release()
            raise

    def commit(self) -> None:
        self._connection.execute("COMMIT")

    def rollback(self) -> None:
        if self._connection.in_transaction:
            self._connection.execute("ROLLBACK")

    def end_transaction(self) -> None:
        self._lock.release()

    def savepoint(self) -> str:
        unit = self._unit()
        unit.savepoints += 1
        name = f"sp_{unit.savepoints}"
        self._connection.execute(f"SAVEPOINT {name}")
        return name

    def rollback_to(self, token: str) -> None:
        self._connection.execute(f"ROLLBACK TO SAVEPOINT {token}")
        self._connection.execute(f"RELEASE SAVEPOINT {token}")

    def release_savepoint(self, token: str) -> None:
        self._connection.execute(f"RELEASE SAVEPOINT {token}")

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class StorageManager:
    """Record-level convenience wrapper around a storage backend"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def insert_record(self, table: str, record: StorageRecord,
                      unique_fields: Sequence[str] = ()) -> None:
        """Insert a new record; its version becomes 1"""
        record.version = self.storage.insert(table, record.id, record.to_dict(), unique_fields)

    def update_record(self, table: str, record: StorageRecord) -> None:
        """Write back a record read at record.version; bumps the version on success"""
        record.version = self.storage.update(table, record.id, record.to_dict(), record.version)

    def load_record(self, record_type: Type[R], table: str, record_id: str) -> Optional[R]:
        """Load and convert to a StorageRecord"""
        data = self.storage.load(table, record_id)
        if data:
            return record_type.from_dict(data)
        return None

    def find_records(self, record_type: Type[R], table: str, filters: Dict[str, Any]) -> List[R]:
        """Find records and convert to StorageRecord objects"""
        return [record_type.from_dict(data) for data in self.storage.find(table, filters)]
