"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite and PostgreSQL. All monetary values are stored as Decimal strings.

Transactions are re-entrant: a nested atomic() joins the enclosing one and only
the outermost block commits or rolls back. load_for_update() must be called
inside a transaction; it holds the record until the transaction ends.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import DuplicateRecordError, TransactionFailureError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    # Driver exceptions that atomic() reports as TransactionFailureError
    driver_errors: Tuple[type, ...] = ()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises DuplicateRecordError if the id exists"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record and lock it for the rest of the current transaction"""
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
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start (or join) a transaction"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the current transaction if this is the outermost level"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the whole current transaction"""
        pass

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether the calling thread is inside a transaction"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except Exception as exc:
            self.rollback()
            if self.driver_errors and isinstance(exc, self.driver_errors):
                raise TransactionFailureError(f"Transaction rolled back: {exc}") from exc
            raise
        try:
            self.commit()
        except Exception as exc:
            self.rollback()
            if self.driver_errors and isinstance(exc, self.driver_errors):
                raise TransactionFailureError(f"Commit failed: {exc}") from exc
            raise


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class _TransactionState:
    """Re-entrant transaction bookkeeping guarded by a storage-wide RLock"""

    def __init__(self):
        self.lock = threading.RLock()
        self.depth = 0
        self.owner: Optional[int] = None

    @property
    def active_for_caller(self) -> bool:
        return self.depth > 0 and self.owner == threading.get_ident()

    def enter(self) -> bool:
        """Acquire the lock; returns True when this starts the outermost level"""
        self.lock.acquire()
        self.depth += 1
        if self.depth == 1:
            self.owner = threading.get_ident()
            return True
        return False

    def leave(self) -> bool:
        """Release one level; returns True when the outermost level ended"""
        self.depth -= 1
        outermost = self.depth == 0
        if outermost:
            self.owner = None
        self.lock.release()
        return outermost

    def abort(self) -> None:
        """Release every level held by the calling thread"""
        while self.depth > 0:
            self.leave()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    A transaction holds the storage-wide lock, so concurrent transactions are
    fully serialized. Rollback restores a snapshot taken at the outermost begin.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._tx = _TransactionState()
        self._lock = self._tx.lock
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    @staticmethod
    def _copy(data: Any) -> Any:
        # Deep copy through JSON to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateRecordError(table, record_id)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        if not self.in_transaction:
            raise RuntimeError("load_for_update requires an active transaction")
        return self.load(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()
                    if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return self._tx.active_for_caller

    def begin_transaction(self) -> None:
        if self._tx.enter():
            self._snapshot = self._copy(self._data)

    def commit(self) -> None:
        if not self.in_transaction:
            raise TransactionFailureError("No active transaction to commit")
        if self._tx.leave():
            self._snapshot = None

    def rollback(self) -> None:
        if not self.in_transaction:
            return
        if self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None
        self._tx.abort()


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    Transactions use BEGIN IMMEDIATE, which takes the database write lock up
    front. Every connection (and every process) opening the same file is
    serialized at that point, so a read-modify-write inside atomic() never sees
    stale data.
    """

    driver_errors = (sqlite3.Error,)

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout: float = 30.0):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are issued explicitly
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=busy_timeout,
        )
        self._connection.row_factory = sqlite3.Row
        self._tx = _TransactionState()
        self._lock = self._tx.lock
        self._tables: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

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
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError:
                raise DuplicateRecordError(table, record_id)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        # The IMMEDIATE transaction already holds the database write lock
        if not self.in_transaction:
            raise RuntimeError("load_for_update requires an active transaction")
        return self.load(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at, rowid"
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"DELETE FROM {table} WHERE id = ?", (record_id,)
            )
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return self.load_all(table)

            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])

            cursor = self._connection.execute(f"""
                SELECT data FROM {table}
                WHERE {' AND '.join(conditions)}
                ORDER BY created_at, rowid
            """, params)
            # json_extract compares loosely for mixed types; re-check in Python
            records = [json.loads(row['data']) for row in cursor.fetchall()]
            return [record for record in records if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    @property
    def in_transaction(self) -> bool:
        return self._tx.active_for_caller

    def begin_transaction(self) -> None:
        if self._tx.enter():
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except Exception:
                self._tx.abort()
                raise

    def commit(self) -> None:
        if not self.in_transaction:
            raise TransactionFailureError("No active transaction to commit")
        if self._tx.depth == 1:
            self._connection.execute("COMMIT")
        self._tx.leave()

    def rollback(self) -> None:
        if not self.in_transaction:
            return
        try:
            if self._connection.in_transaction:
                self._connection.execute("ROLLBACK")
        finally:
            # Tables created inside the rolled-back transaction are gone
            self._tables.clear()
            self._tx.abort()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with ACID transaction support

    load_for_update() issues SELECT ... FOR UPDATE, so the row stays locked
    against every other connection until the transaction commits.
    """

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.driver_errors = (psycopg2.Error,)
        self.connection_string = connection_string
        self._connection = None
        self._tx = _TransactionState()
        self._lock = self._tx.lock
        self._tables: set = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    def _finish(self) -> None:
        """Commit immediately when not inside an explicit transaction"""
        if not self._tx.depth:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data JSONB NOT NULL,
                        created_at TIMESTAMPTZ DEFAULT NOW(),
                        updated_at TIMESTAMPTZ DEFAULT NOW()
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
                self._finish()
                self._tables.add(table)
            finally:
                cursor.close()

    def _write(self, sql: str, params: tuple) -> int:
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql, params)
            self._finish()
            return cursor.rowcount
        finally:
            cursor.close()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            self._write(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            try:
                self._write(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                """, (record_id, json.dumps(data, default=str), now, now))
            except self.psycopg2.IntegrityError:
                if not self._tx.depth:
                    self._connection.rollback()
                raise DuplicateRecordError(table, record_id)

    def _select(self, sql: str, params: tuple) -> List[Dict[str, Any]]:
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql, params)
            rows = [dict(row['data']) for row in cursor.fetchall()]
            self._finish()
            return rows
        finally:
            cursor.close()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            rows = self._select(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            return rows[0] if rows else None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        if not self.in_transaction:
            raise RuntimeError("load_for_update requires an active transaction")
        with self._lock:
            self._ensure_table(table)
            rows = self._select(
                f"SELECT data FROM {table} WHERE id = %s FOR UPDATE", (record_id,)
            )
            return rows[0] if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return self._select(f"SELECT data FROM {table} ORDER BY created_at", ())

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return self._write(f"DELETE FROM {table} WHERE id = %s", (record_id,)) > 0

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return self.load_all(table)
            return self._select(f"""
                SELECT data FROM {table}
                WHERE data @> %s::jsonb
                ORDER BY created_at
            """, (json.dumps(filters, default=str),))

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"SELECT COUNT(*) AS count FROM {table}")
                result = cursor.fetchone()['count']
                self._finish()
                return result
            finally:
                cursor.close()

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._write(f"DELETE FROM {table}", ())

    @property
    def in_transaction(self) -> bool:
        return self._tx.active_for_caller

    def begin_transaction(self) -> None:
        # psycopg2 opens the transaction implicitly on the first statement
        self._tx.enter()

    def commit(self) -> None:
        if not self.in_transaction:
            raise TransactionFailureError("No active transaction to commit")
        if self._tx.depth == 1:
            self._connection.commit()
        self._tx.leave()

    def rollback(self) -> None:
        if not self.in_transaction:
            return
        try:
            self._connection.rollback()
        finally:
            self._tables.clear()
            self._tx.abort()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                finally:
                    self._connection = None


def create_storage(database_url: str, busy_timeout: float = 30.0) -> StorageInterface:
    """
    Build a storage backend from a database URL

    Supported forms: ``memory://``, ``sqlite:///path/to.db``, ``sqlite://``
    (in-memory SQLite), ``postgresql://...`` / ``postgres://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", busy_timeout=busy_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
