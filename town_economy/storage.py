"""
Storage Backend Module

Transactional record store used by every component. Records are JSON
documents keyed by id; money is stored as Decimal strings.

Three backends share one contract:

* ``InMemoryStorage``  per-row locks plus an undo journal (tests, demos)
* ``SQLiteStorage``    single connection, writers serialized per transaction
* ``PostgreSQLStorage`` pooled psycopg2 connections with ``SELECT ... FOR UPDATE``

Inside ``atomic()`` every write commits or rolls back together. Rows that a
workflow reads-then-writes must be taken with ``lock_rows`` first; locks are
held until the outermost ``atomic()`` block exits. Lock order across tables:
workflow rows (transfers, loans, parcels, requests) before accounts before
treasuries. Within one ``lock_rows`` call ids are locked in ascending order.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import dataclasses
import json
import sqlite3
import threading
import typing
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .logging_config import get_logger


logger = get_logger("town_economy.storage")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_storable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v) for v in value]
    return value


def from_storable(value: Any, hint: Any) -> Any:
    if value is None:
        return None
    if typing.get_origin(hint) is Union:
        candidates = [arg for arg in typing.get_args(hint) if arg is not type(None)]
        hint = candidates[0] if len(candidates) == 1 else Any
    if hint is Decimal:
        return Decimal(str(value))
    if hint is datetime and isinstance(value, str):
        return datetime.fromisoformat(value)
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary"""
        return {key: to_storable(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create instance from a stored dictionary, restoring typed fields"""
        hints = typing.get_type_hints(cls)
        field_names = {f.name for f in dataclasses.fields(cls)}
        kwargs = {
            key: from_storable(value, hints.get(key, Any))
            for key, value in data.items()
            if key in field_names
        }
        return cls(**kwargs)

    def touch(self) -> None:
        self.updated_at = _utcnow()


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if record.get(key) != to_storable(value):
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, or None"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record, returning whether it existed"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal every filter value"""
        pass

    @abstractmethod
    def lock_rows(self, table: str, record_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """
        Lock rows for the rest of the current transaction and return their
        current contents. Missing ids are absent from the result.
        """
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether the calling thread has an open transaction"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release connections"""
        pass

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def count(self, table: str) -> int:
        return len(self.load_all(table))

    def find_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        found = self.find(table, filters)
        return found[0] if found else None

    @contextmanager
    def atomic(self):
        """
        Run a block as one transaction. Nested blocks join the outer
        transaction; only the outermost block commits.
        """
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


class _TransactionState:
    """Per-thread bookkeeping for an open transaction"""

    def __init__(self):
        self.depth = 0
        self.journal: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []
        self.held: Set[Tuple[str, str]] = set()
        self.connection = None


class InMemoryStorage(StorageInterface):
    """In-memory storage with real rollback and row locks"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        # (table, id) -> [lock, holders and waiters]; dropped when the count reaches zero
        self._row_locks: Dict[Tuple[str, str], List[Any]] = {}
        self._local = threading.local()

    def _state(self) -> Optional[_TransactionState]:
        return getattr(self._local, "txn", None)

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        return json.loads(json.dumps(data, default=str))

    def _journal(self, table: str, record_id: str) -> None:
        state = self._state()
        if state is not None:
            previous = self._table(table).get(record_id)
            state.journal.append((table, record_id, self._copy(previous) if previous is not None else None))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._journal(table, record_id)
            self._table(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return self._copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            if record_id not in self._table(table):
                return False
            self._journal(table, record_id)
            del self._table(table)[record_id]
            return True

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                self._copy(record)
                for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def lock_rows(self, table: str, record_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        state = self._state()
        if state is None:
            raise RuntimeError("lock_rows requires an open transaction")

        ids = sorted(set(record_ids))
        for record_id in ids:
            key = (table, record_id)
            if key in state.held:
                continue
            with self._lock:
                entry = self._row_locks.setdefault(key, [threading.Lock(), 0])
                entry[1] += 1
            entry[0].acquire()
            state.held.add(key)

        with self._lock:
            rows = self._table(table)
            return {
                record_id: self._copy(rows[record_id])
                for record_id in ids
                if record_id in rows
            }

    @property
    def in_transaction(self) -> bool:
        return self._state() is not None

    def begin_transaction(self) -> None:
        state = self._state()
        if state is None:
            state = _TransactionState()
            self._local.txn = state
        state.depth += 1

    def _finish(self, state: _TransactionState) -> None:
        self._local.txn = None
        with self._lock:
            for key in state.held:
                entry = self._row_locks[key]
                entry[0].release()
                entry[1] -= 1
                if entry[1] == 0:
                    del self._row_locks[key]
        state.held.clear()

    def commit(self) -> None:
        state = self._state()
        if state is None:
            return
        state.depth -= 1
        if state.depth == 0:
            self._finish(state)

    def rollback(self) -> None:
        state = self._state()
        if state is None:
            return
        state.depth -= 1
        if state.depth > 0:
            return
        with self._lock:
            for table, record_id, previous in reversed(state.journal):
                if previous is None:
                    self._table(table).pop(record_id, None)
                else:
                    self._table(table)[record_id] = previous
        self._finish(state)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage for single-node deployments.

    One connection is shared; a transaction holds the connection lock from
    BEGIN IMMEDIATE until COMMIT/ROLLBACK, which serializes writers and makes
    every row of the database effectively locked for that transaction.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are issued explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._local = threading.local()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
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

    def _rows(self, table: str, sql: str, params: Tuple = ()) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(sql, params)
            return [json.loads(row["data"]) for row in cursor.fetchall()]

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = _utcnow().isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        rows = self._rows(table, f"SELECT data FROM {table} WHERE id = ?", (record_id,))
        return rows[0] if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self._rows(table, f"SELECT data FROM {table} ORDER BY created_at, id")

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()["count"]

    def lock_rows(self, table: str, record_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        if not self.in_transaction:
            raise RuntimeError("lock_rows requires an open transaction")
        # The transaction already owns the write lock on the whole database
        result = {}
        for record_id in sorted(set(record_ids)):
            row = self.load(table, record_id)
            if row is not None:
                result[record_id] = row
        return result

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "depth", 0) > 0

    def begin_transaction(self) -> None:
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            self._lock.acquire()
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except Exception:
                self._lock.release()
                raise
        self._local.depth = depth + 1

    def commit(self) -> None:
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            return
        self._local.depth = depth - 1
        if depth == 1:
            try:
                self._connection.execute("COMMIT")
            finally:
                self._lock.release()

    def rollback(self) -> None:
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            return
        self._local.depth = depth - 1
        if depth == 1:
            try:
                self._connection.execute("ROLLBACK")
            finally:
                self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backed by a psycopg2 connection pool.

    Each transaction checks out one pooled connection for its whole duration
    (connection-per-worker). Statements outside a transaction borrow a
    connection and commit immediately.
    """

    def __init__(self, connection_string: str, min_connections: int = 1, max_connections: int = 10):
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            min_connections, max_connections, connection_string,
            cursor_factory=self.extras.RealDictCursor
        )
        self._known_tables: Set[str] = set()
        self._tables_lock = threading.Lock()
        self._local = threading.local()

    def _state(self) -> Optional[_TransactionState]:
        return getattr(self._local, "txn", None)

    def _ensure_table(self, table: str) -> None:
        with self._tables_lock:
            if table in self._known_tables:
                return
            connection = self._pool.getconn()
            try:
                with connection.cursor() as cursor:
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
                connection.commit()
            finally:
                self._pool.putconn(connection)
            self._known_tables.add(table)

    @contextmanager
    def _cursor(self, table: str):
        self._ensure_table(table)
        state = self._state()
        if state is not None:
            with state.connection.cursor() as cursor:
                yield cursor
            return

        connection = self._pool.getconn()
        try:
            with connection.cursor() as cursor:
                yield cursor
            connection.commit()
        except Exception:
            connection.rollback()
            raise
        finally:
            self._pool.putconn(connection)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = _utcnow()
        with self._cursor(table) as cursor:
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._cursor(table) as cursor:
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            return dict(row["data"]) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._cursor(table) as cursor:
            cursor.execute(f"SELECT data FROM {table} ORDER BY created_at, id")
            return [dict(row["data"]) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._cursor(table) as cursor:
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            return cursor.rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            stored = to_storable(value)
            if stored is None:
                conditions.append("data ->> %s IS NULL")
                params.append(key)
            else:
                conditions.append("data ->> %s = %s")
                params.extend([key, stored if isinstance(stored, str) else json.dumps(stored)])

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._cursor(table) as cursor:
            cursor.execute(f"""
                SELECT data FROM {table}
                {where_clause}
                ORDER BY created_at, id
            """, params)
            return [dict(row["data"]) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        with self._cursor(table) as cursor:
            cursor.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()["count"]

    def lock_rows(self, table: str, record_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        if self._state() is None:
            raise RuntimeError("lock_rows requires an open transaction")
        ids = sorted(set(record_ids))
        if not ids:
            return {}
        with self._cursor(table) as cursor:
            cursor.execute(f"""
                SELECT id, data FROM {table}
                WHERE id = ANY(%s)
                ORDER BY id
                FOR UPDATE
            """, (ids,))
            return {row["id"]: dict(row["data"]) for row in cursor.fetchall()}

    @property
    def in_transaction(self) -> bool:
        return self._state() is not None

    def begin_transaction(self) -> None:
        state = self._state()
        if state is None:
            state = _TransactionState()
            state.connection = self._pool.getconn()
            state.connection.autocommit = False
            self._local.txn = state
        state.depth += 1

    def _release(self, state: _TransactionState) -> None:
        self._local.txn = None
        self._pool.putconn(state.connection)

    def commit(self) -> None:
        state = self._state()
        if state is None:
            return
        state.depth -= 1
        if state.depth == 0:
            try:
                state.connection.commit()
            finally:
                self._release(state)

    def rollback(self) -> None:
        state = self._state()
        if state is None:
            return
        state.depth -= 1
        if state.depth == 0:
            try:
                state.connection.rollback()
            finally:
                self._release(state)

    def close(self) -> None:
        self._pool.closeall()


def create_storage(database_url: str, pool_min: int = 1, pool_size: int = 10) -> StorageInterface:
    """
    Build a storage handle from a database URL.

    ``memory://`` gives an in-memory store, ``sqlite:///path`` a SQLite file
    (``sqlite://`` alone is an in-memory SQLite database) and
    ``postgresql://...`` a pooled PostgreSQL store.
    """
    if database_url.startswith("memory://"):
        storage: StorageInterface = InMemoryStorage()
    elif database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ":memory:"
        storage = SQLiteStorage(path or ":memory:")
    elif database_url.startswith(("postgresql://", "postgres://")):
        storage = PostgreSQLStorage(database_url, min_connections=pool_min, max_connections=pool_size)
    else:
        raise ValueError(f"Unsupported database URL: {database_url}")

    logger.info("Storage initialized", extra={"extra": {"backend": type(storage).__name__}})
    return storage
