"""
Storage Backend Module

Provides the abstract record store and two implementations: in-memory (testing)
and SQLite (persistence). Records are JSON documents keyed by id; monetary
values are stored as integer strings.

``atomic()`` sections are serializable: a backend holds its lock for the whole
section, so read-check-write sequences inside it cannot interleave with other
writers. Any exception inside the section discards every write made in it.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
from pathlib import Path
from contextlib import contextmanager
import json
import re
import sqlite3
import threading

from .errors import StoreUnavailable
from .logging_config import get_logger

logger = get_logger("wallet_ledger.storage")

TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_MISSING = object()


def _matches(record: Dict[str, Any], filters: Dict[str, Any], match_any: bool) -> bool:
    if not filters:
        return True
    hits = (key in record and record[key] == value for key, value in filters.items())
    return any(hits) if match_any else all(hits)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""
    
    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass
    
    @abstractmethod
    def insert_if_absent(self, table: str, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record unless one exists; return whichever record is stored"""
        pass
    
    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass
    
    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass
    
    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass
    
    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any], match_any: bool = False) -> List[Dict[str, Any]]:
        """Find records matching all filters (or any filter if match_any)"""
        pass
    
    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass
    
    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
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
    
    @contextmanager
    def atomic(self):
        """Context manager for serializable atomic sections"""
        with self._lock:
            self.begin_transaction()
            try:
                yield
            except BaseException:
                self.rollback()
                raise
            self.commit()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing
    
    Writes inside an atomic section are recorded in an undo log holding each
    overwritten row, so rollback costs only as much as the section wrote.
    """
    
    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._undo: List[tuple] = []
    
    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})
    
    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # JSON round trip prevents external mutation and normalizes types
        return json.loads(json.dumps(data, default=str))
    
    def _write(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        rows = self._table(table)
        if self._depth > 0:
            # Stored rows are replaced, never mutated in place
            self._undo.append((table, record_id, rows.get(record_id, _MISSING)))
        rows[record_id] = self._copy(data)
    
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._write(table, record_id, data)
    
    def insert_if_absent(self, table: str, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            rows = self._table(table)
            if record_id not in rows:
                self._write(table, record_id, data)
            return self._copy(rows[record_id])
    
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return self._copy(record) if record is not None else None
    
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._table(table).values()]
    
    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)
    
    def find(self, table: str, filters: Dict[str, Any], match_any: bool = False) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                self._copy(record) for record in self._table(table).values()
                if _matches(record, filters, match_any)
            ]
    
    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))
    
    def begin_transaction(self) -> None:
        with self._lock:
            self._depth += 1
    
    def commit(self) -> None:
        with self._lock:
            if self._depth == 0:
                return
            self._depth -= 1
            if self._depth == 0:
                self._undo = []
    
    def rollback(self) -> None:
        """Undo every write made since the outermost section began"""
        with self._lock:
            if self._depth == 0:
                return
            self._depth -= 1
            if self._depth == 0:
                for table, record_id, previous in reversed(self._undo):
                    rows = self._table(table)
                    if previous is _MISSING:
                        rows.pop(record_id, None)
                    else:
                        rows[record_id] = previous
                self._undo = []
    
    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""
    
    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; atomic sections issue BEGIN IMMEDIATE themselves
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()
        
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = FULL")
                self._connection.execute("PRAGMA busy_timeout = 5000")
    
    @contextmanager
    def _guard(self, operation: str):
        """Serialize access and surface driver errors as StoreUnavailable"""
        with self._lock:
            if self._connection is None:
                raise StoreUnavailable("Storage is closed")
            try:
                yield self._connection
            except sqlite3.Error as e:
                logger.error(f"SQLite {operation} failed: {e}")
                raise StoreUnavailable(f"Storage {operation} failed") from e
    
    @staticmethod
    def _quote(table: str) -> str:
        if not TABLE_NAME_PATTERN.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        return f'"{table}"'
    
    def _ensure_table(self, conn: sqlite3.Connection, table: str) -> str:
        """Create the table on first use and return its quoted identifier"""
        name = self._quote(table)
        if table in self._tables:
            return name
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {name} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._tables.add(table)
        return name
    
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._guard("save") as conn:
            name = self._ensure_table(conn, table)
            now = datetime.now(timezone.utc).isoformat()
            conn.execute(f"""
                INSERT INTO {name} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))
    
    def insert_if_absent(self, table: str, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._guard("insert") as conn:
            name = self._ensure_table(conn, table)
            now = datetime.now(timezone.utc).isoformat()
            conn.execute(f"""
                INSERT OR IGNORE INTO {name} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))
            row = conn.execute(f"SELECT data FROM {name} WHERE id = ?", (record_id,)).fetchone()
            return json.loads(row["data"])
    
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._guard("load") as conn:
            name = self._ensure_table(conn, table)
            row = conn.execute(f"SELECT data FROM {name} WHERE id = ?", (record_id,)).fetchone()
            return json.loads(row["data"]) if row else None
    
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._guard("load") as conn:
            name = self._ensure_table(conn, table)
            cursor = conn.execute(f"SELECT data FROM {name} ORDER BY seq")
            return [json.loads(row["data"]) for row in cursor.fetchall()]
    
    def exists(self, table: str, record_id: str) -> bool:
        with self._guard("load") as conn:
            name = self._ensure_table(conn, table)
            cursor = conn.execute(f"SELECT 1 FROM {name} WHERE id = ? LIMIT 1", (record_id,))
            return cursor.fetchone() is not None
    
    def find(self, table: str, filters: Dict[str, Any], match_any: bool = False) -> List[Dict[str, Any]]:
        """Find records using JSON path matching on top-level keys"""
        with self._guard("find") as conn:
            name = self._ensure_table(conn, table)
            if not filters:
                cursor = conn.execute(f"SELECT data FROM {name} ORDER BY seq")
            else:
                conditions = []
                params = []
                for key, value in filters.items():
                    conditions.append("json_extract(data, ?) = ?")
                    params.extend([f"$.{key}", value])
                joiner = " OR " if match_any else " AND "
                cursor = conn.execute(f"""
                    SELECT data FROM {name}
                    WHERE {joiner.join(conditions)}
                    ORDER BY seq
                """, params)
            return [json.loads(row["data"]) for row in cursor.fetchall()]
    
    def count(self, table: str) -> int:
        with self._guard("count") as conn:
            name = self._ensure_table(conn, table)
            return conn.execute(f"SELECT COUNT(*) AS count FROM {name}").fetchone()["count"]
    
    def begin_transaction(self) -> None:
        with self._guard("begin") as conn:
            if self._depth == 0:
                # Take the write lock up front so concurrent processes serialize too
                conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
    
    def commit(self) -> None:
        with self._guard("commit") as conn:
            if self._depth == 0:
                return
            self._depth -= 1
            if self._depth == 0:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error:
                    # A failed COMMIT leaves the transaction open
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    self._tables.clear()
                    raise
    
    def rollback(self) -> None:
        with self._guard("rollback") as conn:
            if self._depth == 0:
                return
            self._depth -= 1
            if self._depth == 0:
                conn.execute("ROLLBACK")
                # Tables created inside the rolled back section no longer exist
                self._tables.clear()
    
    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Create a storage backend from a URL
    
    Supported forms: ``memory://``, ``sqlite:///relative/or/absolute.db``,
    ``sqlite:///:memory:``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
