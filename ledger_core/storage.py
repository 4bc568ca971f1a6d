"""
Ledger Storage Module

Document store for ledger records. Records are plain JSON-able dicts keyed by
id within a named table; amounts are integer cents and dates ISO strings.

Every mutating ledger operation runs inside ``storage.atomic()``. The backend
lock is held for the whole batch, so a read-check-write sequence cannot
interleave with another batch, and any exception rolls back every write made
in the batch. Batches nest; only the outermost one commits or rolls back.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from datetime import datetime
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .config import LedgerConfig, get_config

Document = Dict[str, Any]

_TABLE_NAME = re.compile(r"^[a-z_][a-z0-9_]*$")


@dataclass
class StorageRecord:
    """Common identity and timestamps of every ledger record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Document:
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        return result


def _clone(document: Any) -> Any:
    """Detached JSON copy; callers never share state with the store"""
    return json.loads(json.dumps(document, default=str))


def _matches(document: Document, filters: Document) -> bool:
    return all(key in document and document[key] == value for key, value in filters.items())


def _check_table(table: str) -> str:
    if not _TABLE_NAME.match(table):
        raise ValueError(f"Invalid table name: {table!r}")
    return table


class StorageInterface(ABC):
    """Store used by every ledger component"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Document) -> None:
        """Insert or replace a record; replacing keeps its insertion position"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Document]:
        """All records of a table in insertion order"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Document) -> List[Document]:
        """Records whose fields equal every filter value, in insertion order"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
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
        """Run the enclosed writes as one all-or-nothing batch"""
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


class InMemoryStorage(StorageInterface):
    """Process-local store for tests and single-process tools"""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[str] = None

    def _table(self, table: str) -> Dict[str, Document]:
        return self._tables.setdefault(_check_table(table), {})

    def save(self, table: str, record_id: str, data: Document) -> None:
        with self._lock:
            self._table(table)[record_id] = _clone(data)

    def load(self, table: str, record_id: str) -> Optional[Document]:
        with self._lock:
            document = self._table(table).get(record_id)
            return _clone(document) if document is not None else None

    def load_all(self, table: str) -> List[Document]:
        with self._lock:
            return [_clone(document) for document in self._table(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Document) -> List[Document]:
        with self._lock:
            return [
                _clone(document)
                for document in self._table(table).values()
                if _matches(document, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        """Take the batch lock; the outermost batch snapshots every table"""
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = json.dumps(self._tables)
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        """Release the batch lock; the outermost rollback restores the snapshot"""
        self._depth -= 1
        if self._depth == 0 and self._snapshot is not None:
            self._tables = json.loads(self._snapshot)
            self._snapshot = None
        self._lock.release()


class SQLiteStorage(StorageInterface):
    """
    SQLite-backed store

    Each table holds ``(seq, id, data)`` rows with the record as JSON text.
    ``seq`` keeps insertion order stable across updates. Equality filters on
    scalar fields are pushed down with ``json_extract``.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Manual transaction control: writes outside a batch commit immediately
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False,
                                           isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _table(self, table: str) -> str:
        _check_table(table)
        if table not in self._known_tables:
            self._connection.execute(
                f"CREATE TABLE IF NOT EXISTS {table} ("
                "seq INTEGER PRIMARY KEY AUTOINCREMENT, "
                "id TEXT NOT NULL UNIQUE, "
                "data TEXT NOT NULL)"
            )
            self._known_tables.add(table)
        return table

    def _autocommit(self) -> None:
        if self._depth == 0:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Document) -> None:
        with self._lock:
            self._connection.execute(
                f"INSERT INTO {self._table(table)} (id, data) VALUES (?, ?) "
                "ON CONFLICT(id) DO UPDATE SET data = excluded.data",
                (record_id, json.dumps(data, default=str))
            )
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Document]:
        with self._lock:
            row = self._connection.execute(
                f"SELECT data FROM {self._table(table)} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Document]:
        return self.find(table, {})

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            row = self._connection.execute(
                f"SELECT 1 FROM {self._table(table)} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    @staticmethod
    def _where(filters: Document) -> Tuple[str, List[Any], Document]:
        """Split filters into a SQL clause and the remainder checked in Python"""
        clauses, params, remainder = [], [], {}
        for key, value in filters.items():
            if isinstance(value, (str, int)) and re.match(r"^\w+$", key):
                clauses.append(f"json_extract(data, '$.{key}') = ?")
                params.append(value)
            else:
                remainder[key] = value
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params, remainder

    def find(self, table: str, filters: Document) -> List[Document]:
        where, params, remainder = self._where(filters)
        with self._lock:
            rows = self._connection.execute(
                f"SELECT data FROM {self._table(table)}{where} ORDER BY seq", params
            ).fetchall()
        documents = [json.loads(row['data']) for row in rows]
        if remainder:
            documents = [d for d in documents if _matches(d, remainder)]
        return documents

    def count(self, table: str) -> int:
        with self._lock:
            row = self._connection.execute(
                f"SELECT COUNT(*) AS n FROM {self._table(table)}"
            ).fetchone()
            return row['n']

    def begin_transaction(self) -> None:
        """Take the batch lock; it is held until the batch ends"""
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        try:
            if self._depth == 0:
                self._connection.commit()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        try:
            if self._depth == 0:
                self._connection.rollback()
                # Tables created inside the batch are gone too
                self._known_tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(config: Optional[LedgerConfig] = None) -> StorageInterface:
    """
    Build the storage backend named by ``database_url``

    ``memory://`` gives an InMemoryStorage; ``sqlite:///path`` (or
    ``sqlite://`` for an in-memory database) gives a SQLiteStorage.
    """
    config = config or get_config()
    url = config.database_url
    if url.startswith("memory://"):
        return InMemoryStorage()
    if url.startswith("sqlite:///"):
        return SQLiteStorage(url[len("sqlite:///"):])
    if url.startswith("sqlite://"):
        return SQLiteStorage(url[len("sqlite://"):] or ":memory:")
    raise ValueError(f"Unsupported database_url: {url}")
