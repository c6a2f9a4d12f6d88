"""
Storage Backend Module

Provides the durable key-value capability used for the authority snapshot,
the audit trail and device-local caches. Records are JSON documents grouped
in tables. Implementations: in-memory (testing), SQLite, and a single JSON
document on disk.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
from pathlib import Path
import sqlite3
import json
import os
import threading


def _copy(data: Any) -> Any:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

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
        """Load all records from a table, oldest first"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            records = self._table(table)
            # Re-insert so that iteration order follows last write
            records.pop(record_id, None)
            records[record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table}")
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_updated_at
            ON {table}(updated_at)
        """)
        self._connection.commit()
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
            self._connection.commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

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
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._connection.commit()
            return cursor.rowcount > 0

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
            return row['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class JSONFileStorage(StorageInterface):
    """
    Whole-store JSON document on disk.

    Every write rewrites the file through a temporary file and an atomic
    rename, so a crash leaves either the previous or the new document.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        if self.path.exists():
            with open(self.path, "r", encoding="utf-8") as handle:
                content = handle.read().strip()
            if content:
                self._data = json.loads(content)

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(self._data, handle, default=str, indent=2)
        os.replace(tmp_path, self.path)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            records = self._data.setdefault(table, {})
            records.pop(record_id, None)
            records[record_id] = _copy(data)
            self._write()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._data.get(table, {}).get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(record) for record in self._data.get(table, {}).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            removed = self._data.get(table, {}).pop(record_id, None) is not None
            if removed:
                self._write()
            return removed

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._data.get(table, {}))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}
            self._write()


def create_storage(url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms: ``memory://``, ``sqlite:///path/to.db`` (``sqlite://``
    alone is an in-memory database) and ``file:///path/to.json``.
    """
    if url.startswith("memory://"):
        return InMemoryStorage()
    if url.startswith("sqlite://"):
        path = url[len("sqlite:///"):] if url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:")
    if url.startswith("file://"):
        path = url[len("file://"):]
        if not path:
            raise ValueError("file:// storage URL requires a path")
        return JSONFileStorage(path)
    raise ValueError(f"Unsupported storage URL: {url}")
