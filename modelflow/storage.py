"""Document store backends for plans, usage and upgrade requests.

Documents are JSON objects addressed by slash separated paths such as
``users/{user_id}/usage/{date_key}`` or ``upgradeRequests/{request_id}``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol
import copy
import json
import sqlite3
import threading


class StoreUnavailableError(Exception):
    """Raised when the persistence backend cannot be reached."""

    def __init__(self, operation: str, path: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.path = path
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Document store unavailable during {operation} '{path}'{detail}")


Transform = Callable[[Optional[dict]], Optional[dict]]


def normalize_path(path: str) -> str:
    parts = [p for p in str(path).strip().split("/") if p]
    if not parts:
        raise ValueError("path must contain at least one segment")
    for part in parts:
        if part in (".", ".."):
            raise ValueError(f"invalid path segment: {part!r}")
    return "/".join(parts)


def _parent_of(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


class DocumentStore(Protocol):
    """Document store interface."""

    def get(self, path: str) -> Optional[dict]:
        ...

    def set(self, path: str, document: dict) -> dict:
        ...

    def update(self, path: str, fields: dict) -> dict:
        ...

    def remove(self, path: str) -> bool:
        ...

    def children(self, path: str) -> Dict[str, dict]:
        ...

    def transact(self, path: str, transform: Transform) -> Optional[dict]:
        """Atomically read, transform and write one document.

        ``transform`` receives the current document (or None) and returns
        the new one. Returning None deletes the document. Exceptions raised
        by ``transform`` abort the write and propagate.
        """
        ...


class InMemoryDocumentStore:
    """In-memory document store (default)."""

    def __init__(self):
        self._documents: Dict[str, dict] = {}
        self._lock = threading.RLock()

    def get(self, path: str) -> Optional[dict]:
        path = normalize_path(path)
        with self._lock:
            document = self._documents.get(path)
            return copy.deepcopy(document) if document is not None else None

    def set(self, path: str, document: dict) -> dict:
        path = normalize_path(path)
        with self._lock:
            self._documents[path] = copy.deepcopy(document)
        return document

    def update(self, path: str, fields: dict) -> dict:
        path = normalize_path(path)
        with self._lock:
            merged = dict(self._documents.get(path) or {})
            merged.update(copy.deepcopy(fields))
            self._documents[path] = merged
            return copy.deepcopy(merged)

    def remove(self, path: str) -> bool:
        path = normalize_path(path)
        with self._lock:
            if path in self._documents:
                del self._documents[path]
                return True
            return False

    def children(self, path: str) -> Dict[str, dict]:
        path = normalize_path(path)
        with self._lock:
            return {
                key.rsplit("/", 1)[1]: copy.deepcopy(doc)
                for key, doc in self._documents.items()
                if _parent_of(key) == path
            }

    def transact(self, path: str, transform: Transform) -> Optional[dict]:
        path = normalize_path(path)
        with self._lock:
            current = copy.deepcopy(self._documents.get(path))
            updated = transform(current)
            if updated is None:
                self._documents.pop(path, None)
                return None
            self._documents[path] = copy.deepcopy(updated)
            return updated

    def clear(self) -> None:
        with self._lock:
            self._documents.clear()

    def __len__(self) -> int:
        return len(self._documents)


class SQLiteDocumentStore:
    """SQLite-backed document store."""

    def __init__(self, db_path: str = "modelflow.db"):
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
        except sqlite3.Error as exc:
            raise StoreUnavailableError("connect", db_path, exc) from exc
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    path TEXT PRIMARY KEY,
                    parent TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_parent ON documents(parent)")

    def _read(self, path: str) -> Optional[dict]:
        row = self._conn.execute(
            "SELECT data FROM documents WHERE path = ?",
            (path,),
        ).fetchone()
        if not row:
            return None
        return json.loads(row["data"])

    def _write(self, path: str, document: dict) -> None:
        self._conn.execute(
            """
            INSERT INTO documents (path, parent, data, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                data=excluded.data,
                updated_at=excluded.updated_at
            """,
            (
                path,
                _parent_of(path),
                json.dumps(document, default=str),
                datetime.now(timezone.utc).isoformat(),
            ),
        )

    def get(self, path: str) -> Optional[dict]:
        path = normalize_path(path)
        try:
            with self._lock:
                return self._read(path)
        except sqlite3.Error as exc:
            raise StoreUnavailableError("get", path, exc) from exc

    def set(self, path: str, document: dict) -> dict:
        path = normalize_path(path)
        try:
            with self._lock:
                self._write(path, document)
        except sqlite3.Error as exc:
            raise StoreUnavailableError("set", path, exc) from exc
        return document

    def update(self, path: str, fields: dict) -> dict:
        def merge(current: Optional[dict]) -> dict:
            merged = dict(current or {})
            merged.update(fields)
            return merged

        return self.transact(path, merge)

    def remove(self, path: str) -> bool:
        path = normalize_path(path)
        try:
            with self._lock:
                cur = self._conn.execute("DELETE FROM documents WHERE path = ?", (path,))
        except sqlite3.Error as exc:
            raise StoreUnavailableError("remove", path, exc) from exc
        return cur.rowcount > 0

    def children(self, path: str) -> Dict[str, dict]:
        path = normalize_path(path)
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT path, data FROM documents WHERE parent = ? ORDER BY path ASC",
                    (path,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailableError("children", path, exc) from exc
        return {row["path"].rsplit("/", 1)[1]: json.loads(row["data"]) for row in rows}

    def transact(self, path: str, transform: Transform) -> Optional[dict]:
        path = normalize_path(path)
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StoreUnavailableError("transact", path, exc) from exc
            try:
                updated = transform(self._read(path))
                if updated is None:
                    self._conn.execute("DELETE FROM documents WHERE path = ?", (path,))
                else:
                    self._write(path, updated)
                self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._conn.execute("ROLLBACK")
                raise StoreUnavailableError("transact", path, exc) from exc
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        return updated

    def close(self) -> None:
        self._conn.close()
