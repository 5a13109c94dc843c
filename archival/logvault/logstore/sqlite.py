"""
SQLite-backed document store.

Gives the job registry a durable home for long-running service
processes, so job records survive restarts and reconciliation can
resume.

Reads are served from an in-memory index that load() rebuilds from the
database file; put() writes through to SQLite and then updates the index.

Invariants:
    - One SQLite file may hold several named stores (one table row set each)
    - put() is an atomic upsert keyed by (store, key)
    - The in-memory index never holds a document that is not on disk

Table schema:
    documents:
        - store TEXT
        - doc_key TEXT
        - body_json TEXT
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (store, doc_key)
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


class SqliteDocumentStore:
    """Durable DocumentStore on a single SQLite file.

    Example:
        >>> jobs = SqliteDocumentStore("/var/lib/logvault/jobs.db", "jobs")
        >>> await jobs.load()
        >>> await jobs.put({"id": "job-1", "status": "QUEUED"})
        >>> jobs.get("job-1")
        [{'id': 'job-1', 'status': 'QUEUED'}]
    """

    def __init__(
        self,
        path: str,
        name: str = "jobs",
        index_by: str = "id",
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            path: SQLite database file
            name: Store name, several stores can share one file
            index_by: Document field used as key
            busy_timeout_ms: SQLite busy timeout
        """
        self.path = Path(path)
        self.name = name
        self.index_by = index_by
        self.busy_timeout_ms = busy_timeout_ms
        self._index: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._initialized = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._initialized:
                self._create_schema(conn)
                self._initialized = True
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                store TEXT NOT NULL,
                doc_key TEXT NOT NULL,
                body_json TEXT NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (store, doc_key)
            );
        """)

    async def load(self) -> None:
        """Rebuild the in-memory index from disk."""
        async with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT doc_key, body_json FROM documents WHERE store = ?",
                    (self.name,),
                )
                self._index = {row["doc_key"]: json.loads(row["body_json"]) for row in cursor}

        logger.debug(
            "Loaded document store",
            extra={"store": self.name, "documents": len(self._index)},
        )

    async def put(self, doc: dict[str, Any]) -> None:
        key = doc.get(self.index_by)
        if not key:
            raise ValueError(f"Document is missing index field '{self.index_by}'")

        body = json.dumps(doc)
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO documents (store, doc_key, body_json, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (store, doc_key)
                    DO UPDATE SET body_json = excluded.body_json,
                                  updated_at = excluded.updated_at
                    """,
                    (self.name, key, body, int(time.time() * 1000)),
                )
            self._index[key] = json.loads(body)

    def get(self, key: str) -> list[dict[str, Any]]:
        doc = self._index.get(key)
        return [copy.deepcopy(doc)] if doc is not None else []

    def query(self, predicate: Callable[[dict[str, Any]], bool]) -> list[dict[str, Any]]:
        return [copy.deepcopy(d) for d in self._index.values() if predicate(d)]

    async def count(self) -> int:
        """Number of documents on disk for this store."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT COUNT(*) FROM documents WHERE store = ?", (self.name,)
            )
            return cursor.fetchone()[0]
