"""SQLite document store adapter.

Implements the core DocumentStore port on a single SQLite table of JSON
documents keyed by (collection, id).
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any, Optional


class SQLiteDocumentStore:
    """Thin SQLite wrapper that satisfies the DocumentStore contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create the documents table if it does not exist.

        Fields:
        - collection: logical collection (messages, interests, ...)
        - id: document id, unique within its collection
        - data: the JSON document, including its own "id" key
        """

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (collection, id)
                )
                """
            )

    @staticmethod
    def _load(row: sqlite3.Row) -> dict[str, Any]:
        document = json.loads(row["data"])
        document["id"] = row["id"]
        return document

    @staticmethod
    def _dump(document_id: str, document: dict[str, Any]) -> str:
        return json.dumps({**document, "id": document_id}, ensure_ascii=False)

    def _read(self, conn: sqlite3.Connection, collection: str, document_id: str) -> Optional[dict[str, Any]]:
        row = conn.execute(
            "SELECT id, data FROM documents WHERE collection = ? AND id = ?",
            (collection, document_id),
        ).fetchone()
        return self._load(row) if row else None

    def _write(self, conn: sqlite3.Connection, collection: str, document_id: str, document: dict[str, Any]) -> None:
        conn.execute(
            """
            INSERT INTO documents (collection, id, data)
            VALUES (?, ?, ?)
            ON CONFLICT(collection, id) DO UPDATE SET data = excluded.data
            """,
            (collection, document_id, self._dump(document_id, document)),
        )

    def find_by_id(self, collection: str, document_id: str) -> Optional[dict[str, Any]]:
        with self._connect() as conn:
            return self._read(conn, collection, document_id)

    def insert(self, collection: str, document_id: Optional[str], document: dict[str, Any]) -> str:
        """Insert a new document and return its id; a random id is used when none is given."""

        document_id = document_id or uuid.uuid4().hex
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO documents (collection, id, data) VALUES (?, ?, ?)",
                (collection, document_id, self._dump(document_id, document)),
            )
        return document_id

    def upsert(self, collection: str, document_id: str, document: dict[str, Any]) -> None:
        """Replace the whole document, creating it when missing."""

        with self._connect() as conn:
            self._write(conn, collection, document_id, document)

    def update(self, collection: str, document_id: str, fields: dict[str, Any]) -> None:
        """Merge top-level fields into an existing document."""

        with self._connect() as conn:
            current = self._read(conn, collection, document_id)
            if current is None:
                raise KeyError(f"{collection}/{document_id} does not exist")
            current.update(fields)
            self._write(conn, collection, document_id, current)

    def append(self, collection: str, document_id: str, field: str, value: Any) -> None:
        """Append a value to a list field, creating the list when missing."""

        with self._connect() as conn:
            current = self._read(conn, collection, document_id)
            if current is None:
                raise KeyError(f"{collection}/{document_id} does not exist")
            items = current.get(field)
            current[field] = [*items, value] if isinstance(items, list) else [value]
            self._write(conn, collection, document_id, current)

    def find(self, collection: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        """Return documents whose top-level fields equal every filter value."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, data FROM documents WHERE collection = ? ORDER BY rowid",
                (collection,),
            ).fetchall()
        documents = [self._load(row) for row in rows]
        if not filters:
            return documents
        return [
            document
            for document in documents
            if all(document.get(key) == value for key, value in filters.items())
        ]

    def delete(self, collection: str, document_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, document_id),
            )
