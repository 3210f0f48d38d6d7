"""SQLite document store for SiteCorpus.

Persists ``Document`` and ``QueueEntry`` records, keeps an FTS5 index over
document title/content in sync through triggers, and answers the filtered
lookups used by the crawl coordinator and the search stages.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pipelines.errors import StoreError

from .models import (
    DatabaseStats,
    DataSource,
    Document,
    DocumentMetadata,
    DocumentType,
    QueueEntry,
    QueueStats,
    utc_now,
)
from .query import DocumentFilter, compile_filter

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    raw_html TEXT,
    timestamp TEXT NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('news', 'private', 'general')),
    metadata TEXT NOT NULL DEFAULT '{}',
    last_updated TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_documents_type_timestamp ON documents(type, timestamp);
CREATE INDEX IF NOT EXISTS idx_documents_active_timestamp ON documents(is_active, timestamp);
CREATE INDEX IF NOT EXISTS idx_documents_timestamp ON documents(timestamp);

CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
    title, content, content='documents', content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS documents_ai AFTER INSERT ON documents BEGIN
    INSERT INTO documents_fts(rowid, title, content) VALUES (new.id, new.title, new.content);
END;

CREATE TRIGGER IF NOT EXISTS documents_ad AFTER DELETE ON documents BEGIN
    INSERT INTO documents_fts(documents_fts, rowid, title, content)
    VALUES ('delete', old.id, old.title, old.content);
END;

CREATE TRIGGER IF NOT EXISTS documents_au AFTER UPDATE OF title, content ON documents BEGIN
    INSERT INTO documents_fts(documents_fts, rowid, title, content)
    VALUES ('delete', old.id, old.title, old.content);
    INSERT INTO documents_fts(rowid, title, content) VALUES (new.id, new.title, new.content);
END;

CREATE TABLE IF NOT EXISTS queue_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    username TEXT,
    password TEXT,
    description TEXT,
    type TEXT NOT NULL DEFAULT 'general' CHECK (type IN ('news', 'private', 'general')),
    is_processed INTEGER NOT NULL DEFAULT 0,
    last_processed TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_queue_processed_type ON queue_entries(is_processed, type);
"""

_DOCUMENT_ORDERINGS = {
    "newest": "timestamp DESC, id DESC",
    "oldest": "timestamp ASC, id ASC",
}


def _icontains(haystack: Optional[str], needle: Optional[str]) -> int:
    if haystack is None or not needle:
        return 0
    return 1 if needle.casefold() in haystack.casefold() else 0


def _to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _fts_expression(terms: List[str]) -> str:
    quoted = ['"{}"'.format(term.replace('"', '""')) for term in terms if term.strip()]
    return " OR ".join(quoted)


class SQLiteAdapter:
    """SQLite implementation of the document store."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    async def initialize(self):
        """Open the connection and ensure the schema exists."""
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.create_function("icontains", 2, _icontains, deterministic=True)
            self.conn.executescript(SCHEMA)
            self.conn.commit()
            logger.info(f"SQLite store initialized: {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize SQLite store: {e}")
            raise StoreError(f"Failed to initialize SQLite store: {e}") from e

    async def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("SQLite connection closed")

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StoreError("Store not initialized")
        return self.conn

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def _row_to_document(self, row: sqlite3.Row) -> Document:
        metadata = json.loads(row["metadata"] or "{}")
        return Document(
            id=row["id"],
            url=row["url"],
            title=row["title"],
            content=row["content"],
            raw_html=row["raw_html"],
            timestamp=_from_db_time(row["timestamp"]),
            type=DocumentType(row["type"]),
            metadata=DocumentMetadata(**metadata),
            last_updated=_from_db_time(row["last_updated"]),
            is_active=bool(row["is_active"]),
        )

    async def get_document_by_url(self, url: str) -> Optional[Document]:
        row = self._connection().execute(
            "SELECT * FROM documents WHERE url = ?", (url,)
        ).fetchone()
        return self._row_to_document(row) if row else None

    async def get_document(self, document_id: int) -> Optional[Document]:
        row = self._connection().execute(
            "SELECT * FROM documents WHERE id = ?", (document_id,)
        ).fetchone()
        return self._row_to_document(row) if row else None

    async def upsert_document(self, document: Document) -> Document:
        """Insert a document, or update the existing row for the same URL in place.

        An update refreshes title, content, timestamp and metadata, replaces
        the raw markup only when new markup is supplied, and advances
        ``last_updated``.
        """
        conn = self._connection()
        metadata = json.dumps(document.metadata.model_dump(exclude_none=True))
        now = _to_db_time(utc_now())
        try:
            existing = conn.execute(
                "SELECT id FROM documents WHERE url = ?", (document.url,)
            ).fetchone()
            if existing:
                conn.execute(
                    """
                    UPDATE documents
                    SET title = ?, content = ?, raw_html = COALESCE(?, raw_html),
                        timestamp = ?, metadata = ?, last_updated = ?
                    WHERE id = ?
                    """,
                    (document.title, document.content, document.raw_html,
                     _to_db_time(document.timestamp), metadata, now, existing["id"]),
                )
                document_id = existing["id"]
                logger.debug(f"Updated document {document.url}")
            else:
                cursor = conn.execute(
                    """
                    INSERT INTO documents (url, title, content, raw_html, timestamp, type,
                                           metadata, last_updated, is_active)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (document.url, document.title, document.content, document.raw_html,
                     _to_db_time(document.timestamp), DocumentType(document.type).value,
                     metadata, now, 1 if document.is_active else 0),
                )
                document_id = cursor.lastrowid
                logger.debug(f"Inserted document {document.url}")
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Failed to store document: {e}", url=document.url) from e

        return await self.get_document(document_id)

    async def find_documents(self, doc_filter: DocumentFilter, limit: int = 10,
                             skip: int = 0, order: str = "newest") -> List[Document]:
        """Return documents matching ``doc_filter`` sorted by timestamp."""
        where, params = compile_filter(doc_filter)
        ordering = _DOCUMENT_ORDERINGS[order]
        rows = self._connection().execute(
            f"SELECT * FROM documents WHERE {where} ORDER BY {ordering} LIMIT ? OFFSET ?",
            params + [limit, skip],
        ).fetchall()
        return [self._row_to_document(row) for row in rows]

    async def text_search(self, terms: List[str], doc_filter: DocumentFilter,
                          limit: int = 15) -> List[Document]:
        """Full-text search over title/content, best bm25 match first.

        Terms are OR-ed. Returns an empty list when the FTS index cannot
        answer the query.
        """
        expression = _fts_expression(terms)
        if not expression:
            return []
        where, params = compile_filter(doc_filter)
        try:
            rows = self._connection().execute(
                f"""
                SELECT documents.* FROM documents
                JOIN (
                    SELECT rowid, bm25(documents_fts) AS fts_rank
                    FROM documents_fts WHERE documents_fts MATCH ?
                ) AS fts ON fts.rowid = documents.id
                WHERE {where}
                ORDER BY fts.fts_rank
                LIMIT ?
                """,
                [expression] + params + [limit],
            ).fetchall()
        except sqlite3.OperationalError as e:
            logger.warning(f"Full-text search failed for {terms}: {e}")
            return []
        return [self._row_to_document(row) for row in rows]

    async def count_documents(self, doc_filter: Optional[DocumentFilter] = None) -> int:
        where, params = compile_filter(doc_filter or DocumentFilter(is_active=None))
        return self._connection().execute(
            f"SELECT COUNT(*) FROM documents WHERE {where}", params
        ).fetchone()[0]

    async def delete_documents_older_than(self, cutoff: datetime) -> int:
        """Hard-delete documents fetched before ``cutoff``; returns the count."""
        conn = self._connection()
        try:
            cursor = conn.execute(
                "DELETE FROM documents WHERE timestamp < ?", (_to_db_time(cutoff),)
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Failed to delete old documents: {e}") from e
        logger.info(f"Deleted {cursor.rowcount} documents older than {cutoff.isoformat()}")
        return cursor.rowcount

    async def cleanup_old_documents(self, days_to_keep: int = 30) -> int:
        """Apply the retention policy: drop documents fetched more than ``days_to_keep`` days ago."""
        return await self.delete_documents_older_than(utc_now() - timedelta(days=days_to_keep))

    async def get_database_stats(self) -> DatabaseStats:
        """Document count and timestamp range; zeros when the store cannot answer."""
        try:
            row = self._connection().execute(
                "SELECT COUNT(*) AS total, MIN(timestamp) AS oldest, MAX(timestamp) AS newest FROM documents"
            ).fetchone()
        except (sqlite3.Error, StoreError) as e:
            logger.error(f"Error getting database stats: {e}")
            return DatabaseStats()
        return DatabaseStats(
            total_documents=row["total"],
            oldest_document=_from_db_time(row["oldest"]),
            newest_document=_from_db_time(row["newest"]),
        )

    # ------------------------------------------------------------------
    # Queue entries
    # ------------------------------------------------------------------

    def _row_to_entry(self, row: sqlite3.Row) -> QueueEntry:
        return QueueEntry(
            id=row["id"],
            url=row["url"],
            username=row["username"],
            password=row["password"],
            description=row["description"],
            type=DocumentType(row["type"]),
            is_processed=bool(row["is_processed"]),
            last_processed=_from_db_time(row["last_processed"]),
            created_at=_from_db_time(row["created_at"]),
        )

    async def get_queue_entry(self, entry_id: int) -> Optional[QueueEntry]:
        row = self._connection().execute(
            "SELECT * FROM queue_entries WHERE id = ?", (entry_id,)
        ).fetchone()
        return self._row_to_entry(row) if row else None

    async def get_queue_entry_by_url(self, url: str) -> Optional[QueueEntry]:
        row = self._connection().execute(
            "SELECT * FROM queue_entries WHERE url = ?", (url,)
        ).fetchone()
        return self._row_to_entry(row) if row else None

    async def upsert_discovered_url(self, url: str, doc_type: DocumentType,
                                    description: Optional[str] = None) -> bool:
        """Record a discovered URL.

        Creates the entry when unknown. A known entry only has its type
        updated, and only while it is still unprocessed. Returns True when a
        new entry was created.
        """
        conn = self._connection()
        doc_type = DocumentType(doc_type)
        try:
            existing = conn.execute(
                "SELECT id, is_processed FROM queue_entries WHERE url = ?", (url,)
            ).fetchone()
            if existing is None:
                conn.execute(
                    """
                    INSERT INTO queue_entries (url, description, type, is_processed, created_at)
                    VALUES (?, ?, ?, 0, ?)
                    """,
                    (url, description, doc_type.value, _to_db_time(utc_now())),
                )
                created = True
            else:
                if not existing["is_processed"]:
                    conn.execute(
                        "UPDATE queue_entries SET type = ? WHERE id = ?",
                        (doc_type.value, existing["id"]),
                    )
                created = False
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Failed to store queue entry: {e}", url=url) from e
        return created

    async def add_queue_entry(self, entry: QueueEntry) -> QueueEntry:
        """Register a URL (seed or operator-supplied) without duplicating it.

        Credentials and description of an existing entry are refreshed when
        supplied; its type only changes while it is unprocessed.
        """
        conn = self._connection()
        doc_type = DocumentType(entry.type).value
        try:
            existing = conn.execute(
                "SELECT id, is_processed FROM queue_entries WHERE url = ?", (entry.url,)
            ).fetchone()
            if existing is None:
                conn.execute(
                    """
                    INSERT INTO queue_entries (url, username, password, description, type,
                                               is_processed, created_at)
                    VALUES (?, ?, ?, ?, ?, 0, ?)
                    """,
                    (entry.url, entry.username, entry.password, entry.description,
                     doc_type, _to_db_time(entry.created_at)),
                )
            else:
                conn.execute(
                    """
                    UPDATE queue_entries
                    SET username = COALESCE(?, username),
                        password = COALESCE(?, password),
                        description = COALESCE(?, description),
                        type = CASE WHEN is_processed = 0 THEN ? ELSE type END
                    WHERE id = ?
                    """,
                    (entry.username, entry.password, entry.description, doc_type, existing["id"]),
                )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Failed to store queue entry: {e}", url=entry.url) from e
        return await self.get_queue_entry_by_url(entry.url)

    async def register_source(self, source: DataSource) -> QueueEntry:
        return await self.add_queue_entry(QueueEntry(
            url=source.url,
            username=source.username,
            password=source.password,
            description=source.description,
            type=source.type,
        ))

    async def get_unprocessed_entries(self, doc_type: Optional[DocumentType] = None) -> List[QueueEntry]:
        query = "SELECT * FROM queue_entries WHERE is_processed = 0"
        params: list = []
        if doc_type is not None:
            query += " AND type = ?"
            params.append(DocumentType(doc_type).value)
        rows = self._connection().execute(query + " ORDER BY id", params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def list_queue_entries(self, doc_type: Optional[DocumentType] = None) -> List[QueueEntry]:
        query = "SELECT * FROM queue_entries"
        params: list = []
        if doc_type is not None:
            query += " WHERE type = ?"
            params.append(DocumentType(doc_type).value)
        rows = self._connection().execute(query + " ORDER BY created_at DESC, id DESC", params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def mark_processed(self, url: str) -> None:
        conn = self._connection()
        try:
            conn.execute(
                "UPDATE queue_entries SET is_processed = 1, last_processed = ? WHERE url = ?",
                (_to_db_time(utc_now()), url),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Failed to mark queue entry processed: {e}", url=url) from e

    async def reset_queue(self, doc_type: Optional[DocumentType] = None) -> int:
        """Mark entries unprocessed again; returns how many changed."""
        query = ("UPDATE queue_entries SET is_processed = 0, last_processed = NULL "
                 "WHERE (is_processed = 1 OR last_processed IS NOT NULL)")
        params: list = []
        if doc_type is not None:
            query += " AND type = ?"
            params.append(DocumentType(doc_type).value)
        conn = self._connection()
        try:
            cursor = conn.execute(query, params)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Failed to reset queue: {e}") from e
        return cursor.rowcount

    async def get_queue_stats(self) -> QueueStats:
        conn = self._connection()
        total = conn.execute("SELECT COUNT(*) FROM queue_entries").fetchone()[0]
        processed = conn.execute(
            "SELECT COUNT(*) FROM queue_entries WHERE is_processed = 1"
        ).fetchone()[0]
        by_type: Dict[str, int] = {t.value: 0 for t in DocumentType}
        for row in conn.execute("SELECT type, COUNT(*) AS n FROM queue_entries GROUP BY type"):
            by_type[row["type"]] = row["n"]
        return QueueStats(total=total, processed=processed,
                          unprocessed=total - processed, by_type=by_type)

    async def get_stats(self) -> Dict[str, Any]:
        """Document and queue counts for the detailed health check.

        Raises:
            StoreError: the store is not open.
        """
        return {
            "documents": await self.count_documents(),
            "queue": (await self.get_queue_stats()).model_dump(by_alias=True),
        }
