"""SQLite document store with FTS5 keyword search."""

import json
import logging
import re
import sqlite3
import threading
import zlib
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from .errors import ValidationError
from .models import ContentType, Document, IndexHit, utcnow

logger = logging.getLogger(__name__)

HIGHLIGHT_OPEN = "<mark>"
HIGHLIGHT_CLOSE = "</mark>"

# Filter keys that map onto real columns; anything else goes through metadata_json
FILTER_COLUMNS = {
    "owner_id": "d.owner_id",
    "content_type": "d.content_type",
    "content_id": "d.content_id",
    "category": "d.category",
}

_FILTER_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_QUERY_TOKEN = re.compile(r"\w+", re.UNICODE)
_LOCK_STRIPES = 64


def build_fts5_query(query: str) -> str:
    """Turn free text into an FTS5 MATCH expression.

    Every word token is quoted (so FTS5 operators in user input are inert)
    and the tokens are OR-ed; bm25 ranks documents matching more terms higher.
    """
    tokens = _QUERY_TOKEN.findall(query or "")
    return " OR ".join('"{}"'.format(t.replace('"', '""')) for t in tokens)


class KeywordIndex:
    """
    Keyword index over documents using SQLite FTS5.

    The ``porter unicode61`` tokenizer stems both documents and queries, so
    "running" finds "run". Each thread gets its own connection (WAL mode) so
    searches are not serialized behind writers.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._memory = db_path == ":memory:"
        self._local = threading.local()
        self._shared: Optional[sqlite3.Connection] = None
        self._shared_lock = threading.RLock()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._id_locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]
        if not self._memory:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._conn() as conn:
            self._init_db(conn)

    # ============ Connections ============

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        if not self._memory:
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        with self._connections_lock:
            self._connections.append(conn)
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        if self._memory:
            with self._shared_lock:
                if self._shared is None:
                    self._shared = self._open()
                yield self._shared
            return
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open()
            self._local.conn = conn
        yield conn

    def _init_db(self, conn: sqlite3.Connection) -> None:
        """Initialize database schema."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                pk INTEGER PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                owner_id TEXT NOT NULL,
                content_type TEXT NOT NULL,
                content_id TEXT,
                title TEXT,
                body TEXT NOT NULL,
                tags TEXT,
                category TEXT,
                metadata_json TEXT,
                created_at TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_owner ON documents(owner_id, content_type)")

        # FTS5 table keeps its own copy of the text so snippet() works
        conn.execute("""
            CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
                title,
                body,
                tags,
                category,
                tokenize='porter unicode61'
            )
        """)
        conn.commit()

    # ============ Writes ============

    def _stripe_lock(self, doc_id: str) -> threading.Lock:
        return self._id_locks[zlib.crc32(doc_id.encode()) % _LOCK_STRIPES]

    def index(
        self,
        id: str,
        owner_id: str,
        content_type: str,
        title: str,
        body: str,
        tags: Optional[Iterable[str]] = None,
        category: Optional[str] = None,
        *,
        content_id: str = "",
        metadata: Optional[Mapping[str, str]] = None,
        created_at: Optional[datetime] = None,
    ) -> None:
        """Insert or replace a document in the store and the FTS index."""
        if not id:
            raise ValidationError("Document id must be a non-empty string")
        content_type = ContentType(content_type).value
        tags = list(tags or [])
        tags_json = json.dumps(tags)
        tags_text = " ".join(tags)
        created = (created_at or utcnow()).isoformat()
        metadata_json = json.dumps(dict(metadata or {}))

        with self._stripe_lock(id), self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute("SELECT pk FROM documents WHERE id = ?", (id,)).fetchone()
                if row is not None:
                    rowid = row["pk"]
                    conn.execute("DELETE FROM documents_fts WHERE rowid = ?", (rowid,))
                    conn.execute("""
                        UPDATE documents
                        SET owner_id = ?, content_type = ?, content_id = ?, title = ?, body = ?,
                            tags = ?, category = ?, metadata_json = ?, created_at = ?,
                            updated_at = CURRENT_TIMESTAMP
                        WHERE pk = ?
                    """, (owner_id, content_type, content_id or id, title, body,
                          tags_json, category, metadata_json, created, rowid))
                else:
                    cursor = conn.execute("""
                        INSERT INTO documents (
                            id, owner_id, content_type, content_id, title, body,
                            tags, category, metadata_json, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (id, owner_id, content_type, content_id or id, title, body,
                          tags_json, category, metadata_json, created))
                    rowid = cursor.lastrowid

                conn.execute(
                    "INSERT INTO documents_fts(rowid, title, body, tags, category) VALUES (?, ?, ?, ?, ?)",
                    (rowid, title or "", body, tags_text, category or ""),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def index_document(self, doc: Document) -> None:
        self.index(
            doc.id,
            doc.owner_id,
            doc.content_type.value,
            doc.title,
            doc.body,
            doc.tags,
            doc.category,
            content_id=doc.content_id,
            metadata=doc.metadata,
            created_at=doc.created_at,
        )

    def remove(self, id: str) -> bool:
        """Delete a document. Returns True if something was deleted."""
        with self._stripe_lock(id), self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute("SELECT pk FROM documents WHERE id = ?", (id,)).fetchone()
                if row is None:
                    conn.rollback()
                    return False
                conn.execute("DELETE FROM documents_fts WHERE rowid = ?", (row["pk"],))
                conn.execute("DELETE FROM documents WHERE pk = ?", (row["pk"],))
                conn.commit()
                return True
            except Exception:
                conn.rollback()
                raise

    # ============ Reads ============

    def _filter_sql(self, filter: Optional[Mapping[str, str]]) -> Tuple[str, List[Any]]:
        clauses = []
        params: List[Any] = []
        for key, value in (filter or {}).items():
            if not isinstance(key, str) or not _FILTER_KEY.match(key):
                raise ValidationError(f"Malformed filter key: {key!r}")
            if value is None:
                raise ValidationError(f"Filter value for {key!r} must not be null")
            column = FILTER_COLUMNS.get(key)
            if column:
                clauses.append(f"{column} = ?")
            else:
                clauses.append("json_extract(d.metadata_json, ?) = ?")
                params.append(f"$.{key}")
            params.append(str(value))
        return "".join(f" AND {c}" for c in clauses), params

    def search(
        self,
        query: str,
        limit: int = 10,
        filter: Optional[Mapping[str, str]] = None,
    ) -> List[IndexHit]:
        """
        Ranked keyword search with highlighted snippets.

        Args:
            query: Free text; tokens are stemmed and OR-ed
            limit: Maximum number of hits
            filter: Exact-match filters (owner_id, content_type, category, or metadata keys)

        Returns:
            Hits ordered by bm25 relevance (``score`` is larger-is-better)
        """
        where, params = self._filter_sql(filter)
        match = build_fts5_query(query)
        if not match or limit <= 0:
            return []

        sql = f"""
            SELECT d.id, d.owner_id, d.content_type, d.title, d.category,
                   bm25(documents_fts, 4.0, 1.0, 2.0, 1.0) AS score,
                   highlight(documents_fts, 0, ?, ?) AS title_hl,
                   snippet(documents_fts, 1, ?, ?, '…', 16) AS body_hl
            FROM documents_fts
            JOIN documents d ON d.pk = documents_fts.rowid
            WHERE documents_fts MATCH ?{where}
            ORDER BY score, d.pk DESC
            LIMIT ?
        """
        args = [HIGHLIGHT_OPEN, HIGHLIGHT_CLOSE, HIGHLIGHT_OPEN, HIGHLIGHT_CLOSE, match, *params, limit]

        with self._conn() as conn:
            rows = conn.execute(sql, args).fetchall()

        hits = []
        for row in rows:
            highlights = [hl for hl in (row["title_hl"], row["body_hl"]) if hl and HIGHLIGHT_OPEN in hl]
            hits.append(IndexHit(
                id=row["id"],
                score=-float(row["score"]),  # bm25() is negative, closer to 0 is worse
                metadata={
                    "document_id": row["id"],
                    "owner_id": row["owner_id"],
                    "content_type": row["content_type"],
                    "title": row["title"] or "",
                    "category": row["category"] or "",
                },
                highlights=highlights,
            ))
        return hits

    def get_documents(self, ids: Iterable[str]) -> Dict[str, Document]:
        """Load stored documents by id; unknown ids are absent from the result."""
        ids = list(dict.fromkeys(ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._conn() as conn:
            rows = conn.execute(f"SELECT * FROM documents WHERE id IN ({placeholders})", ids).fetchall()
        return {row["id"]: self._row_to_document(row) for row in rows}

    def get_document(self, id: str) -> Optional[Document]:
        return self.get_documents([id]).get(id)

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        created = row["created_at"]
        return Document(
            id=row["id"],
            owner_id=row["owner_id"],
            content_type=ContentType(row["content_type"]),
            content_id=row["content_id"] or row["id"],
            title=row["title"] or "",
            body=row["body"],
            created_at=datetime.fromisoformat(created) if created else utcnow(),
            metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
            tags=json.loads(row["tags"]) if row["tags"] else [],
            category=row["category"],
        )

    def all_ids(self) -> List[str]:
        with self._conn() as conn:
            return [row["id"] for row in conn.execute("SELECT id FROM documents ORDER BY pk")]

    def count(self) -> int:
        with self._conn() as conn:
            return conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]

    def close(self) -> None:
        """Close every connection opened by this index."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._shared = None
        self._local = threading.local()
