"""
Page store using SQLite.

Stores one versioned record per canonical URL. The record (all versions,
items and embeddings) is kept as a JSON document; the columns alongside it
exist for the secondary indexes (canonical URL, timestamp) and for cheap
listings that don't need to decode every record.

The page store is the source of truth for:
- Page identity (canonical URL, integer id)
- Version history with chunk embeddings and summaries
- Embedding metadata (model and dimension, first observed)
- The per-date highlights cache

Every write is a single transaction; a failed write leaves the previous
record untouched. Mutations are announced to subscribers after commit.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional

from .types import EmbeddingMeta, PageRecord, now_ms

logger = logging.getLogger(__name__)

# Same local-timezone date as types.local_date()
_LOCAL_DATE_SQL = "date(timestamp / 1000, 'unixepoch', 'localtime')"

# callback(event, record, previous): event is "add", "put" or "delete"
ChangeListener = Callable[[str, Optional[PageRecord], Optional[PageRecord]], None]


class PageStore:
    """
    SQLite-backed store for versioned page records.

    Reads take a snapshot under the store lock; there is no locking
    against concurrent writers beyond SQLite's own transactions.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = store_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._listeners: list[ChangeListener] = []
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS pages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                canonical_url TEXT NOT NULL,
                url TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                timestamp INTEGER NOT NULL,
                record_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_pages_canonical
            ON pages(canonical_url)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_pages_timestamp
            ON pages(timestamp)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS embedding_meta (
                key TEXT PRIMARY KEY,
                model TEXT,
                dim INTEGER NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS highlight_cache (
                date TEXT PRIMARY KEY,
                text TEXT NOT NULL,
                count INTEGER NOT NULL,
                generated_at INTEGER NOT NULL
            )
        """)
        self._conn.commit()

    # -------------------------------------------------------------------------
    # Change notification
    # -------------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> None:
        """Register a callback invoked after every committed page mutation."""
        self._listeners.append(listener)

    def _notify(self, event: str, record: Optional[PageRecord], previous: Optional[PageRecord]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, record, previous)
            except Exception as e:
                logger.warning("Page store listener failed on %s: %s", event, e)

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _encode(record: PageRecord) -> str:
        d = record.to_dict()
        d.pop("id", None)
        return json.dumps(d, ensure_ascii=False)

    @staticmethod
    def _decode(row: sqlite3.Row) -> PageRecord:
        record = PageRecord.from_dict(json.loads(row["record_json"]))
        record.id = row["id"]
        return record

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def add(self, record: PageRecord) -> int:
        """
        Insert a new page record and assign its id.

        Raises:
            sqlite3.IntegrityError: If a record with the same canonical URL exists
        """
        record.sync_latest()
        with self._lock:
            try:
                cursor = self._conn.execute("""
                    INSERT INTO pages (canonical_url, url, title, timestamp, record_json)
                    VALUES (?, ?, ?, ?, ?)
                """, (record.canonical_url, record.url, record.title or "",
                      int(record.timestamp), self._encode(record)))
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            record.id = cursor.lastrowid
        self._notify("add", record, None)
        return record.id

    def put(self, record: PageRecord) -> None:
        """
        Replace an existing page record as a whole.

        Raises:
            ValueError: If the record has no id
            KeyError: If no record with that id exists
        """
        if record.id is None:
            raise ValueError("Cannot put a page record without an id")
        record.sync_latest()
        with self._lock:
            previous = self._get_locked(record.id)
            if previous is None:
                raise KeyError(f"No page with id {record.id}")
            try:
                self._conn.execute("""
                    UPDATE pages
                    SET canonical_url = ?, url = ?, title = ?, timestamp = ?, record_json = ?
                    WHERE id = ?
                """, (record.canonical_url, record.url, record.title or "",
                      int(record.timestamp), self._encode(record), record.id))
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        self._notify("put", record, previous)

    def save(self, record: PageRecord) -> int:
        """Add the record if it has no id yet, otherwise replace it."""
        if record.id is None:
            return self.add(record)
        self.put(record)
        return record.id

    def delete(self, id: int) -> Optional[PageRecord]:
        """Delete a page record. Returns the deleted record, or None."""
        with self._lock:
            previous = self._get_locked(id)
            if previous is None:
                return None
            try:
                self._conn.execute("DELETE FROM pages WHERE id = ?", (id,))
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        self._notify("delete", None, previous)
        return previous

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def _get_locked(self, id: int) -> Optional[PageRecord]:
        row = self._conn.execute(
            "SELECT id, record_json FROM pages WHERE id = ?", (id,)
        ).fetchone()
        return self._decode(row) if row else None

    def get(self, id: int) -> Optional[PageRecord]:
        """Get a page record by id."""
        with self._lock:
            return self._get_locked(id)

    def get_by_canonical_url(self, canonical_url: str) -> Optional[PageRecord]:
        """Look up a page record through the canonical URL index."""
        with self._lock:
            row = self._conn.execute(
                "SELECT id, record_json FROM pages WHERE canonical_url = ?",
                (canonical_url,),
            ).fetchone()
        return self._decode(row) if row else None

    def get_by_url(self, url: str) -> list[PageRecord]:
        """All page records whose display URL equals ``url``."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, record_json FROM pages WHERE url = ?", (url,)
            ).fetchall()
        return [self._decode(r) for r in rows]

    def get_by_ids(self, ids: Iterable[int]) -> list[PageRecord]:
        """Page records for the given ids, in the given order; missing ids are skipped."""
        id_list = list(ids)
        if not id_list:
            return []
        placeholders = ",".join("?" * len(id_list))
        with self._lock:
            rows = self._conn.execute(
                f"SELECT id, record_json FROM pages WHERE id IN ({placeholders})",
                id_list,
            ).fetchall()
        by_id = {r["id"]: self._decode(r) for r in rows}
        return [by_id[i] for i in id_list if i in by_id]

    def get_all(self) -> list[PageRecord]:
        """All page records, oldest id first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, record_json FROM pages ORDER BY id"
            ).fetchall()
        return [self._decode(r) for r in rows]

    def list_pages(self) -> list[dict]:
        """Lightweight page listing, newest first: {id, url, title, timestamp}."""
        with self._lock:
            rows = self._conn.execute("""
                SELECT id, url, title, timestamp FROM pages
                ORDER BY timestamp DESC, id DESC
            """).fetchall()
        return [
            {"id": r["id"], "url": r["url"], "title": r["title"], "timestamp": r["timestamp"]}
            for r in rows
        ]

    def count(self) -> int:
        """Number of stored pages."""
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM pages").fetchone()[0]

    def get_by_date(self, date: str) -> list[PageRecord]:
        """Page records whose timestamp falls on a local calendar date, newest first."""
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT id, record_json FROM pages
                WHERE {_LOCAL_DATE_SQL} = ?
                ORDER BY timestamp DESC, id DESC
            """, (date,)).fetchall()
        return [self._decode(r) for r in rows]

    def count_by_date(self) -> dict[str, int]:
        """Number of pages per local calendar date (YYYY-MM-DD)."""
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT {_LOCAL_DATE_SQL} AS day, COUNT(*) AS n
                FROM pages GROUP BY day
            """).fetchall()
        return {r["day"]: r["n"] for r in rows if r["day"]}

    def delete_by_url(self, url: str) -> list[PageRecord]:
        """Delete every record whose display URL equals ``url``. Returns the deleted records."""
        deleted = []
        for record in self.get_by_url(url):
            previous = self.delete(record.id)
            if previous is not None:
                deleted.append(previous)
        return deleted

    # -------------------------------------------------------------------------
    # Embedding metadata
    # -------------------------------------------------------------------------

    def get_embedding_meta(self) -> Optional[EmbeddingMeta]:
        with self._lock:
            row = self._conn.execute(
                "SELECT model, dim FROM embedding_meta WHERE key = 'embedding'"
            ).fetchone()
        if row is None:
            return None
        return EmbeddingMeta(model=row["model"], dim=row["dim"])

    def ensure_embedding_meta(self, model: Optional[str], dim: int) -> bool:
        """
        Persist embedding metadata if none is stored yet.

        Returns True when the metadata was written by this call.
        """
        if not isinstance(dim, int) or dim <= 0:
            return False
        with self._lock:
            cursor = self._conn.execute("""
                INSERT OR IGNORE INTO embedding_meta (key, model, dim)
                VALUES ('embedding', ?, ?)
            """, (model, dim))
            self._conn.commit()
            written = cursor.rowcount > 0
        if written:
            logger.info("Embedding metadata persisted: model=%s dim=%d", model, dim)
        return written

    # -------------------------------------------------------------------------
    # Highlight cache
    # -------------------------------------------------------------------------

    def get_highlight(self, date: str) -> Optional[dict]:
        with self._lock:
            row = self._conn.execute(
                "SELECT date, text, count, generated_at FROM highlight_cache WHERE date = ?",
                (date,),
            ).fetchone()
        if row is None:
            return None
        return {
            "date": row["date"], "text": row["text"],
            "count": row["count"], "generated_at": row["generated_at"],
        }

    def set_highlight(self, date: str, text: str, count: int) -> None:
        with self._lock:
            self._conn.execute("""
                INSERT OR REPLACE INTO highlight_cache (date, text, count, generated_at)
                VALUES (?, ?, ?, ?)
            """, (date, text, count, now_ms()))
            self._conn.commit()

    def remove_highlight(self, date: str) -> None:
        if not date:
            return
        with self._lock:
            self._conn.execute("DELETE FROM highlight_cache WHERE date = ?", (date,))
            self._conn.commit()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        """Ensure connection is closed on garbage collection."""
        self.close()
