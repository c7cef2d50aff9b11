"""
Pending capture state using SQLite.

Two tables back the capture queue:

- ``pending_captures``: the last capture payload per URL, saved before the
  capture is enqueued so it can be retried without re-acquiring the page.
- ``processing``: per-URL status of captures that have not finished
  (``processing``, ``retrying``, ``error``) or have exhausted their
  attempts (``failed``, kept as a dead letter for diagnosis).

Successful ingestion removes both rows.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Optional

from .types import CaptureMessage, ProcessingEntry, now_ms

logger = logging.getLogger(__name__)

# Listing cap for processing entries
MAX_LISTED = 100

STATUSES = ("processing", "retrying", "error", "failed")


class PendingCaptureStore:
    """SQLite-backed pending payloads and processing status."""

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)

        # WAL for concurrent readers, wait for locks instead of failing
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS pending_captures (
                url TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                saved_at INTEGER NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS processing (
                url TEXT PRIMARY KEY,
                title TEXT NOT NULL DEFAULT '',
                timestamp INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'processing',
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                updated_at INTEGER NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_processing_status
            ON processing(status)
        """)
        self._conn.commit()

    # -------------------------------------------------------------------------
    # Pending payloads
    # -------------------------------------------------------------------------

    def save_payload(self, message: CaptureMessage) -> None:
        """Persist (or replace) the capture payload for a URL."""
        with self._lock:
            self._conn.execute("""
                INSERT OR REPLACE INTO pending_captures (url, payload, saved_at)
                VALUES (?, ?, ?)
            """, (message.url, json.dumps(message.to_dict(), ensure_ascii=False), now_ms()))
            self._conn.commit()

    def get_payload(self, url: str) -> Optional[CaptureMessage]:
        with self._lock:
            row = self._conn.execute(
                "SELECT payload FROM pending_captures WHERE url = ?", (url,)
            ).fetchone()
        if row is None:
            return None
        try:
            return CaptureMessage.from_dict(json.loads(row[0]))
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Unreadable pending payload for %s: %s", url, e)
            return None

    def remove_payload(self, url: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM pending_captures WHERE url = ?", (url,))
            self._conn.commit()

    # -------------------------------------------------------------------------
    # Processing entries
    # -------------------------------------------------------------------------

    def add_processing(self, url: str, title: str, timestamp: int) -> None:
        """
        Create a processing entry if none exists.

        An entry that is being retried keeps its attempts; a 'failed' entry
        starts over at zero.
        """
        with self._lock:
            self._conn.execute("""
                INSERT INTO processing
                (url, title, timestamp, status, attempts, last_error, updated_at)
                VALUES (?, ?, ?, 'processing', 0, NULL, ?)
                ON CONFLICT(url) DO UPDATE SET
                    title = excluded.title,
                    timestamp = excluded.timestamp,
                    status = 'processing',
                    attempts = 0,
                    last_error = NULL,
                    updated_at = excluded.updated_at
                WHERE processing.status = 'failed'
            """, (url, title or "", int(timestamp), now_ms()))
            self._conn.commit()

    def update_processing(
        self,
        url: str,
        *,
        status: Optional[str] = None,
        attempts: Optional[int] = None,
        last_error: Optional[str] = None,
    ) -> None:
        """Update fields of an existing processing entry (no-op if absent)."""
        if status is not None and status not in STATUSES:
            raise ValueError(f"Unknown processing status: {status}")
        sets = ["updated_at = ?"]
        params: list = [now_ms()]
        if status is not None:
            sets.append("status = ?")
            params.append(status)
        if attempts is not None:
            sets.append("attempts = ?")
            params.append(attempts)
        if last_error is not None:
            sets.append("last_error = ?")
            params.append(last_error)
        params.append(url)
        with self._lock:
            self._conn.execute(
                f"UPDATE processing SET {', '.join(sets)} WHERE url = ?", params
            )
            self._conn.commit()

    def record_failure(self, url: str, error: str) -> int:
        """
        Increment the attempt counter and mark the entry as errored.

        Creates the entry if it is missing. Returns the new attempt count.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT attempts FROM processing WHERE url = ?", (url,)
            ).fetchone()
            attempts = (row[0] if row else 0) + 1
            now = now_ms()
            if row is None:
                self._conn.execute("""
                    INSERT INTO processing
                    (url, title, timestamp, status, attempts, last_error, updated_at)
                    VALUES (?, '', ?, 'error', ?, ?, ?)
                """, (url, now, attempts, error, now))
            else:
                self._conn.execute("""
                    UPDATE processing
                    SET status = 'error', attempts = ?, last_error = ?, updated_at = ?
                    WHERE url = ?
                """, (attempts, error, now, url))
            self._conn.commit()
        return attempts

    def abandon(self, url: str, error: Optional[str] = None) -> None:
        """Move an entry to 'failed' (dead letter) and discard its payload."""
        with self._lock:
            self._conn.execute("""
                UPDATE processing
                SET status = 'failed', last_error = COALESCE(?, last_error), updated_at = ?
                WHERE url = ?
            """, (error, now_ms(), url))
            self._conn.execute("DELETE FROM pending_captures WHERE url = ?", (url,))
            self._conn.commit()
        logger.warning("Abandoned capture %s: %s", url, error or "max attempts")

    def remove_processing(self, url: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM processing WHERE url = ?", (url,))
            self._conn.commit()

    def get_processing(self, url: str) -> Optional[ProcessingEntry]:
        with self._lock:
            row = self._conn.execute("""
                SELECT url, title, timestamp, status, attempts, last_error
                FROM processing WHERE url = ?
            """, (url,)).fetchone()
        return ProcessingEntry(*row) if row else None

    def list_processing(self) -> list[ProcessingEntry]:
        """Processing entries, most recently updated first."""
        with self._lock:
            rows = self._conn.execute("""
                SELECT url, title, timestamp, status, attempts, last_error
                FROM processing
                ORDER BY updated_at DESC
                LIMIT ?
            """, (MAX_LISTED,)).fetchall()
        return [ProcessingEntry(*r) for r in rows]

    def list_failed(self) -> list[ProcessingEntry]:
        """Entries in failed (dead letter) status."""
        with self._lock:
            rows = self._conn.execute("""
                SELECT url, title, timestamp, status, attempts, last_error
                FROM processing
                WHERE status = 'failed'
                ORDER BY updated_at ASC
            """).fetchall()
        return [ProcessingEntry(*r) for r in rows]

    def stats(self) -> dict:
        """Entry counts by status plus the number of stored payloads."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) FROM processing GROUP BY status"
            ).fetchall()
            payloads = self._conn.execute(
                "SELECT COUNT(*) FROM pending_captures"
            ).fetchone()[0]
        by_status = {row[0]: row[1] for row in rows}
        out = {status: by_status.get(status, 0) for status in STATUSES}
        out["payloads"] = payloads
        out["db_path"] = str(self._db_path)
        return out

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
