"""
Daily highlights: a short digest of the pages captured on a date.

Digests are cached per date together with the number of pages they were
built from; a cached digest is used only while that number still matches.
Pages without a summary are handed to the SummaryBackfill worker, which
summarizes them in the background and drops the cached digest so the next
request picks the new summary up.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from .document_store import PageStore
from .errors import ProviderError, log_exception
from .types import HighlightDate, domain_of, normalize_text

logger = logging.getLogger(__name__)

NO_PAGES_MESSAGE = "No pages captured for this date."
DIGEST_PAGES = 5
DEFAULT_DATES_LIMIT = 30
MAX_DATES_LIMIT = 1000


def validate_date(date: str) -> str:
    """Return ``date`` if it is YYYY-MM-DD, else raise ValueError."""
    datetime.strptime(date, "%Y-%m-%d")
    return date


class SummaryBackfill:
    """
    Background worker that fills in missing page summaries.

    Jobs are deduplicated by page id. A job whose summary comes back empty
    (or fails) is retried with exponential backoff, at most ``max_attempts``
    times in total.
    """

    def __init__(
        self,
        store: PageStore,
        summarize: Callable[[str], str],
        *,
        max_attempts: int = 3,
        retry_backoff: float = 1.0,
    ):
        self.store = store
        self._summarize = summarize
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff

        self._jobs: list[tuple[int, str, int]] = []  # (page id, date, attempt)
        self._active: set[int] = set()
        self._timers: dict[int, threading.Timer] = {}
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def enqueue(self, page_id: int, date: str, attempt: int = 1) -> bool:
        with self._cond:
            if self._stop.is_set() or page_id in self._active:
                return False
            self._active.add(page_id)
            self._jobs.append((page_id, date, attempt))
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._run, name="recall-summaries", daemon=True
                )
                self._thread.start()
            self._cond.notify_all()
        return True

    def drain(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._active:
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    self._cond.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        with self._cond:
            self._stop.set()
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._cond.notify_all()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._jobs and not self._stop.is_set():
                    self._cond.wait()
                if self._stop.is_set():
                    return
                page_id, date, attempt = self._jobs.pop(0)
            retry = False
            try:
                retry = not self._fill(page_id, date)
            except ProviderError as e:
                logger.warning("Summary backfill for page %d failed: %s", page_id, e)
                retry = True
            except Exception as e:
                log_exception(e, f"summary backfill for page {page_id}")
                logger.error("Summary backfill for page %d crashed: %s", page_id, e)
            finally:
                with self._cond:
                    if retry and attempt < self.max_attempts and not self._stop.is_set():
                        self._schedule(page_id, date, attempt)
                    else:
                        self._active.discard(page_id)
                    self._cond.notify_all()

    def _schedule(self, page_id: int, date: str, attempt: int) -> None:
        # Caller holds self._cond; page stays in _active until the retry runs
        backoff = self.retry_backoff * (2 ** (attempt - 1))
        timer = threading.Timer(backoff, self._requeue, args=(page_id, date, attempt + 1))
        timer.daemon = True
        self._timers[page_id] = timer
        timer.start()

    def _requeue(self, page_id: int, date: str, attempt: int) -> None:
        with self._cond:
            if self._timers.get(page_id) is not threading.current_thread():
                return
            del self._timers[page_id]
            self._jobs.append((page_id, date, attempt))
            self._cond.notify_all()

    def _fill(self, page_id: int, date: str) -> bool:
        """Summarize one page. Returns False when the summary came back empty."""
        page = self.store.get(page_id)
        if page is None or page.summary:
            return True
        text = normalize_text(page.text())
        if not text:
            return True
        summary = (self._summarize(text) or "").strip()
        if not summary:
            return False
        latest = page.latest
        if latest is not None:
            latest.summary = summary
            page.sync_latest()
        else:
            page.summary = summary
        self.store.put(page)
        self.store.remove_highlight(date)
        logger.info("Backfilled summary for page %d (%s)", page_id, date)
        return True


class Highlights:
    """Per-date digests and the list of dates with captures."""

    def __init__(self, store: PageStore, backfill: Optional[SummaryBackfill] = None):
        self.store = store
        self.backfill = backfill

    def digest(self, date: str) -> str:
        validate_date(date)
        pages = self.store.get_by_date(date)
        cached = self.store.get_highlight(date)
        if cached is not None and cached["count"] == len(pages):
            return cached["text"]
        if not pages:
            self.store.set_highlight(date, NO_PAGES_MESSAGE, 0)
            return NO_PAGES_MESSAGE

        lines = []
        missing = []
        for page in pages[:DIGEST_PAGES]:
            summary = (page.summary or "").strip()
            if not summary and page.id is not None:
                missing.append(page.id)
            domain = domain_of(page.url)
            label = page.title or page.url
            if domain:
                label += f" (domain: {domain})"
            lines.append(f"• {label}: {summary or '(summary pending)'}")
        text = "\n\n".join(lines)
        self.store.set_highlight(date, text, len(pages))
        # Cache first: a finished backfill removes the cached digest
        if self.backfill is not None:
            for page_id in missing:
                self.backfill.enqueue(page_id, date)
        return text

    def dates(
        self,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        offset: int = 0,
        limit: int = DEFAULT_DATES_LIMIT,
    ) -> tuple[list[HighlightDate], int]:
        """Dates with captures, newest first, and the total before paging."""
        counts = self.store.count_by_date()
        days = sorted(counts, reverse=True)
        if date_from:
            days = [d for d in days if d >= validate_date(date_from)]
        if date_to:
            days = [d for d in days if d <= validate_date(date_to)]
        total = len(days)
        limit = max(1, min(MAX_DATES_LIMIT, int(limit or DEFAULT_DATES_LIMIT)))
        offset = max(0, int(offset or 0))
        page = days[offset:offset + limit]
        return [HighlightDate(d, counts[d]) for d in page], total
