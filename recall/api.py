"""
Core API for the page memory.

The Recall facade wires the stores, providers and workers together:
- capture(): queue a captured page → embed → summarize → merge into versions
- search(): two-stage retrieval → LLM rerank → calibration
- ask(): decompose → retrieve → extract cited bullets (with tools) → compose
"""

import logging
from pathlib import Path
from typing import Iterator, Optional, Union
from urllib.parse import urlsplit

from .ask import Answerer
from .capture_queue import CaptureQueue
from .config import CaptureConfig, StoreConfig, get_default_store_path, load_or_create_config
from .document_store import PageStore
from .embedder import Embedder
from .errors import CaptureError, RecallError
from .highlights import Highlights, SummaryBackfill
from .ingest import Ingestor
from .logging_config import configure_ops_log, remove_ops_log
from .pending_captures import PendingCaptureStore
from .providers.base import ChatProvider, EmbeddingProvider, get_registry
from .rerank import Reranker
from .search import CentroidIndex, Retriever
from .transfer import export_data, export_iter, import_data
from .types import (
    AskResult,
    CaptureMessage,
    EmbeddingMeta,
    HighlightDate,
    ImportResult,
    PageRecord,
    ProcessingEntry,
    SearchHit,
    local_date,
    now_ms,
)

logger = logging.getLogger(__name__)

PAGES_DB = "recall.db"
PENDING_DB = "capture_queue.db"

NO_PAYLOAD_MESSAGE = (
    "No pending payload for this URL. Try opening the page and using Capture Now."
)


def matches_domain(host: str, pattern: str) -> bool:
    """
    Match a hostname against a capture rule.

    ``*.example.com`` matches subdomains of example.com; a bare
    ``example.com`` matches itself and its subdomains.
    """
    host = (host or "").lower().strip(".")
    pattern = (pattern or "").lower().strip()
    if not host or not pattern:
        return False
    if pattern.startswith("*."):
        return host.endswith(pattern[1:])
    return host == pattern or host.endswith("." + pattern)


def should_capture(url: str, rules: CaptureConfig) -> bool:
    """Whether the capture rules allow ``url``."""
    if rules.paused:
        return False
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return False
    if rules.whitelist:
        return any(matches_domain(host, p) for p in rules.whitelist)
    return not any(matches_domain(host, p) for p in rules.blacklist)


class Recall:
    """
    Local semantic memory of visited web pages.

    Example:
        with Recall() as rc:
            rc.capture({"url": "https://example.com/", "title": "Example",
                        "text": "..."})
            rc.drain()
            hits = rc.search("example domain")
    """

    def __init__(
        self,
        store_path: Optional[Union[str, Path]] = None,
        *,
        config: Optional[StoreConfig] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        chat_provider: Optional[ChatProvider] = None,
        retry_delay: float = 1.0,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Uses RECALL_STORE_PATH or ~/.recall
                if not specified.
            config: Pre-loaded StoreConfig (skips filesystem config discovery)
            embedding_provider: Injected embedding provider (skips the registry)
            chat_provider: Injected chat provider (skips the registry)
            retry_delay: Base delay in seconds for provider call retries
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
            self._store_path = Path(config.path)
        else:
            self._store_path = (
                Path(store_path).expanduser().resolve()
                if store_path is not None else get_default_store_path()
            )
            self._config = load_or_create_config(self._store_path)

        # --- Persistent operations log ---
        self._ops_log_handler = configure_ops_log(self._store_path)

        # --- Storage ---
        self._store = PageStore(self._store_path / PAGES_DB)
        self._pending = PendingCaptureStore(self._store_path / PENDING_DB)

        # --- Providers ---
        registry = get_registry()
        if embedding_provider is None:
            embedding_provider = registry.create_embedding(
                self._config.embedding.name, self._config.embedding.params,
            )
        if chat_provider is None:
            chat_provider = registry.create_chat(
                self._config.chat.name, self._config.chat.params,
            )
        self._chat = chat_provider
        self._embedder = Embedder(embedding_provider, self._store, retry_delay=retry_delay)

        # --- Pipeline ---
        capture_cfg = self._config.capture
        self._index = CentroidIndex(self._store)
        self._ingestor = Ingestor(
            self._store, self._embedder, self._chat, self._config, retry_delay=retry_delay,
        )
        self._queue = CaptureQueue(
            self._ingestor.process,
            self._pending,
            max_attempts=capture_cfg.max_attempts,
            retry_backoff=capture_cfg.retry_backoff,
        )
        self._retriever = Retriever(
            self._store,
            self._embedder,
            self._index,
            self._config,
            chat=self._chat,
            reranker=Reranker(self._chat),
        )
        self._answerer = Answerer(
            self._retriever, self._store, self._embedder, self._chat, self._config,
        )
        self._backfill = None
        if self._chat is not None:
            self._backfill = SummaryBackfill(
                self._store,
                self._ingestor.summarize,
                max_attempts=capture_cfg.max_attempts,
                retry_backoff=capture_cfg.retry_backoff,
            )
        self._highlights = Highlights(self._store, self._backfill)

        self._store.subscribe(self._on_page_change)

    def _on_page_change(
        self,
        event: str,
        record: Optional[PageRecord],
        previous: Optional[PageRecord],
    ) -> None:
        self._index.invalidate()
        dates = {local_date(r.timestamp) for r in (record, previous) if r is not None}
        for date in dates:
            if date:
                self._store.remove_highlight(date)

    @property
    def config(self) -> StoreConfig:
        """Public access to store configuration."""
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def should_capture(self, url: str) -> bool:
        return should_capture(url, self._config.capture)

    def capture(
        self,
        message: Union[CaptureMessage, dict],
        *,
        delay: float = 0.0,
    ) -> bool:
        """
        Queue a captured page for ingestion.

        Returns False when the capture rules reject the URL (``force``
        bypasses them) or the URL is being ingested right now.

        Raises:
            CaptureError: If the message has no URL
        """
        if isinstance(message, dict):
            message = CaptureMessage.from_dict(message)
        if not message.url:
            raise CaptureError("Capture message has no url")
        if not message.force and not self.should_capture(message.url):
            logger.info("Capture skipped by rules: %s", message.url)
            return False
        self._pending.save_payload(message)
        return self._queue.enqueue(message, delay)

    def processing(self) -> list[ProcessingEntry]:
        """Captures in flight, retrying or failed."""
        return self._pending.list_processing()

    def failed_captures(self) -> list[ProcessingEntry]:
        """Captures that exhausted their attempts, oldest first."""
        return self._pending.list_failed()

    def processing_stats(self) -> dict:
        """Processing entry counts by status and the number of saved payloads."""
        return self._pending.stats()

    def retry_capture(self, url: str, message: Optional[CaptureMessage] = None) -> bool:
        """
        Re-queue a capture from its persisted payload (or ``message``).

        Raises:
            RecallError: If there is no payload for the URL
        """
        payload = message or self._pending.get_payload(url)
        if payload is None:
            raise RecallError(NO_PAYLOAD_MESSAGE)
        self._pending.remove_processing(url)
        self._pending.save_payload(payload)
        return self._queue.enqueue(payload)

    def cancel_capture(self, url: str) -> bool:
        return self._queue.cancel(url)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued captures (and summary backfills) to finish."""
        idle = self._queue.drain(timeout)
        if self._backfill is not None:
            idle = self._backfill.drain(timeout) and idle
        return idle

    # -------------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------------

    def search(self, query: str, limit: int = 10) -> list[SearchHit]:
        return self._retriever.search(query, limit)

    def quick_search(self, query: str, limit: int = 5) -> list[SearchHit]:
        return self._retriever.quick_search(query, limit)

    def ask(self, question: str) -> AskResult:
        return self._answerer.ask(question)

    # -------------------------------------------------------------------------
    # Highlights
    # -------------------------------------------------------------------------

    def highlights(self, date: Optional[str] = None) -> str:
        """Digest of the pages captured on ``date`` (default today)."""
        return self._highlights.digest(date or local_date(now_ms()))

    def highlight_dates(
        self,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        offset: int = 0,
        limit: int = 30,
    ) -> tuple[list[HighlightDate], int]:
        return self._highlights.dates(date_from, date_to, offset, limit)

    # -------------------------------------------------------------------------
    # Pages
    # -------------------------------------------------------------------------

    def list_pages(self) -> list[dict]:
        return self._store.list_pages()

    def get_page(self, id: int) -> Optional[PageRecord]:
        return self._store.get(id)

    def delete_page(self, id: int) -> bool:
        return self._store.delete(id) is not None

    def delete_by_url(self, url: str) -> int:
        return len(self._store.delete_by_url(url))

    def embedding_meta(self) -> Optional[EmbeddingMeta]:
        return self._store.get_embedding_meta()

    def backfill(self, ids: Optional[list[int]] = None) -> int:
        """
        Fill in missing embeddings, centroids, hashes and summaries.

        Returns the number of pages rewritten.
        """
        records = self._store.get_by_ids(ids) if ids is not None else self._store.get_all()
        done = 0
        for record in records:
            try:
                for version in record.versions:
                    self._ingestor.ensure_version_data(version, fill_summary=True)
                record.sync_latest()
                self._store.put(record)
                done += 1
            except (RecallError, KeyError) as e:
                logger.warning("Backfill of page %s failed: %s", record.id, e)
        logger.info("Backfilled %d of %d pages", done, len(records))
        return done

    # -------------------------------------------------------------------------
    # Data Export / Import
    # -------------------------------------------------------------------------

    def export_iter(self) -> Iterator[dict]:
        return export_iter(self._store)

    def export_data(self) -> dict:
        return export_data(self._store)

    def import_data(self, data) -> ImportResult:
        return import_data(data, self._store, self._ingestor)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Stop the workers, close the stores and detach the ops log."""
        if getattr(self, "_queue", None) is not None:
            self._queue.close()
        if getattr(self, "_backfill", None) is not None:
            self._backfill.close()
        if getattr(self, "_store", None) is not None:
            self._store.close()
        if getattr(self, "_pending", None) is not None:
            self._pending.close()
        if getattr(self, "_ops_log_handler", None) is not None:
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass  # Suppress errors during garbage collection
