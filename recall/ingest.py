"""
Capture ingestion and the version merger.

A capture either refreshes the timestamp of an unchanged page, overwrites
the latest version of a page whose content barely moved, or appends a new
version (evicting the oldest beyond the configured maximum).
"""

import dataclasses
import logging
import sqlite3
from typing import Optional

from .config import StoreConfig
from .document_store import PageStore
from .embedder import Embedder, with_retry
from .errors import CaptureError, IncompatibleEmbeddingError, ProviderError
from .providers.base import ChatProvider
from .types import (
    CaptureMessage,
    Item,
    PageRecord,
    Version,
    canonicalize_url,
    content_hash,
    normalize_text,
)
from .vectors import cosine_similarity, item_centroid

logger = logging.getLogger(__name__)


def merge_version(
    doc: Optional[PageRecord],
    version: Version,
    *,
    canonical_url: str,
    url: str,
    title: str,
    max_versions: int = 3,
    similarity_threshold: float = 0.98,
) -> PageRecord:
    """
    Merge a version into a page record without touching storage.

    Returns a new record; ``doc`` is not modified. An unchanged hash only
    moves the latest timestamp forward. Otherwise a centroid at least
    ``similarity_threshold`` similar to the latest one overwrites the latest
    version, and anything else is appended.
    """
    if doc is None or not doc.versions:
        record = PageRecord(
            canonical_url=canonical_url,
            url=url,
            title=title,
            timestamp=version.timestamp,
            versions=[version],
            latest_version_index=0,
            id=doc.id if doc is not None else None,
        )
        record.sync_latest()
        return record

    versions = list(doc.versions)
    idx = doc.latest_version_index
    if not 0 <= idx < len(versions):
        idx = len(versions) - 1
    latest = versions[idx]

    if latest.hash is not None and latest.hash == version.hash:
        versions[idx] = dataclasses.replace(
            latest, timestamp=max(latest.timestamp, version.timestamp)
        )
    else:
        similar = (
            latest.centroid is not None
            and version.centroid is not None
            and cosine_similarity(latest.centroid, version.centroid) >= similarity_threshold
        )
        if similar:
            versions[idx] = version
        else:
            versions.append(version)
            idx = len(versions) - 1
            keep = max(1, int(max_versions))
            if len(versions) > keep:
                dropped = len(versions) - keep
                versions = versions[dropped:]
                idx = max(0, idx - dropped)

    record = dataclasses.replace(
        doc,
        canonical_url=canonical_url,
        url=url or doc.url,
        title=title or doc.title,
        versions=versions,
        latest_version_index=idx,
    )
    record.sync_latest()
    return record


class Ingestor:
    """
    Turns capture messages into stored page versions.

    Runs on the capture queue's worker thread; one page at a time.
    """

    def __init__(
        self,
        store: PageStore,
        embedder: Embedder,
        chat: Optional[ChatProvider],
        config: StoreConfig,
        *,
        retry_delay: float = 1.0,
    ):
        self.store = store
        self.embedder = embedder
        self.chat = chat
        self.config = config
        self.retry_delay = retry_delay

    def process(self, message: CaptureMessage) -> PageRecord:
        """
        Ingest one capture message and return the stored record.

        Raises:
            CaptureError: Malformed message (no URL)
            ProviderError: No chunk could be embedded
            IncompatibleEmbeddingError: Every embedding had the wrong dimension
        """
        if not message.url:
            raise CaptureError("Capture message has no url")
        url = message.url
        canonical = canonicalize_url(url)
        normalized = normalize_text(message.text)
        chunks = [c for c in message.chunks if isinstance(c, str) and c.strip()]
        if not chunks:
            chunks = [normalized] if normalized else []
        page_hash = content_hash(normalized)

        doc = self.store.get_by_canonical_url(canonical)
        if doc is not None and doc.latest is not None and doc.latest.hash == page_hash:
            return self._touch(doc, message)

        items = self._embed_chunks(chunks)
        summary = self.summarize(normalized) if normalized else ""
        version = Version(
            timestamp=message.timestamp,
            hash=page_hash,
            items=items,
            centroid=item_centroid(items),
            summary=summary,
        )
        record = self.upsert_version(canonical, url, message.title, version, doc=doc)
        logger.info("Stored %s (%d chunks, %d versions)",
                    url, len(items), len(record.versions))
        return record

    def _touch(self, doc: PageRecord, message: CaptureMessage) -> PageRecord:
        """Unchanged content: refresh timestamp, title and URL only."""
        idx = doc.latest_version_index
        if not 0 <= idx < len(doc.versions):
            idx = len(doc.versions) - 1
        doc.versions[idx].timestamp = message.timestamp
        doc.latest_version_index = idx
        doc.title = message.title or doc.title
        doc.url = message.url or doc.url
        doc.sync_latest()
        self.store.save(doc)
        logger.debug("Unchanged content for %s, timestamp refreshed", message.url)
        return doc

    def _embed_chunks(self, chunks: list[str]) -> list[Item]:
        if not chunks:
            return []
        vectors, rejected = self.embedder.filter_dims(
            self.embedder.embed_raw(chunks, retries=2)
        )
        items = [Item(text=c, embedding=v) for c, v in zip(chunks, vectors) if v]
        if not items:
            meta = self.store.get_embedding_meta()
            if rejected is not None and meta is not None:
                raise IncompatibleEmbeddingError(meta.dim, rejected)
            raise ProviderError(f"No chunk of {len(chunks)} could be embedded")
        if len(items) < len(chunks):
            logger.warning("Embedded %d of %d chunks", len(items), len(chunks))
        return items

    def summarize(self, text: str, *, retries: int = 1) -> str:
        """Page summary via the chat provider; empty on failure or without a chat model."""
        if self.chat is None or not text:
            return ""
        try:
            return with_retry(
                lambda: self.chat.summarize(text),
                retries=retries, delay=self.retry_delay * 1.2, what="summarize",
            ) or ""
        except ProviderError as e:
            logger.warning("Summary failed: %s", e)
            return ""

    def upsert_version(
        self,
        canonical_url: str,
        url: str,
        title: str,
        version: Version,
        *,
        doc: Optional[PageRecord] = None,
    ) -> PageRecord:
        """Merge ``version`` into the stored record for ``canonical_url`` and write it."""
        if doc is None:
            doc = self.store.get_by_canonical_url(canonical_url)
        record = self._merge(doc, canonical_url, url, title, version)
        try:
            self.store.save(record)
        except sqlite3.IntegrityError:
            # Created concurrently (e.g. by an import); merge into that one
            doc = self.store.get_by_canonical_url(canonical_url)
            record = self._merge(doc, canonical_url, url, title, version)
            self.store.save(record)
        return record

    def _merge(self, doc, canonical_url, url, title, version) -> PageRecord:
        return merge_version(
            doc,
            version,
            canonical_url=canonical_url,
            url=url,
            title=title,
            max_versions=self.config.versioning.max_versions,
            similarity_threshold=self.config.versioning.similarity_threshold,
        )

    def ensure_version_data(self, version: Version, *, fill_summary: bool = False) -> Version:
        """
        Fill in what a version is missing: item embeddings, centroid, hash
        and (optionally) summary. Mutates and returns ``version``.
        """
        missing = [it for it in version.items if not it.embedding and it.text]
        if missing:
            vectors = self.embedder.embed_many([it.text for it in missing])
            for it, vec in zip(missing, vectors):
                if vec:
                    it.embedding = vec
        if version.centroid is None:
            version.centroid = item_centroid(version.items)
        if version.hash is None:
            version.hash = content_hash(" ".join(it.text for it in version.items))
        if fill_summary and not version.summary:
            version.summary = self.summarize(normalize_text(version.text()))
        return version
