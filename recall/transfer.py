"""
Export and import of the page memory.

The export format is::

    {"schemaVersion": 1, "exportedAt": "...", "embeddingMeta": {"model", "dim"},
     "pages": [<page record>, ...]}

Import is tolerant: a bare array of pages is accepted, and pages from older
or foreign exports may use alternate key names (``href``, ``history``,
``chunks``, ``vector`` ...). Embeddings are kept when their dimension
matches the store; missing ones are computed.
"""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterator, Optional

from .document_store import PageStore
from .errors import ImportFormatError
from .types import (
    ImportResult,
    Item,
    Version,
    canonicalize_url,
    now_ms,
)
from .vectors import item_centroid

if TYPE_CHECKING:
    from .ingest import Ingestor

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def export_iter(store: PageStore) -> Iterator[dict]:
    """
    Stream the export: a header dict first, then one dict per page.

    The header carries ``schemaVersion``, ``exportedAt`` and, when known,
    ``embeddingMeta``.
    """
    header: dict[str, Any] = {
        "schemaVersion": SCHEMA_VERSION,
        "exportedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }
    meta = store.get_embedding_meta()
    if meta is not None:
        header["embeddingMeta"] = {"model": meta.model, "dim": meta.dim}
    yield header
    for record in store.get_all():
        yield record.to_dict()


def export_data(store: PageStore) -> dict:
    """The whole export as one dict (header plus a ``pages`` list)."""
    it = export_iter(store)
    data = next(it)
    data["pages"] = list(it)
    return data


# -----------------------------------------------------------------------------
# Tolerant page mapping
# -----------------------------------------------------------------------------

def _first(d: dict, *keys, default=None):
    for key in keys:
        value = d.get(key)
        if value not in (None, ""):
            return value
    return default


def _as_ts(value, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            return fallback
    return fallback


def map_item(src) -> Optional[Item]:
    if isinstance(src, str):
        return Item(text=src) if src.strip() else None
    if not isinstance(src, dict):
        return None
    text = _first(src, "text", "snippet", "content", "chunk", "body", default="")
    if not isinstance(text, str) or not text.strip():
        return None
    embedding = _first(src, "embedding", "vector", "vec")
    if not isinstance(embedding, list) or not embedding:
        embedding = None
    return Item(text=text, embedding=embedding)


def map_version(src: dict, fallback_ts: int) -> Version:
    raw_items = _first(src, "items", "chunks", "passages", default=[])
    items = [it for it in (map_item(x) for x in raw_items or []) if it is not None]
    raw_hash = src.get("hash")
    centroid = src.get("centroid")
    return Version(
        timestamp=_as_ts(_first(src, "timestamp", "time", "capturedAt"), fallback_ts),
        hash=int(raw_hash) if isinstance(raw_hash, (int, float)) and not isinstance(raw_hash, bool) else None,
        items=items,
        centroid=centroid if isinstance(centroid, list) and centroid else None,
        summary=src.get("summary") if isinstance(src.get("summary"), str) else "",
    )


def map_page(src: dict) -> tuple[str, str, str, list[Version]]:
    """(canonical URL, URL, title, versions sorted by timestamp) for an imported page."""
    if not isinstance(src, dict):
        raise ImportFormatError("page entry is not an object")
    url = _first(src, "url", "href")
    if not isinstance(url, str) or not url:
        raise ImportFormatError("page entry has no url")
    title = _first(src, "title", "name", default=url)
    canonical = _first(src, "canonicalUrl", "canonical") or canonicalize_url(url)
    fallback_ts = _as_ts(src.get("timestamp"), now_ms())
    raw_versions = _first(src, "versions", "history", "snapshots")
    if isinstance(raw_versions, list) and raw_versions:
        versions = [map_version(v, fallback_ts) for v in raw_versions if isinstance(v, dict)]
    else:
        single = map_version(src, fallback_ts)
        if not single.summary and isinstance(src.get("summary"), str):
            single.summary = src["summary"]
        versions = [single]
    versions.sort(key=lambda v: v.timestamp)
    return canonical, url, str(title), versions


# -----------------------------------------------------------------------------
# Import
# -----------------------------------------------------------------------------

def import_data(data, store: PageStore, ingestor: "Ingestor") -> ImportResult:
    """
    Merge exported pages into the store, version by version.

    Versions whose embeddings all have the wrong dimension are skipped and
    counted; a page that fails to import is counted and the rest continue.
    """
    if isinstance(data, list):
        pages = data
        incoming_meta = None
    elif isinstance(data, dict):
        schema = data.get("schemaVersion", 0)
        if isinstance(schema, (int, float)) and schema > SCHEMA_VERSION:
            logger.warning("Import schemaVersion %s is newer than %d; attempting anyway",
                           schema, SCHEMA_VERSION)
        pages = data.get("pages")
        incoming_meta = data.get("embeddingMeta")
    else:
        raise ImportFormatError("Import data must be a list of pages or an export object")
    if not isinstance(pages, list):
        raise ImportFormatError("Import data has no pages list")

    if isinstance(incoming_meta, dict) and store.get_embedding_meta() is None:
        dim = incoming_meta.get("dim")
        if isinstance(dim, int) and dim > 0:
            store.ensure_embedding_meta(incoming_meta.get("model"), dim)

    result = ImportResult()
    for src in pages:
        try:
            canonical, url, title, versions = map_page(src)
            imported_any = False
            for version in versions:
                ingestor.ensure_version_data(version, fill_summary=True)
                if not _fit_dimension(version, store, incoming_meta, ingestor):
                    result.skipped_incompatible += 1
                    continue
                ingestor.upsert_version(canonical, url, title, version)
                imported_any = True
            if imported_any:
                result.imported += 1
        except Exception as e:
            result.failed += 1
            logger.warning("Import of page %r failed: %s",
                           src.get("url") if isinstance(src, dict) else src, e)
    logger.info("Import: %d imported, %d versions skipped (dimension), %d failed",
                result.imported, result.skipped_incompatible, result.failed)
    return result


def _fit_dimension(version: Version, store: PageStore, incoming_meta, ingestor: "Ingestor") -> bool:
    """
    Drop items whose embedding dimension disagrees with the store.

    Without stored metadata the dimension of the first embedded item is
    adopted. Returns False when nothing embedded is left.
    """
    meta = store.get_embedding_meta()
    if meta is None:
        first = next((it.embedding for it in version.items if it.embedding), None)
        if first is None:
            return True
        model = incoming_meta.get("model") if isinstance(incoming_meta, dict) else None
        store.ensure_embedding_meta(model or ingestor.embedder.model_name, len(first))
        meta = store.get_embedding_meta()
    embedded = [it for it in version.items if it.embedding]
    kept = [it for it in version.items if not it.embedding or len(it.embedding) == meta.dim]
    if embedded and not any(it.embedding and len(it.embedding) == meta.dim for it in kept):
        return False
    if len(kept) != len(version.items):
        version.items = kept
        version.centroid = item_centroid(kept)
    elif version.centroid is not None and len(version.centroid) != meta.dim:
        version.centroid = item_centroid(kept)
    return True
