"""
Two-stage semantic retrieval over stored pages.

Stage 1 ranks pages by the similarity of their latest centroid to the query
(decayed by recency) and adds pages whose title mentions a query term.
Stage 2 scores every chunk of every version of those pages with a blend of
semantic similarity, lexical matches and recency.
"""

import logging
import re
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from .config import SearchConfig, StoreConfig
from .document_store import PageStore
from .embedder import Embedder
from .errors import ProviderError, ProviderUnavailable
from .providers.base import ChatMessage, ChatProvider
from .types import SearchHit
from .vectors import cosine_similarity, item_centroid, recency_weight

if TYPE_CHECKING:
    from .rerank import Reranker

logger = logging.getLogger(__name__)

SNIPPET_LIMIT = 200
_SNIPPET_TAIL_RE = re.compile(r"[\s.,;:!-]+$")
_TOKEN_SPLIT_RE = re.compile(r"\W+")

REWRITE_SYSTEM_PROMPT = (
    "You are a helpful assistant that rewrites search queries into semantically "
    "similar variations. You must only return the requested number of distinct "
    "queries, each on its own line."
)

DAY_MS = 24 * 60 * 60 * 1000


def make_snippet(text: str, limit: int = SNIPPET_LIMIT) -> str:
    """Trim text to ``limit`` characters at a word boundary when one is close."""
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    cut = text[:limit]
    space = cut.rfind(" ")
    if space > limit * 0.75:
        cut = cut[:space]
    return _SNIPPET_TAIL_RE.sub("", cut) + "…"


def query_tokens(query: str) -> list[str]:
    """Lowercased query terms of at least three characters."""
    return [t for t in _TOKEN_SPLIT_RE.split((query or "").lower().strip()) if len(t) >= 3]


def generate_query_variations(chat: Optional[ChatProvider], query: str, n: int = 3) -> list[str]:
    """The query plus up to ``n`` distinct rewrites from the chat model."""
    variations = [query]
    if chat is None or n <= 0:
        return variations
    try:
        reply = chat.chat([
            ChatMessage("system", REWRITE_SYSTEM_PROMPT),
            ChatMessage("user", (
                f"Rewrite the following search query into {n} semantically similar "
                f"queries. List each on a separate line without numbering.\n\nQuery: {query}"
            )),
        ])
    except ProviderError as e:
        logger.info("Query rewrite failed, using the original query: %s", e)
        return variations
    for line in reply.content.splitlines():
        line = line.strip()
        if line and line not in variations:
            variations.append(line)
        if len(variations) >= n + 1:
            break
    return variations


# -----------------------------------------------------------------------------
# Centroid index
# -----------------------------------------------------------------------------

@dataclass
class IndexEntry:
    id: int
    title: str
    centroid: Optional[list[float]]
    timestamp: int


class CentroidIndex:
    """
    In-memory cache of per-page latest centroids for the stage-1 prefilter.

    Built lazily from the store; invalidate() after any page mutation.
    """

    def __init__(self, store: PageStore):
        self.store = store
        self._entries: Optional[list[IndexEntry]] = None
        self._generation = 0
        self._lock = threading.Lock()

    def invalidate(self) -> None:
        with self._lock:
            self._entries = None
            self._generation += 1

    def entries(self) -> list[IndexEntry]:
        with self._lock:
            if self._entries is not None:
                return self._entries
            generation = self._generation
        built = []
        for record in self.store.get_all():
            latest = record.latest
            centroid = record.centroid
            if centroid is None and latest is not None:
                centroid = latest.centroid or item_centroid(latest.items)
            ts = latest.timestamp if latest is not None else record.timestamp
            built.append(IndexEntry(record.id, record.title or "", centroid, ts or record.timestamp))
        with self._lock:
            # A mutation during the build makes this snapshot stale
            if generation == self._generation:
                self._entries = built
        logger.debug("Centroid index built: %d pages", len(built))
        return built


# -----------------------------------------------------------------------------
# Retriever
# -----------------------------------------------------------------------------

class Retriever:
    """Query-time retrieval: variations, embeddings, both stages, rerank."""

    def __init__(
        self,
        store: PageStore,
        embedder: Embedder,
        index: CentroidIndex,
        config: StoreConfig,
        *,
        chat: Optional[ChatProvider] = None,
        reranker: Optional["Reranker"] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.index = index
        self.config = config
        self.chat = chat
        self.reranker = reranker

    @property
    def _search_config(self) -> SearchConfig:
        return self.config.search

    def search(self, query: str, limit: int = 10) -> list[SearchHit]:
        """
        Reranked and calibrated hits, best first.

        Raises:
            ProviderUnavailable: No query embedding and the provider is down
        """
        from .rerank import calibrate

        query = (query or "").strip()
        if not query or limit <= 0:
            return []
        candidates = self._candidates(query)
        top = candidates[:limit * 2]
        if self._search_config.rerank and self.reranker is not None:
            top = self.reranker.rerank(query, top)
        w_sim, w_llm = self.config.calibration.normalized()
        calibrate(top, w_sim, w_llm)
        return top[:limit]

    def quick_search(self, query: str, limit: int = 5) -> list[SearchHit]:
        """Both retrieval stages without reranking or calibration."""
        query = (query or "").strip()
        if not query or limit <= 0:
            return []
        return self._candidates(query)[:limit]

    def _query_vectors(self, query: str) -> list[list[float]]:
        if self._search_config.query_rewrite:
            variations = generate_query_variations(self.chat, query)
        else:
            variations = [query]
        vectors = [v for v in self.embedder.embed_many(variations) if v]
        if not vectors and not self.embedder.available():
            raise ProviderUnavailable(
                "Models are offline or unreachable. Start Ollama or update the base URL."
            )
        return vectors

    def _candidates(self, query: str) -> list[SearchHit]:
        vectors = self._query_vectors(query)
        if not vectors:
            return []
        page_ids = self.top_pages(query, vectors)
        return self.score_chunks(query, vectors, page_ids)

    def top_pages(self, query: str, vectors: list[list[float]]) -> list[int]:
        """Stage 1: ids of the best pages by centroid, plus title matches."""
        cfg = self._search_config
        window_ms = cfg.recency_window_days * DAY_MS
        tokens = query_tokens(query)
        scored = []
        title_hits = []
        for entry in self.index.entries():
            if entry.centroid is not None:
                sim = max(cosine_similarity(v, entry.centroid) for v in vectors)
                scored.append((sim * recency_weight(entry.timestamp, window_ms=window_ms), entry.id))
            title = entry.title.lower()
            if tokens and any(t in title for t in tokens):
                title_hits.append(entry.id)
        scored.sort(key=lambda s: s[0], reverse=True)
        ids = [pid for _, pid in scored[:max(0, cfg.top_pages)]]
        seen = set(ids)
        for pid in title_hits:
            if pid not in seen:
                ids.append(pid)
                seen.add(pid)
        return ids

    def score_chunks(self, query: str, vectors: list[list[float]], page_ids: list[int]) -> list[SearchHit]:
        """Stage 2: score every chunk of every version of the given pages."""
        cfg = self._search_config
        window_ms = cfg.recency_window_days * DAY_MS
        q = query.lower().strip()
        tokens = query_tokens(query)
        hits = []
        for record in self.store.get_by_ids(page_ids):
            title_l = (record.title or "").lower()
            title_exact = bool(q) and q in title_l
            title_token = not title_exact and any(t in title_l for t in tokens)
            for version in record.versions:
                recency = recency_weight(version.timestamp, window_ms=window_ms)
                for idx, item in enumerate(version.items):
                    text_l = item.text.lower()
                    exact = len(q) >= 3 and q in text_l
                    token = title_token or (not exact and any(t in text_l for t in tokens))
                    sim = max(cosine_similarity(v, item.embedding) for v in vectors)
                    weighted = cfg.w_sim * sim + cfg.w_recency * recency
                    if exact:
                        weighted += cfg.w_exact
                    if title_exact:
                        weighted += cfg.w_title_exact
                    if token:
                        weighted += cfg.w_token
                    hits.append(SearchHit(
                        url=record.url,
                        title=record.title,
                        snippet=make_snippet(item.text),
                        chunk_index=idx,
                        score=sim,
                        weighted_score=weighted,
                        recency_weight=recency,
                        contains_exact=exact,
                        timestamp=version.timestamp,
                        canonical_url=record.canonical_url,
                    ))
        hits.sort(key=lambda h: h.weighted_score, reverse=True)
        return hits
