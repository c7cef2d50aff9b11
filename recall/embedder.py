"""
Embedding with retries, per-item fallback and dimension bookkeeping.

The store records the first observed embedding model and dimension; vectors
of any other dimension are dropped here so a mixed-dimension store never
arises.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

from .document_store import PageStore
from .errors import ProviderError
from .providers.base import EmbeddingProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_retry(
    fn: Callable[[], T],
    *,
    retries: int = 2,
    delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    what: str = "call",
) -> T:
    """
    Call ``fn`` until it succeeds, at most ``retries`` extra times.

    Waits ``delay * 2**attempt`` seconds between attempts. Only provider
    errors are retried; the last one is re-raised.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except ProviderError as e:
            if attempt >= retries:
                raise
            wait = delay * (2 ** attempt)
            logger.info("%s failed (attempt %d/%d), retrying in %.1fs: %s",
                        what, attempt + 1, retries + 1, wait, e)
            attempt += 1
            if wait > 0:
                sleep(wait)


class Embedder:
    """Wraps an embedding provider for the capture and retrieval paths."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: PageStore,
        *,
        retry_delay: float = 1.0,
    ):
        self.provider = provider
        self.store = store
        self.retry_delay = retry_delay

    @property
    def model_name(self) -> str:
        return getattr(self.provider, "model_name", "") or ""

    def available(self) -> bool:
        """Provider health, True when the provider has no health check."""
        check = getattr(self.provider, "available", None)
        if check is None:
            return True
        try:
            return bool(check())
        except ProviderError:
            return False

    def embed_many(
        self,
        texts: list[str],
        *,
        retries: int = 0,
    ) -> list[Optional[list[float]]]:
        """
        Embed ``texts``, one result per input (None where embedding failed).

        Vectors whose dimension differs from the stored metadata come back
        as None.
        """
        vectors, _ = self.filter_dims(self.embed_raw(texts, retries=retries))
        return vectors

    def embed_raw(
        self,
        texts: list[str],
        *,
        retries: int = 0,
    ) -> list[Optional[list[float]]]:
        """
        Embed without dimension checks.

        Tries one batched request (with ``retries``), then falls back to one
        request per text.
        """
        if not texts:
            return []
        try:
            return list(with_retry(
                lambda: self.provider.embed_batch(list(texts)),
                retries=retries, delay=self.retry_delay, what="embed_batch",
            ))
        except ProviderError as e:
            logger.warning("Batch embedding failed for %d texts, embedding one by one: %s",
                           len(texts), e)
        vectors: list[Optional[list[float]]] = []
        for text in texts:
            try:
                vectors.append(with_retry(
                    lambda t=text: self.provider.embed(t),
                    retries=retries, delay=self.retry_delay * 0.8, what="embed",
                ))
            except ProviderError as e:
                logger.warning("Embedding failed for chunk: %s", e)
                vectors.append(None)
        return vectors

    def filter_dims(
        self,
        vectors: list[Optional[list[float]]],
    ) -> tuple[list[Optional[list[float]]], Optional[int]]:
        """
        Record the embedding metadata on first use and drop mismatched vectors.

        Returns the checked vectors and the dimension of a dropped vector
        (None when nothing was dropped).
        """
        first = next((v for v in vectors if v), None)
        if first is None:
            return [None] * len(vectors), None
        self.store.ensure_embedding_meta(self.model_name, len(first))
        meta = self.store.get_embedding_meta()
        checked: list[Optional[list[float]]] = []
        rejected = None
        for v in vectors:
            if v and meta is not None and len(v) != meta.dim:
                rejected = len(v)
                checked.append(None)
            else:
                checked.append(v if v else None)
        if rejected is not None:
            logger.warning("Dropped %d-dim embeddings (store uses %d-dim, model=%s)",
                           rejected, meta.dim, meta.model)
        return checked, rejected
