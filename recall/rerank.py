"""
LLM reranking of retrieval candidates and score calibration.

The chat model acts as a cross-encoder: one batched call scores all
passages 0-10; if its answer can't be matched to the passages, each passage
is scored with its own call on a thread pool.
"""

import json
import logging
import math
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from .errors import ProviderError
from .providers.base import ChatMessage, ChatProvider
from .types import SearchHit

logger = logging.getLogger(__name__)

BATCH_SYSTEM_PROMPT = (
    "You are a cross-encoder that rates each passage for relevance to a query "
    "from 0 to 10. Respond ONLY with a JSON array of numbers matching the order "
    "of the provided passages."
)

SINGLE_SYSTEM_PROMPT = (
    "You are a cross-encoder that assesses the relevance of a text passage to a "
    "search query. Respond with a single number between 0 and 10, where higher "
    "means more relevant. Respond only with the number."
)

_ARRAY_RE = re.compile(r"\[[^\[\]]*\]", re.DOTALL)
_LEADING_NUMBER_RE = re.compile(r"\s*([-+]?(?:\d+\.?\d*|\.\d+))")


def parse_score(text: str) -> float:
    """Leading number of a model answer, 0 when there is none."""
    m = _LEADING_NUMBER_RE.match(text or "")
    if not m:
        return 0.0
    try:
        return float(m.group(1))
    except ValueError:
        return 0.0


def parse_score_array(text: str) -> Optional[list]:
    """JSON array from a model answer (bare, or embedded in prose)."""
    text = (text or "").strip()
    for candidate in (text, *(m.group(0) for m in _ARRAY_RE.finditer(text))):
        try:
            value = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(value, list):
            return value
    return None


def _as_score(value) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return parse_score(value)
    return 0.0


class Reranker:
    """Scores candidates with the chat model and sorts them by that score."""

    def __init__(self, chat: Optional[ChatProvider], *, max_workers: int = 8):
        self.chat = chat
        self.max_workers = max_workers

    def rerank(self, query: str, candidates: list[SearchHit]) -> list[SearchHit]:
        """
        Attach ``rerank_score`` to each candidate and sort by it.

        The order is unchanged when there is no chat model or the batched
        call fails outright.
        """
        if self.chat is None or not candidates:
            return candidates
        try:
            scores = self._score_batch(query, candidates)
        except ProviderError as e:
            logger.warning("Rerank failed, keeping retrieval order: %s", e)
            return candidates
        if scores is None:
            logger.info("Batched rerank answer unusable, scoring %d passages one by one",
                        len(candidates))
            scores = self._score_each(query, candidates)
        for hit, score in zip(candidates, scores):
            hit.rerank_score = score
        return sorted(
            candidates,
            key=lambda h: (h.rerank_score or 0.0, h.weighted_score or h.score),
            reverse=True,
        )

    def _score_batch(self, query: str, candidates: list[SearchHit]) -> Optional[list[float]]:
        passages = [{"index": i + 1, "text": h.snippet} for i, h in enumerate(candidates)]
        reply = self.chat.chat([
            ChatMessage("system", BATCH_SYSTEM_PROMPT),
            ChatMessage("user", (
                f"Query: {query}\nPassages (JSON):\n{json.dumps(passages, ensure_ascii=False)}"
                "\n\nRespond with JSON array of numbers, e.g. [7.5, 3, 9]"
            )),
        ])
        values = parse_score_array(reply.content)
        if values is None or len(values) != len(candidates):
            return None
        return [_as_score(v) for v in values]

    def _score_one(self, query: str, hit: SearchHit) -> float:
        try:
            reply = self.chat.chat([
                ChatMessage("system", SINGLE_SYSTEM_PROMPT),
                ChatMessage("user", f"Query: {query}\nText: {hit.snippet}\n\nRelevance score:"),
            ])
        except ProviderError as e:
            logger.debug("Rerank of one passage failed: %s", e)
            return 0.0
        return parse_score(reply.content)

    def _score_each(self, query: str, candidates: list[SearchHit]) -> list[float]:
        workers = max(1, min(self.max_workers, len(candidates)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="recall-rerank") as pool:
            return list(pool.map(lambda h: self._score_one(query, h), candidates))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp_pct(value: float) -> int:
    return max(0, min(100, _round_half_up(value)))


def calibrate(hits: list[SearchHit], w_sim: float = 0.8, w_llm: float = 0.2) -> list[SearchHit]:
    """
    Blend similarity and rerank score into one 0-100 percentage per hit.

    ``similarity_pct`` maps cosine [-1, 1] onto [0, 100] and ``llm_rank_pct``
    maps the 0-10 rerank score onto [0, 100]. With only one of them present,
    the calibrated score is that one. Weights are used as given.
    """
    for hit in hits:
        sim_pct = _clamp_pct((hit.score + 1) / 2 * 100) if hit.score is not None else None
        llm_pct = _clamp_pct(hit.rerank_score * 10) if hit.rerank_score is not None else None
        hit.similarity_pct = sim_pct
        hit.llm_rank_pct = llm_pct
        if sim_pct is not None and llm_pct is not None:
            hit.calibrated = _round_half_up(w_sim * sim_pct + w_llm * llm_pct)
        elif sim_pct is not None:
            hit.calibrated = sim_pct
        else:
            hit.calibrated = llm_pct
    return hits
