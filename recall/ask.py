"""
Question answering over the page memory.

A question is decomposed into sub-queries, each is retrieved, the merged
hits become numbered context blocks, the model extracts cited bullet points
(optionally calling tools), and a final answer is composed strictly from
those bullets.
"""

import logging
import re
from typing import Optional

from .config import StoreConfig
from .document_store import PageStore
from .embedder import Embedder
from .errors import OFFLINE_MESSAGE, ProviderError
from .providers.base import ChatMessage, ChatProvider
from .search import Retriever
from .tools import TOOL_SCHEMAS, ToolRuntime
from .types import AskResult, Explanation, PageRecord, SearchHit, Source, domain_of

logger = logging.getLogger(__name__)

NO_CONTEXT_MESSAGE = "No relevant context found."

# Tool rounds are never more than this, whatever the config says
MAX_TOOL_ROUNDS = 2

SUBQUERY_LIMIT = 5

STOPWORDS = frozenset({
    "what", "did", "how", "the", "a", "an", "in", "on", "to", "is", "are",
    "was", "were", "and", "or", "of", "about", "say", "who", "why", "when",
    "where",
})

DECOMPOSE_SYSTEM_PROMPT = (
    "You are an assistant that breaks complex questions into independent search "
    "queries for information retrieval. Return each sub-query on a separate line "
    "and do not include any numbering or explanation."
)

EXTRACT_SYSTEM_PROMPT = (
    "You extract grounded facts from provided context.\n"
    "Rules:\n"
    "- Use only information from context or allowed tools.\n"
    "- Output concise bullet points. End each bullet with a citation [n] "
    "referencing the numbered sources.\n"
    "- If coverage is weak, keep bullets minimal.\n"
    "- After bullets, add a line: Coverage: low|medium|high.\n"
    "- Do not include titles/URLs in the bullets; use [n] only."
)

EXTRACT_FOLLOW_UP = (
    "Update the bullet points based on the tool results. Keep the same format and citations."
)

COMPOSE_SYSTEM_TEMPLATE = (
    "You compose an answer strictly from provided bullet points with citations.\n"
    "Rules:\n"
    "- Use only the provided bullets; do not invent new facts.\n"
    "- Keep inline citations as [n] and ensure every claim has at least one citation.\n"
    "- If bullets are insufficient, say so briefly and include Sources.\n"
    "- Be {style}."
)

STYLE_CONCISE = "concise (2–4 sentences)"
STYLE_DETAILED = "detailed (6–10 sentences)"

_FULLWIDTH_CITATION_RE = re.compile(r"【(\d+)】")
_SOURCES_RE = re.compile(r"\bSources\b", re.IGNORECASE)
_TOKEN_SPLIT_RE = re.compile(r"\W+")


def is_low_information(text: Optional[str]) -> bool:
    """Short, mostly non-letter, or made of very short tokens (menus, nav bars)."""
    t = (text or "").strip()
    if len(t) < 80:
        return True
    letters = sum(1 for ch in t if ch.isalpha())
    if letters / len(t) < 0.4:
        return True
    tokens = t.split()
    if not tokens:
        return True
    return sum(len(tok) for tok in tokens) / len(tokens) < 3.0


def normalize_citations(text: str) -> str:
    return _FULLWIDTH_CITATION_RE.sub(r"[\1]", text or "")


def question_tokens(question: str) -> list[str]:
    return [
        t for t in _TOKEN_SPLIT_RE.split((question or "").lower())
        if t and t not in STOPWORDS
    ]


class Answerer:
    """Retrieval-augmented answering with optional tool calling."""

    def __init__(
        self,
        retriever: Retriever,
        store: PageStore,
        embedder: Embedder,
        chat: Optional[ChatProvider],
        config: StoreConfig,
    ):
        self.retriever = retriever
        self.store = store
        self.embedder = embedder
        self.chat = chat
        self.config = config

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def ask(self, question: str) -> AskResult:
        question = (question or "").strip()
        if not question:
            return AskResult(NO_CONTEXT_MESSAGE)
        if not self._online():
            return AskResult(OFFLINE_MESSAGE)

        hits = self.gather(self.decompose(question))
        if not hits:
            return AskResult(NO_CONTEXT_MESSAGE)

        ask_cfg = self.config.ask
        k = max(1, ask_cfg.top_detailed if ask_cfg.detailed else ask_cfg.top_concise)
        top = self.select(question, hits)[:k]
        sources = [
            Source(i + 1, h.title, h.url, domain_of(h.url)) for i, h in enumerate(top)
        ]
        explanations = [
            Explanation(i + 1, h.title, h.url, h.score, h.weighted_score,
                        h.rerank_score, h.snippet)
            for i, h in enumerate(top)
        ]

        if self.chat is None:
            answer = "\n\n".join(f"[{i + 1}] {h.snippet}" for i, h in enumerate(top))
            return AskResult(self._with_sources(answer, sources), sources, explanations)

        budget = ask_cfg.ctx_detailed if ask_cfg.detailed else ask_cfg.ctx_concise
        context = self.build_context(top, budget)

        runtime = None
        if self.config.tools.enabled:
            runtime = ToolRuntime(
                self.store,
                self.retriever.search,
                self.retriever.quick_search,
                max_slice=self.config.tools.max_slice,
                timeout=self.config.tools.timeout,
            )
        try:
            extracted = self.extract(question, context, runtime)
            if not extracted.strip():
                extracted = "\n".join(f"- {h.snippet} [{i + 1}]" for i, h in enumerate(top))
            answer = self.compose(question, extracted)
        except ProviderError as e:
            logger.warning("Answer synthesis failed, returning snippets: %s", e)
            answer = "\n\n".join(f"[{i + 1}] {h.snippet}" for i, h in enumerate(top))
        finally:
            if runtime is not None:
                if runtime.metrics:
                    logger.info("Tool metrics: %s", runtime.metrics_summary())
                runtime.close()

        if runtime is not None:
            sources = self._add_tool_sources(sources, runtime.used_urls)
        return AskResult(self._with_sources(answer, sources), sources, explanations)

    def _online(self) -> bool:
        if not self.embedder.available():
            return False
        check = getattr(self.chat, "available", None)
        if check is not None:
            try:
                return bool(check())
            except ProviderError:
                return False
        return True

    def decompose(self, question: str) -> list[str]:
        """The question followed by the distinct sub-queries the model proposes."""
        queries = [question]
        if self.chat is None:
            return queries
        try:
            reply = self.chat.chat([
                ChatMessage("system", DECOMPOSE_SYSTEM_PROMPT),
                ChatMessage("user", (
                    f"Break the following question into multiple search queries:\n\n{question}"
                )),
            ])
        except ProviderError as e:
            logger.info("Question decomposition failed: %s", e)
            return queries
        for line in reply.content.splitlines():
            line = line.strip()
            if line and line not in queries:
                queries.append(line)
        return queries

    def gather(self, queries: list[str]) -> list[SearchHit]:
        """Search each sub-query and merge, keeping the better of duplicate hits."""
        merged: dict[str, SearchHit] = {}
        for sub in queries:
            try:
                hits = self.retriever.search(sub, SUBQUERY_LIMIT)
            except ProviderError as e:
                logger.warning("Retrieval failed for sub-query %r: %s", sub, e)
                continue
            for hit in hits:
                key = f"{hit.url}::{hit.snippet}"
                existing = merged.get(key)
                if existing is None or hit.effective_score > existing.effective_score:
                    merged[key] = hit
        return list(merged.values())

    def select(self, question: str, hits: list[SearchHit]) -> list[SearchHit]:
        """Sort by score, then move hits mentioning a question term to the front."""
        ranked = sorted(hits, key=lambda h: h.effective_score, reverse=True)
        tokens = question_tokens(question)
        if not tokens:
            return ranked
        return sorted(
            ranked,
            key=lambda h: not any(t in h.snippet.lower() for t in tokens),
        )

    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------

    def build_context(self, hits: list[SearchHit], budget: int) -> str:
        """Numbered context blocks for the top hits."""
        if not hits:
            return ""
        per_block = max(400, budget // len(hits))
        blocks = []
        for i, hit in enumerate(hits):
            page = self._page(hit.url)
            body = self._block_body(hit, page, per_block)
            domain = domain_of(hit.url)
            header = f"[{i + 1}] Title: {hit.title}"
            if domain:
                header += f" (domain: {domain})"
            blocks.append(f"{header}\n{body[:per_block]}")
        return "\n\n".join(blocks)

    def _page(self, url: str) -> Optional[PageRecord]:
        pages = self.store.get_by_url(url)
        return max(pages, key=lambda p: p.timestamp) if pages else None

    @staticmethod
    def _block_body(hit: SearchHit, page: Optional[PageRecord], per_block: int) -> str:
        lines = []
        if page is not None and page.summary:
            lines.append(f"Summary: {page.summary[:max(200, per_block // 3)]}")
        items = page.items if page is not None else []
        idx = hit.chunk_index
        if idx is not None and 0 <= idx < len(items):
            window = []
            for label, j in (("Prev", idx - 1), ("Focus", idx), ("Next", idx + 1)):
                if 0 <= j < len(items) and not is_low_information(items[j].text):
                    window.append(f"{label} chunk [{j}]: {items[j].text}")
            if window:
                lines.extend(window)
            else:
                lines.append(f"Chunk: {items[idx].text}")
        else:
            lines.append(f"Snippet: {hit.snippet}")
        return "\n".join(lines)

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def extract(self, question: str, context: str, runtime: Optional[ToolRuntime] = None) -> str:
        """Cited bullet points, refined over at most MAX_TOOL_ROUNDS tool rounds."""
        options = {"temperature": 0.2}
        tools = TOOL_SCHEMAS if runtime is not None else None
        messages = [
            ChatMessage("system", EXTRACT_SYSTEM_PROMPT),
            ChatMessage("user", (
                f"Question: {question}\n\nContext:\n{context}\n\n"
                "Write bullet points with [n] citations, then a single line 'Coverage: <level>'."
            )),
        ]
        reply = self.chat.chat(messages, tools=tools, options=options)
        rounds = max(0, min(self.config.tools.max_steps, MAX_TOOL_ROUNDS))
        step = 0
        while runtime is not None and reply.tool_calls and step < rounds:
            step += 1
            messages.append(ChatMessage("assistant", reply.content, tool_calls=reply.tool_calls))
            for call in reply.tool_calls:
                logger.debug("Tool call %s %s", call.name, call.arguments)
                messages.append(ChatMessage(
                    "tool", runtime.run_json(call.name, call.arguments), name=call.name,
                ))
            messages.append(ChatMessage("user", EXTRACT_FOLLOW_UP))
            reply = self.chat.chat(messages, tools=tools, options=options)
        return normalize_citations(reply.content)

    def compose(self, question: str, extracted: str) -> str:
        style = STYLE_DETAILED if self.config.ask.detailed else STYLE_CONCISE
        reply = self.chat.chat(
            [
                ChatMessage("system", COMPOSE_SYSTEM_TEMPLATE.format(style=style)),
                ChatMessage("user", (
                    f"Question: {question}\n\nBullets:\n{extracted}\n\n"
                    "Write the final answer using [n] citations. Do not add new facts."
                )),
            ],
            options={"temperature": 0.2},
        )
        return normalize_citations(reply.content)

    # -------------------------------------------------------------------------
    # Sources
    # -------------------------------------------------------------------------

    def _add_tool_sources(self, sources: list[Source], used_urls: list[str]) -> list[Source]:
        listed = {s.url for s in sources}
        result = list(sources)
        for url in used_urls:
            if url in listed:
                continue
            page = self._page(url)
            title = page.title if page is not None and page.title else url
            result.append(Source(len(result) + 1, title, url, domain_of(url)))
            listed.add(url)
        return result

    @staticmethod
    def _with_sources(answer: str, sources: list[Source]) -> str:
        if not sources or _SOURCES_RE.search(answer or ""):
            return answer
        lines = []
        for s in sources:
            label = f"{s.title} ({s.domain})" if s.domain else s.title
            lines.append(f"[{s.index}] {label} — {s.url}")
        return f"{answer}\n\nSources:\n" + "\n".join(lines)
