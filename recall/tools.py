"""
Tools the answering model may call while extracting facts.

Three tools are exposed: ``search_memory``, ``fetch_more`` and
``get_page_summary``. Every call returns a JSON-serializable envelope,
``{ok, data, usedArgs, suggest}`` on success or ``{ok: false, error:
{code, message, suggest}, suggest}`` on failure, so the model can correct
itself. Tool errors never propagate to the caller.
"""

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .document_store import PageStore
from .errors import ToolValidationError
from .types import PageRecord, SearchHit

logger = logging.getLogger(__name__)

MAX_SLICE = 1200
RANGE_MERGE_DISTANCE = 50
DEFAULT_K = 5
MAX_K = 10

TOOL_NAMES = ("search_memory", "fetch_more", "get_page_summary")

TOOL_SCHEMAS = [
    {
        "type": "function",
        "function": {
            "name": "fetch_more",
            "description": (
                "Fetch more text from a stored page. Prefer chunkIndex; "
                "otherwise provide a small start/end range."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "url": {"type": "string"},
                    "chunkIndex": {"type": "integer"},
                    "start": {"type": "integer"},
                    "end": {"type": "integer"},
                },
                "required": ["url"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_page_summary",
            "description": "Get the stored summary for a page URL",
            "parameters": {
                "type": "object",
                "properties": {"url": {"type": "string"}},
                "required": ["url"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search_memory",
            "description": "Search local memory for a query and return top k results",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "k": {"type": "integer"},
                },
                "required": ["query"],
            },
        },
    },
]

SearchFn = Callable[[str, int], list[SearchHit]]


@dataclass
class ToolMetric:
    name: str
    ms: float
    ok: bool
    error: Optional[str]
    signature: str


def _as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return None
    return None


def _ok(data, used_args: dict, suggest: Optional[str] = None) -> dict:
    return {"ok": True, "data": data, "usedArgs": used_args, "suggest": suggest}


def _error(code: str, message: str, suggest: Optional[str] = None) -> dict:
    return {
        "ok": False,
        "error": {"code": code, "message": message, "suggest": suggest},
        "suggest": suggest,
    }


class ToolRuntime:
    """
    Executes tool calls for one question.

    Identical calls within a run are answered from memory (``deduped``).
    Metrics and touched URLs are collected for logging and for the answer's
    source list.
    """

    def __init__(
        self,
        store: PageStore,
        search: SearchFn,
        quick_search: Optional[SearchFn] = None,
        *,
        max_slice: int = MAX_SLICE,
        timeout: float = 0.0,
    ):
        self.store = store
        self._search = search
        self._quick_search = quick_search
        self.max_slice = max(1, int(max_slice))
        self.timeout = timeout
        self.metrics: list[ToolMetric] = []
        self.used_urls: list[str] = []
        self._seen: set[str] = set()
        self._search_cache: dict[str, list[dict]] = {}
        self._ranges: dict[str, list[list[int]]] = {}
        self._pages: dict[str, Optional[PageRecord]] = {}
        self._executor: Optional[ThreadPoolExecutor] = None

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def run(self, name: str, args: Optional[dict]) -> dict:
        """Execute one tool call and return its result envelope."""
        args = args if isinstance(args, dict) else {}
        signature = f"{name}:{json.dumps(args, sort_keys=True, default=str)}"
        if signature in self._seen:
            self.metrics.append(ToolMetric(name, 0, True, None, signature))
            return {"ok": True, "data": {"deduped": True}, "usedArgs": args, "suggest": None}
        self._seen.add(signature)

        started = time.perf_counter()
        try:
            result = self._dispatch(name, args)
        except ToolValidationError as e:
            result = _error(e.code, e.message, e.suggest)
        except Exception as e:
            logger.warning("Tool %s failed: %s", name, e)
            result = _error("tool_error", str(e) or type(e).__name__)
        ms = (time.perf_counter() - started) * 1000
        err = None if result.get("ok") else result["error"]["code"]
        self.metrics.append(ToolMetric(name, round(ms, 1), bool(result.get("ok")), err, signature))
        return result

    def run_json(self, name: str, args: Optional[dict]) -> str:
        return json.dumps(self.run(name, args), ensure_ascii=False)

    def _dispatch(self, name: str, args: dict) -> dict:
        if name == "fetch_more":
            return self.fetch_more(args)
        if name == "get_page_summary":
            return self.get_page_summary(args)
        if name == "search_memory":
            return self.search_memory(args)
        raise ToolValidationError(
            "unknown_tool", "unsupported tool",
            "Use one of: search_memory, fetch_more, get_page_summary",
        )

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    def fetch_more(self, args: dict) -> dict:
        url = args.get("url")
        if not isinstance(url, str) or not url:
            raise ToolValidationError(
                "invalid_args", "url is required",
                "Provide { url, chunkIndex } or small { url, start, end } (<= maxSlice)",
            )
        chunk_index = _as_int(args.get("chunkIndex"))
        start = _as_int(args.get("start"))
        end = _as_int(args.get("end"))
        if chunk_index is None and start is None and end is None:
            raise ToolValidationError(
                "invalid_args", "provide chunkIndex or a small start/end range",
                "Provide { url, chunkIndex } or small { url, start, end } (<= maxSlice)",
            )
        page = self._page(url)
        self._touch(url)

        if chunk_index is not None:
            idx = max(0, chunk_index)
            text = page.items[idx].text if idx < len(page.items) else ""
            return _ok(
                {"url": url, "chunkIndex": idx, "text": text},
                {"url": url, "chunkIndex": idx},
                "Prefer { url, chunkIndex } for precise expansion",
            )

        requested_start = start if start is not None else 0
        s = max(0, requested_start)
        e = end if end is not None and end > s else s + self.max_slice
        requested = (requested_start, end)
        full = page.text()
        e = min(e, len(full), s + self.max_slice)
        s = min(s, e)
        seg_s, seg_e = self._merge_range(url, s, e)
        if seg_e - seg_s <= self.max_slice:
            s, e = seg_s, seg_e
        adjusted = requested != (s, e)
        if adjusted:
            suggest = f"range adjusted to [{s}, {e}]; prefer {{ url, chunkIndex }} when available"
        else:
            suggest = "Use small ranges (<= maxSlice) or prefer chunkIndex"
        return _ok(
            {"url": url, "start": s, "end": e, "text": full[s:e]},
            {"url": url, "start": s, "end": e},
            suggest,
        )

    def get_page_summary(self, args: dict) -> dict:
        url = args.get("url")
        if not isinstance(url, str) or not url:
            raise ToolValidationError(
                "invalid_args", "url is required", "Call get_page_summary({ url })",
            )
        page = self._page(url)
        self._touch(url)
        return _ok(
            {"url": url, "title": page.title, "summary": page.summary or ""},
            {"url": url},
        )

    def search_memory(self, args: dict) -> dict:
        query = args.get("query")
        if not isinstance(query, str) or not query.strip():
            raise ToolValidationError(
                "invalid_args", "query is required",
                "Call search_memory({ query, k? (1..10) })",
            )
        query = query.strip()
        k = _as_int(args.get("k"))
        k = DEFAULT_K if k is None else max(1, min(MAX_K, k))
        used = {"query": query, "k": k}
        key = f"{query}::{k}"
        if key in self._search_cache:
            return _ok({"results": self._search_cache[key]}, used,
                       "Use fetch_more({ url, chunkIndex }) to expand a specific hit")

        partial = False
        try:
            hits = self._run_search(query, k)
        except Exception as e:
            logger.info("search_memory fell back to quick search: %s",
                        "timeout" if isinstance(e, FutureTimeout) else e)
            if self._quick_search is None:
                return _error("search_failed", "search failed",
                              "Try a simpler query or smaller k (1..10)")
            try:
                hits = self._quick_search(query, k)
            except Exception as e2:
                logger.warning("search_memory failed: %s", e2)
                return _error("search_failed", "search failed",
                              "Try a simpler query or smaller k (1..10)")
            partial = True

        results = [
            {
                "title": h.title,
                "url": h.url,
                "snippet": h.snippet,
                "chunkIndex": h.chunk_index,
                "partial": partial,
            }
            for h in hits[:k]
        ]
        for r in results:
            self._touch(r["url"])
        if partial:
            return _ok({"results": results}, used,
                       "Partial results; try fetch_more({ url, chunkIndex }) on a hit")
        self._search_cache[key] = results
        return _ok({"results": results}, used,
                   "Use fetch_more({ url, chunkIndex }) to expand a specific hit")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _run_search(self, query: str, k: int) -> list[SearchHit]:
        if not self.timeout or self.timeout <= 0:
            return self._search(query, k)
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="recall-tool")
        future = self._executor.submit(self._search, query, k)
        return future.result(timeout=self.timeout)

    def _page(self, url: str) -> PageRecord:
        if url not in self._pages:
            pages = self.store.get_by_url(url)
            self._pages[url] = max(pages, key=lambda p: p.timestamp) if pages else None
        page = self._pages[url]
        if page is None:
            raise ToolValidationError(
                "disallowed", "url not in memory",
                "Use a URL returned by search_memory or from provided sources",
            )
        return page

    def _touch(self, url: str) -> None:
        if url and url not in self.used_urls:
            self.used_urls.append(url)

    def _merge_range(self, url: str, start: int, end: int) -> tuple[int, int]:
        """Record [start, end) for the URL, coalescing nearby ranges; return the containing segment."""
        ranges = self._ranges.setdefault(url, [])
        seg = [start, end]
        kept = []
        for r in ranges:
            if seg[0] <= r[1] + RANGE_MERGE_DISTANCE and seg[1] >= r[0] - RANGE_MERGE_DISTANCE:
                seg = [min(seg[0], r[0]), max(seg[1], r[1])]
            else:
                kept.append(r)
        kept.append(seg)
        kept.sort()
        self._ranges[url] = kept
        return seg[0], seg[1]

    def metrics_summary(self) -> list[dict[str, Any]]:
        return [m.__dict__.copy() for m in self.metrics]

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
