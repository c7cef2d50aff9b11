"""
Data types for the page memory.

Timestamps are integer epoch milliseconds throughout, matching the capture
message format and the export file format.
"""

import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


# Tracking parameters removed by canonicalize_url()
TRACKING_PARAM_PREFIXES = ("utm_", "vero_", "ga_", "mc_", "sb_")
TRACKING_PARAM_NAMES = frozenset({
    "gclid", "fbclid", "ref", "ref_src", "ref_url", "_hsmi", "_hsenc",
    "mkt_tok", "spm", "igshid", "s", "si", "si_source", "si_platform",
})

_WHITESPACE_RE = re.compile(r"\s+")


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def local_date(ts_ms: Optional[float]) -> str:
    """Local-timezone calendar date (YYYY-MM-DD) for an epoch-ms timestamp.

    Returns empty string for missing/invalid input.
    """
    if ts_ms is None:
        return ""
    try:
        return datetime.fromtimestamp(float(ts_ms) / 1000.0).strftime("%Y-%m-%d")
    except (ValueError, OverflowError, OSError, TypeError):
        return ""


def normalize_text(s: Optional[str]) -> str:
    """Collapse whitespace runs to a single space and trim."""
    if not s:
        return ""
    return _WHITESPACE_RE.sub(" ", str(s)).strip()


def content_hash(s: Optional[str]) -> int:
    """32-bit unsigned rolling hash of the normalized text.

    Iterates UTF-16 code units so hashes agree with exported records
    produced by the browser extension. Not cryptographic.
    """
    text = normalize_text(s)
    data = text.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    return h


def canonicalize_url(url: str) -> str:
    """
    Normalize a URL into the document identity key.

    Drops the fragment, removes tracking parameters, and sorts the remaining
    query parameters by key. Input that does not parse as an absolute URL is
    returned unchanged.
    """
    try:
        parts = urlsplit(url)
    except (ValueError, TypeError, AttributeError):
        return url
    if not parts.scheme or not parts.netloc:
        return url
    kept = []
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        lower = key.lower()
        if lower in TRACKING_PARAM_NAMES:
            continue
        if lower.startswith(TRACKING_PARAM_PREFIXES):
            continue
        kept.append((key, value))
    kept.sort(key=lambda kv: kv[0])
    path = parts.path
    if not path and parts.scheme in ("http", "https"):
        path = "/"
    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        path,
        urlencode(kept),
        "",
    ))


def domain_of(url: Optional[str]) -> str:
    """Hostname of a URL, or empty string."""
    if not url:
        return ""
    try:
        return urlsplit(url).hostname or ""
    except ValueError:
        return ""


# -----------------------------------------------------------------------------
# Stored records
# -----------------------------------------------------------------------------

@dataclass
class Item:
    """A text chunk and its embedding vector."""
    text: str
    embedding: Optional[list[float]] = None

    def to_dict(self) -> dict:
        return {"text": self.text, "embedding": self.embedding}

    @classmethod
    def from_dict(cls, data: dict) -> "Item":
        return cls(text=data.get("text") or "", embedding=data.get("embedding"))


@dataclass
class Version:
    """
    A snapshot of a page's content.

    Attributes:
        timestamp: Capture time (epoch ms)
        hash: content_hash() of the normalized page text (None until computed)
        items: Ordered chunk items
        centroid: Mean of the item embeddings (None when nothing is embedded)
        summary: Page summary, may be empty
    """
    timestamp: int
    hash: Optional[int]
    items: list[Item] = field(default_factory=list)
    centroid: Optional[list[float]] = None
    summary: str = ""

    def text(self) -> str:
        return " ".join(it.text for it in self.items).strip()

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "hash": self.hash,
            "items": [it.to_dict() for it in self.items],
            "centroid": self.centroid,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Version":
        return cls(
            timestamp=int(data.get("timestamp") or 0),
            hash=int(data["hash"]) if isinstance(data.get("hash"), (int, float)) else None,
            items=[Item.from_dict(it) for it in data.get("items") or []],
            centroid=data.get("centroid"),
            summary=data.get("summary") or "",
        )


@dataclass
class PageRecord:
    """
    One document per canonical URL.

    The ``items``, ``centroid`` and ``summary`` attributes are denormalized
    copies of the latest version; call sync_latest() before writing.
    """
    canonical_url: str
    url: str
    title: str
    timestamp: int
    versions: list[Version] = field(default_factory=list)
    latest_version_index: int = 0
    id: Optional[int] = None
    items: list[Item] = field(default_factory=list)
    centroid: Optional[list[float]] = None
    summary: str = ""

    @property
    def latest(self) -> Optional[Version]:
        if not self.versions:
            return None
        if 0 <= self.latest_version_index < len(self.versions):
            return self.versions[self.latest_version_index]
        return self.versions[-1]

    def sync_latest(self) -> None:
        """Re-establish the denormalized fields from the latest version."""
        if not self.versions:
            self.latest_version_index = 0
            self.items = []
            self.centroid = None
            self.summary = ""
            return
        if not 0 <= self.latest_version_index < len(self.versions):
            self.latest_version_index = len(self.versions) - 1
        cur = self.versions[self.latest_version_index]
        self.timestamp = cur.timestamp
        self.items = cur.items
        self.centroid = cur.centroid
        self.summary = cur.summary or ""

    def text(self) -> str:
        """Combined text of the latest version's chunks."""
        return " ".join(it.text for it in self.items)

    def to_dict(self) -> dict:
        """Serialize using the export field names."""
        d: dict[str, Any] = {
            "canonicalUrl": self.canonical_url,
            "url": self.url,
            "title": self.title,
            "timestamp": self.timestamp,
            "latestVersionIndex": self.latest_version_index,
            "versions": [v.to_dict() for v in self.versions],
            "items": [it.to_dict() for it in self.items],
            "centroid": self.centroid,
            "summary": self.summary,
        }
        if self.id is not None:
            d["id"] = self.id
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "PageRecord":
        rec = cls(
            canonical_url=data.get("canonicalUrl") or canonicalize_url(data.get("url") or ""),
            url=data.get("url") or "",
            title=data.get("title") or "",
            timestamp=int(data.get("timestamp") or 0),
            versions=[Version.from_dict(v) for v in data.get("versions") or []],
            latest_version_index=int(data.get("latestVersionIndex") or 0),
            id=data.get("id"),
            items=[Item.from_dict(it) for it in data.get("items") or []],
            centroid=data.get("centroid"),
            summary=data.get("summary") or "",
        )
        return rec


@dataclass
class EmbeddingMeta:
    """Model and dimension of the stored embeddings (first observed)."""
    model: Optional[str]
    dim: int


# -----------------------------------------------------------------------------
# Capture
# -----------------------------------------------------------------------------

@dataclass
class CaptureMessage:
    """A captured page as delivered by the extractor."""
    url: str
    title: str = ""
    timestamp: int = field(default_factory=now_ms)
    text: str = ""
    chunks: list[str] = field(default_factory=list)
    force: bool = False

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "timestamp": self.timestamp,
            "text": self.text,
            "chunks": list(self.chunks),
            "force": self.force,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CaptureMessage":
        ts = data.get("timestamp")
        return cls(
            url=data.get("url") or "",
            title=data.get("title") or "",
            timestamp=int(ts) if isinstance(ts, (int, float)) else now_ms(),
            text=data.get("text") or "",
            chunks=[c for c in data.get("chunks") or [] if isinstance(c, str)],
            force=bool(data.get("force") or data.get("manual")),
        )


@dataclass
class ProcessingEntry:
    """Status of a capture that has not finished (or has failed)."""
    url: str
    title: str
    timestamp: int
    status: str = "processing"
    attempts: int = 0
    last_error: Optional[str] = None


# -----------------------------------------------------------------------------
# Retrieval and answers
# -----------------------------------------------------------------------------

@dataclass
class SearchHit:
    """A scored chunk candidate."""
    url: str
    title: str
    snippet: str
    chunk_index: Optional[int]
    score: float
    weighted_score: float
    recency_weight: float = 1.0
    contains_exact: bool = False
    timestamp: Optional[int] = None
    rerank_score: Optional[float] = None
    similarity_pct: Optional[int] = None
    llm_rank_pct: Optional[int] = None
    calibrated: Optional[int] = None
    canonical_url: str = ""
    partial: bool = False

    @property
    def effective_score(self) -> float:
        if self.rerank_score is not None:
            return self.rerank_score
        return self.weighted_score or self.score

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "snippet": self.snippet,
            "chunkIndex": self.chunk_index,
            "score": self.score,
            "weightedScore": self.weighted_score,
            "recencyWeight": self.recency_weight,
            "containsExact": self.contains_exact,
            "timestamp": self.timestamp,
            "crossScore": self.rerank_score,
            "similarityPct": self.similarity_pct,
            "llmRankPct": self.llm_rank_pct,
            "calibrated": self.calibrated,
            "canonicalUrl": self.canonical_url,
        }


@dataclass
class Source:
    index: int
    title: str
    url: str
    domain: str = ""


@dataclass
class Explanation:
    index: int
    title: str
    url: str
    score: float
    weighted_score: float
    rerank_score: Optional[float]
    snippet: str


@dataclass
class AskResult:
    """Answer text plus the numbered sources it cites."""
    answer: str
    sources: list[Source] = field(default_factory=list)
    explanations: list[Explanation] = field(default_factory=list)


@dataclass
class HighlightDate:
    date: str
    count: int


@dataclass
class ImportResult:
    imported: int = 0
    skipped_incompatible: int = 0
    failed: int = 0
