"""
recall - local semantic memory of visited web pages.

Captured pages are chunked, embedded and kept as a short version history.
Search blends embedding similarity with lexical and recency signals, an
optional chat model reranks results, and questions are answered from the
stored pages with numbered citations.

Quick Start:
    from recall import Recall

    with Recall() as rc:
        rc.capture({"url": "https://example.com/", "title": "Example", "text": "..."})
        rc.drain()
        for hit in rc.search("example"):
            print(hit.calibrated, hit.title, hit.snippet)
        print(rc.ask("What is example.com for?").answer)

Default store: ~/.recall/ (override with RECALL_STORE_PATH)
"""

from .api import Recall
from .errors import (
    CaptureError,
    ProviderError,
    ProviderUnavailable,
    RecallError,
)
from .types import (
    AskResult,
    CaptureMessage,
    PageRecord,
    SearchHit,
    Source,
)

__version__ = "0.3.0"
__all__ = [
    "Recall",
    "RecallError",
    "ProviderError",
    "ProviderUnavailable",
    "CaptureError",
    "AskResult",
    "CaptureMessage",
    "PageRecord",
    "SearchHit",
    "Source",
]
