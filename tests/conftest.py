"""
Shared pytest fixtures for recall tests.

Provides deterministic mock providers so no test talks to a model server.
"""

import hashlib
import json
from typing import Callable, Optional

import pytest

from recall.api import Recall
from recall.config import create_default_config
from recall.errors import ProviderError
from recall.providers.base import ChatMessage, ToolCall


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash. Vectors for
    specific texts can be pinned through ``fixed``.
    """

    model_name = "mock-model"

    def __init__(self, dimension: int = 384):
        self.dimension = dimension
        self.embed_calls = 0
        self.batch_calls = 0
        self.fixed: dict[str, list[float]] = {}
        self.fail_batch = False
        self.fail_all = False
        self.online = True

    def embed(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        self.embed_calls += 1
        if self.fail_all:
            raise ProviderError("mock embedding failure")
        if text in self.fixed:
            return list(self.fixed[text])
        h = hashlib.md5(text.encode()).hexdigest()
        embedding = []
        for i in range(0, 32, 2):
            val = int(h[i:i+2], 16) / 255.0
            embedding.append(val)
        # Pad to full dimension
        return (embedding * (self.dimension // 16 + 1))[:self.dimension]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        self.batch_calls += 1
        if self.fail_batch or self.fail_all:
            raise ProviderError("mock batch failure")
        return [self.embed(t) for t in texts]

    def available(self) -> bool:
        return self.online


def default_reply(messages: list[ChatMessage], tools) -> str:
    """Canned answers keyed on the system prompt of each pipeline step."""
    system = messages[0].content if messages else ""
    user = messages[-1].content if messages else ""
    if "cross-encoder that rates each passage" in system:
        passages = json.loads(user.split("Passages (JSON):\n", 1)[1].split("\n\nRespond", 1)[0])
        return json.dumps([5 for _ in passages])
    if "cross-encoder" in system:
        return "5"
    if "breaks complex questions" in system:
        return ""
    if "rewrites search queries" in system:
        return ""
    if "extract grounded facts" in system:
        return "- The page explains the topic [1]\nCoverage: medium"
    if "compose an answer" in system:
        return "The page explains the topic [1]."
    return ""


class MockChatProvider:
    """
    Scripted chat provider.

    ``responder(messages, tools)`` returns a string or a ChatMessage; the
    default gives a plausible answer for every pipeline step.
    """

    model_name = "mock-chat"

    def __init__(self, responder: Optional[Callable] = None, summary: str = "Mock summary."):
        self.responder = responder or default_reply
        self.summary = summary
        self.calls: list[dict] = []
        self.summaries = 0
        self.online = True

    def chat(self, messages, *, tools=None, options=None) -> ChatMessage:
        self.calls.append({"messages": list(messages), "tools": tools, "options": options})
        reply = self.responder(messages, tools)
        if isinstance(reply, ChatMessage):
            return reply
        return ChatMessage("assistant", reply or "")

    def summarize(self, text: str) -> str:
        self.summaries += 1
        return self.summary

    def available(self) -> bool:
        return self.online

    def calls_with(self, marker: str) -> list[dict]:
        """Calls whose system prompt contains ``marker``."""
        return [c for c in self.calls if marker in c["messages"][0].content]


def tool_call(name: str, **arguments) -> ToolCall:
    return ToolCall(name=name, arguments=arguments)


@pytest.fixture(autouse=True)
def isolated_error_log(tmp_path, monkeypatch):
    """Keep error logs out of the home directory."""
    monkeypatch.setenv("RECALL_STORE_PATH", str(tmp_path / "default-store"))


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def mock_chat_provider():
    return MockChatProvider()


@pytest.fixture
def recall_factory(tmp_path):
    """
    Build Recall instances on a temporary store with mock providers.

    ``configure`` receives the StoreConfig before the store opens.
    """
    created = []

    def make(
        *,
        embedding: Optional[MockEmbeddingProvider] = None,
        chat: Optional[MockChatProvider] = None,
        configure: Optional[Callable] = None,
        name: str = "store",
    ) -> Recall:
        config = create_default_config(tmp_path / name)
        config.capture.retry_backoff = 0.01
        if configure is not None:
            configure(config)
        rc = Recall(
            config=config,
            embedding_provider=embedding or MockEmbeddingProvider(),
            chat_provider=chat,
            retry_delay=0,
        )
        created.append(rc)
        return rc

    yield make
    for rc in created:
        rc.close()


@pytest.fixture
def recall(recall_factory):
    """A Recall store with a mock embedding provider and no chat model."""
    return recall_factory()


def capture_page(rc: Recall, url: str, text: str, title: str = "", **kwargs) -> None:
    """Capture synchronously (enqueue and wait)."""
    message = {"url": url, "title": title or url, "text": text}
    message.update(kwargs)
    assert rc.capture(message)
    assert rc.drain(10)
