"""
Embedding and chat providers using Ollama's local HTTP API.

Respects OLLAMA_HOST env var (default: http://127.0.0.1:11434).
"""

import logging
from typing import Any, Optional

import requests

from ..errors import ProviderError
from ..logging_config import summarize_payload
from .base import ChatMessage, ToolCall, get_registry
from .ollama_utils import HealthCache, ollama_base_url

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = "You are a helpful summarization assistant."

# Page text sent for summarization is capped
MAX_SUMMARY_INPUT = 50000


def _post(base_url: str, path: str, body: dict, timeout, kind: str) -> dict:
    """POST JSON to Ollama; raise ProviderError on transport or HTTP failure."""
    logger.debug("ollama %s %s %s", kind, path, summarize_payload(body))
    try:
        response = requests.post(f"{base_url}{path}", json=body, timeout=timeout)
    except requests.RequestException as e:
        raise ProviderError(f"Ollama {kind} request failed: {e}") from e
    if not response.ok:
        detail = response.text[:200] if response.text else ""
        raise ProviderError(
            f"Ollama {kind} failed (model={body.get('model')}): "
            f"HTTP {response.status_code} from {base_url}. {detail}"
        )
    try:
        return response.json()
    except ValueError as e:
        raise ProviderError(f"Ollama {kind} returned invalid JSON") from e


class OllamaEmbedding:
    """
    Embedding provider using Ollama's /api/embed endpoint.

    A single request accepts either one string or a list of strings and
    returns an ``embeddings`` array.
    """

    def __init__(
        self,
        model: str = "embeddinggemma",
        base_url: str | None = None,
        timeout: float = 120,
    ):
        self.model = model
        self.base_url = ollama_base_url(base_url)
        self.timeout = timeout
        self._health = HealthCache(self.base_url)

    @property
    def model_name(self) -> str:
        return self.model

    def embed(self, text: str) -> list[float]:
        data = _post(
            self.base_url, "/api/embed",
            {"model": self.model, "input": text},
            (10, self.timeout), "embed",
        )
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or not embeddings or not embeddings[0]:
            raise ProviderError(f"No embedding returned by Ollama (model={self.model})")
        return embeddings[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        data = _post(
            self.base_url, "/api/embed",
            {"model": self.model, "input": list(texts)},
            (10, self.timeout), "embed_batch",
        )
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            got = len(embeddings) if isinstance(embeddings, list) else 0
            raise ProviderError(
                f"Ollama returned {got} embeddings for {len(texts)} inputs"
            )
        return embeddings

    def available(self) -> bool:
        return self._health.check()


class OllamaChat:
    """
    Chat provider using Ollama's /api/chat endpoint, with tool calling.

    ``summary_model`` is used for page summaries; when unset, ``model`` is.
    """

    def __init__(
        self,
        model: str = "llama3.2",
        summary_model: Optional[str] = None,
        base_url: str | None = None,
        timeout: float = 300,
    ):
        self.model = model
        self.summary_model = summary_model or model
        self.base_url = ollama_base_url(base_url)
        self.timeout = timeout
        self._health = HealthCache(self.base_url)

    @property
    def model_name(self) -> str:
        return self.model

    def chat(
        self,
        messages: list[ChatMessage],
        *,
        tools: Optional[list[dict]] = None,
        options: Optional[dict] = None,
        model: Optional[str] = None,
    ) -> ChatMessage:
        body: dict[str, Any] = {
            "model": model or self.model,
            "messages": [m.to_dict() for m in messages],
            "stream": False,
        }
        if tools:
            body["tools"] = tools
        if options:
            body["options"] = options
        data = _post(self.base_url, "/api/chat", body, (10, self.timeout), "chat")
        msg = data.get("message") or {}
        return ChatMessage(
            role=msg.get("role") or "assistant",
            content=(msg.get("content") or "").strip(),
            tool_calls=[ToolCall.from_dict(tc) for tc in msg.get("tool_calls") or []],
        )

    def summarize(self, text: str) -> str:
        if not self.summary_model or not text:
            return ""
        truncated = text[:MAX_SUMMARY_INPUT]
        reply = self.chat(
            [
                ChatMessage("system", SUMMARY_SYSTEM_PROMPT),
                ChatMessage("user", f"Summarise the following text:\n\n{truncated}\n\nSummary:"),
            ],
            model=self.summary_model,
        )
        return reply.content

    def available(self) -> bool:
        return self._health.check()


# Register providers
_registry = get_registry()
_registry.register_embedding("ollama", OllamaEmbedding)
_registry.register_chat("ollama", OllamaChat)
