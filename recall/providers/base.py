"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable


# -----------------------------------------------------------------------------
# Chat messages
# -----------------------------------------------------------------------------

@dataclass
class ToolCall:
    """A function call requested by the chat model."""
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"function": {"name": self.name, "arguments": self.arguments}}

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        """Parse an Ollama/OpenAI style tool call; string arguments are decoded as JSON."""
        fn = data.get("function") or {}
        raw = fn.get("arguments")
        if isinstance(raw, str):
            try:
                args = json.loads(raw or "{}")
            except json.JSONDecodeError:
                args = {}
        elif isinstance(raw, dict):
            args = raw
        else:
            args = {}
        if not isinstance(args, dict):
            args = {}
        return cls(name=fn.get("name") or "", arguments=args)


@dataclass
class ChatMessage:
    """
    One message in a chat exchange.

    Attributes:
        role: "system", "user", "assistant" or "tool"
        content: Message text
        tool_calls: Calls requested by the assistant (assistant messages only)
        name: Tool name (tool messages only)
    """
    role: str
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    name: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            d["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.name:
            d["name"] = self.name
        return d


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same model must be used for capture and for queries; the store
    records the first observed model and dimension and rejects vectors of
    another dimension.
    """

    @property
    def model_name(self) -> str:
        """Name of the embedding model (recorded in the embedding metadata)."""
        ...

    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Raises:
            ProviderError: On network/HTTP failure or an empty response
        """
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts, one per input, in order.

        Raises:
            ProviderError: On failure or when the response length differs
        """
        ...

    def available(self) -> bool:
        """Cheap health check of the provider endpoint."""
        ...


# -----------------------------------------------------------------------------
# Chat
# -----------------------------------------------------------------------------

@runtime_checkable
class ChatProvider(Protocol):
    """
    Chat completion with optional tool calling.

    Used for query rewriting, question decomposition, reranking, answer
    synthesis and page summaries.
    """

    @property
    def model_name(self) -> str:
        ...

    def chat(
        self,
        messages: list[ChatMessage],
        *,
        tools: Optional[list[dict]] = None,
        options: Optional[dict] = None,
    ) -> ChatMessage:
        """
        Send a conversation and return the assistant's reply.

        Raises:
            ProviderError: On network/HTTP failure
        """
        ...

    def summarize(self, text: str) -> str:
        """Summarize page text. Returns empty string when no summary model is set."""
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and can be instantiated from configuration.
    This allows the store configuration (TOML) to specify providers by name
    rather than requiring code changes.

    Example:
        registry = get_registry()
        provider = registry.create_embedding("ollama", {"model": "embeddinggemma"})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._chat_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load provider modules so they register themselves."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        from . import ollama  # noqa: F401

    # Registration methods

    def register_embedding(self, name: str, provider_class: type) -> None:
        """Register an embedding provider class."""
        self._embedding_providers[name] = provider_class

    def register_chat(self, name: str, provider_class: type) -> None:
        """Register a chat provider class."""
        self._chat_providers[name] = provider_class

    # Factory methods

    @staticmethod
    def _create_provider(kind: str, name: str, providers: dict, params: dict | None):
        """Shared factory logic for all provider types."""
        if name not in providers:
            available = ", ".join(providers.keys()) or "none"
            raise ValueError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return providers[name](**(params or {}))
        except TypeError as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}"
            ) from e

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        """Create an embedding provider instance."""
        self._ensure_providers_loaded()
        return self._create_provider("embedding", name, self._embedding_providers, params)

    def create_chat(self, name: str, params: dict | None = None) -> Optional[ChatProvider]:
        """Create a chat provider instance; ``none`` (or empty) means no chat model."""
        if not name or name == "none":
            return None
        self._ensure_providers_loaded()
        return self._create_provider("chat", name, self._chat_providers, params)

    # Introspection

    def list_chat_providers(self) -> list[str]:
        self._ensure_providers_loaded()
        return list(self._chat_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
