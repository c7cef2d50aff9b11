"""
Provider interfaces and implementations.

Concrete providers register themselves with the global registry on import.
"""

from .base import (
    ChatMessage,
    ChatProvider,
    EmbeddingProvider,
    ProviderRegistry,
    ToolCall,
    get_registry,
)

__all__ = [
    "ChatMessage",
    "ChatProvider",
    "EmbeddingProvider",
    "ProviderRegistry",
    "ToolCall",
    "get_registry",
]
