"""
Tests for the Ollama providers and the provider registry.

HTTP is mocked; no model server is needed.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from recall.errors import ProviderError
from recall.providers.base import ChatMessage, ToolCall, get_registry
from recall.providers.ollama import OllamaChat, OllamaEmbedding
from recall.providers.ollama_utils import HealthCache, ollama_base_url, ollama_list_models


def response(data=None, status: int = 200, text: str = ""):
    resp = MagicMock()
    resp.ok = 200 <= status < 300
    resp.status_code = status
    resp.text = text
    resp.json.return_value = data if data is not None else {}
    return resp


class TestBaseUrl:

    def test_explicit(self, monkeypatch):
        monkeypatch.setenv("OLLAMA_HOST", "http://env-host:1")
        assert ollama_base_url("http://box:11434/") == "http://box:11434"

    def test_env_without_scheme(self, monkeypatch):
        monkeypatch.setenv("OLLAMA_HOST", "gpu:11434")
        assert ollama_base_url() == "http://gpu:11434"

    def test_default(self, monkeypatch):
        monkeypatch.delenv("OLLAMA_HOST", raising=False)
        assert ollama_base_url() == "http://127.0.0.1:11434"


class TestOllamaEmbedding:

    def test_embed(self):
        provider = OllamaEmbedding(model="embeddinggemma", base_url="http://box:1")
        with patch("recall.providers.ollama.requests.post",
                   return_value=response({"embeddings": [[0.1, 0.2]]})) as post:
            assert provider.embed("hello") == [0.1, 0.2]
        url = post.call_args.args[0]
        body = post.call_args.kwargs["json"]
        assert url == "http://box:1/api/embed"
        assert body == {"model": "embeddinggemma", "input": "hello"}
        assert post.call_args.kwargs["timeout"] == (10, 120)

    def test_embed_batch(self):
        provider = OllamaEmbedding(base_url="http://box:1")
        with patch("recall.providers.ollama.requests.post",
                   return_value=response({"embeddings": [[1.0], [2.0]]})) as post:
            assert provider.embed_batch(["a", "b"]) == [[1.0], [2.0]]
        assert post.call_args.kwargs["json"]["input"] == ["a", "b"]

    def test_batch_length_mismatch(self):
        provider = OllamaEmbedding(base_url="http://box:1")
        with patch("recall.providers.ollama.requests.post",
                   return_value=response({"embeddings": [[1.0]]})):
            with pytest.raises(ProviderError, match="1 embeddings for 2 inputs"):
                provider.embed_batch(["a", "b"])

    def test_empty_batch_skips_request(self):
        provider = OllamaEmbedding(base_url="http://box:1")
        with patch("recall.providers.ollama.requests.post") as post:
            assert provider.embed_batch([]) == []
        post.assert_not_called()

    def test_http_error(self):
        provider = OllamaEmbedding(base_url="http://box:1")
        with patch("recall.providers.ollama.requests.post",
                   return_value=response(status=500, text="model not found")):
            with pytest.raises(ProviderError, match="HTTP 500"):
                provider.embed("hello")

    def test_connection_error(self):
        provider = OllamaEmbedding(base_url="http://box:1")
        with patch("recall.providers.ollama.requests.post",
                   side_effect=requests.ConnectionError("refused")):
            with pytest.raises(ProviderError):
                provider.embed("hello")

    def test_empty_embedding(self):
        provider = OllamaEmbedding(base_url="http://box:1")
        with patch("recall.providers.ollama.requests.post",
                   return_value=response({"embeddings": []})):
            with pytest.raises(ProviderError):
                provider.embed("hello")


class TestOllamaChat:

    def test_chat_with_tools(self):
        provider = OllamaChat(model="llama3.2", base_url="http://box:1")
        reply = {"message": {
            "role": "assistant",
            "content": "  thinking  ",
            "tool_calls": [
                {"function": {"name": "fetch_more", "arguments": {"url": "u", "chunkIndex": 2}}},
                {"function": {"name": "search_memory", "arguments": '{"query": "raft"}'}},
            ],
        }}
        tools = [{"type": "function", "function": {"name": "fetch_more"}}]
        with patch("recall.providers.ollama.requests.post", return_value=response(reply)) as post:
            msg = provider.chat([ChatMessage("user", "hi")], tools=tools, options={"temperature": 0.2})
        body = post.call_args.kwargs["json"]
        assert body["model"] == "llama3.2"
        assert body["stream"] is False
        assert body["tools"] == tools
        assert body["options"] == {"temperature": 0.2}
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        assert msg.content == "thinking"
        assert [tc.name for tc in msg.tool_calls] == ["fetch_more", "search_memory"]
        assert msg.tool_calls[0].arguments == {"url": "u", "chunkIndex": 2}
        assert msg.tool_calls[1].arguments == {"query": "raft"}

    def test_tool_messages_serialized(self):
        provider = OllamaChat(base_url="http://box:1")
        history = [
            ChatMessage("assistant", "", tool_calls=[ToolCall("get_page_summary", {"url": "u"})]),
            ChatMessage("tool", '{"ok": true}', name="get_page_summary"),
        ]
        with patch("recall.providers.ollama.requests.post",
                   return_value=response({"message": {"content": "done"}})) as post:
            provider.chat(history)
        sent = post.call_args.kwargs["json"]["messages"]
        assert sent[0]["tool_calls"] == [{"function": {"name": "get_page_summary", "arguments": {"url": "u"}}}]
        assert sent[1] == {"role": "tool", "content": '{"ok": true}', "name": "get_page_summary"}

    def test_summarize_uses_summary_model(self):
        provider = OllamaChat(model="big", summary_model="small", base_url="http://box:1")
        with patch("recall.providers.ollama.requests.post",
                   return_value=response({"message": {"content": "A summary."}})) as post:
            assert provider.summarize("long text") == "A summary."
        assert post.call_args.kwargs["json"]["model"] == "small"

    def test_summarize_empty_text(self):
        provider = OllamaChat(base_url="http://box:1")
        with patch("recall.providers.ollama.requests.post") as post:
            assert provider.summarize("") == ""
        post.assert_not_called()


class TestToolCall:

    def test_bad_argument_json(self):
        call = ToolCall.from_dict({"function": {"name": "x", "arguments": "{not json"}})
        assert call.name == "x"
        assert call.arguments == {}

    def test_non_object_arguments(self):
        assert ToolCall.from_dict({"function": {"name": "x", "arguments": "[1, 2]"}}).arguments == {}


class TestHealth:

    def test_cached(self):
        cache = HealthCache("http://box:1", ttl=60)
        with patch("recall.providers.ollama_utils.requests.get", return_value=response()) as get:
            assert cache.check() is True
            assert cache.check() is True
        assert get.call_count == 1

    def test_unreachable(self):
        cache = HealthCache("http://box:1")
        with patch("recall.providers.ollama_utils.requests.get",
                   side_effect=requests.ConnectionError("refused")):
            assert cache.check() is False

    def test_list_models(self):
        data = {"models": [{"name": "llama3.2:latest"}, {"name": "embeddinggemma"}]}
        with patch("recall.providers.ollama_utils.requests.get", return_value=response(data)):
            assert ollama_list_models("http://box:1") == ["llama3.2:latest", "embeddinggemma"]

    def test_list_models_unreachable(self):
        with patch("recall.providers.ollama_utils.requests.get",
                   side_effect=requests.ConnectionError("refused")):
            with pytest.raises(RuntimeError, match="Cannot reach Ollama"):
                ollama_list_models("http://box:1")


class TestRegistry:

    def test_no_chat_model(self):
        assert get_registry().create_chat("none") is None
        assert get_registry().create_chat("") is None

    def test_create_ollama(self):
        registry = get_registry()
        embedding = registry.create_embedding("ollama", {"model": "nomic-embed-text", "base_url": "http://box:1"})
        assert isinstance(embedding, OllamaEmbedding)
        assert embedding.model_name == "nomic-embed-text"
        chat = registry.create_chat("ollama", {"model": "qwen2.5"})
        assert isinstance(chat, OllamaChat)
        assert "ollama" in registry.list_chat_providers()

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown embedding provider"):
            get_registry().create_embedding("nope")

    def test_bad_params(self):
        with pytest.raises(RuntimeError):
            get_registry().create_embedding("ollama", {"not_a_param": 1})
