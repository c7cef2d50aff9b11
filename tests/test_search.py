"""
Tests for two-stage retrieval.
"""

import pytest

from recall.errors import ProviderError, ProviderUnavailable
from recall.providers.base import ChatMessage
from recall.search import generate_query_variations, make_snippet, query_tokens

from tests.conftest import MockChatProvider, MockEmbeddingProvider, capture_page


def basis(i: int, dim: int = 8) -> list[float]:
    v = [0.0] * dim
    v[i % dim] = 1.0
    return v


ONES = [1.0] * 8


class TestHelpers:

    def test_short_snippet_unchanged(self):
        assert make_snippet("  short text ") == "short text"

    def test_long_snippet_cut_at_word(self):
        text = "word " * 100
        snippet = make_snippet(text, limit=50)
        assert snippet.endswith("…")
        assert len(snippet) <= 51
        assert not snippet[:-1].endswith(" ")

    def test_query_tokens(self):
        assert query_tokens("How does Raft do it?") == ["how", "does", "raft"]
        assert query_tokens("") == []

    def test_query_variations(self):
        chat = MockChatProvider(responder=lambda m, t: "raft consensus\nraft consensus\nleader election\n\nlog replication\nextra")
        assert generate_query_variations(chat, "raft", n=3) == [
            "raft", "raft consensus", "leader election", "log replication",
        ]

    def test_query_variations_without_chat(self):
        assert generate_query_variations(None, "raft") == ["raft"]

    def test_query_variations_chat_failure(self):
        def failing(messages, tools):
            raise ProviderError("down")
        assert generate_query_variations(MockChatProvider(responder=failing), "raft") == ["raft"]


class TestRetrieval:
    """Both stages through the facade."""

    def test_exact_phrase_chunk_ranks_first(self, recall_factory):
        emb = MockEmbeddingProvider(dimension=8)
        query = "raft leader election"
        a_chunk = "notes on raft leader election in practice"
        b_chunk = "a different page about consensus"
        emb.fixed = {query: ONES, a_chunk: ONES, b_chunk: ONES}
        rc = recall_factory(embedding=emb)
        capture_page(rc, "https://b.test/", b_chunk, "Beta", chunks=[b_chunk])
        capture_page(rc, "https://a.test/", a_chunk, "Alpha", chunks=[a_chunk])

        hits = rc.search(query)
        assert hits[0].url == "https://a.test/"
        assert hits[0].contains_exact is True
        assert hits[1].contains_exact is False
        assert hits[0].weighted_score > hits[1].weighted_score

    def test_title_match_joins_prefilter(self, recall_factory):
        emb = MockEmbeddingProvider(dimension=8)
        emb.fixed = {"alpha text": basis(0), "beta text": basis(1), "raft": basis(0), "zebra": basis(0)}

        def configure(cfg):
            cfg.search.top_pages = 1
        rc = recall_factory(embedding=emb, configure=configure)
        capture_page(rc, "https://a.test/", "alpha text", "Alpha")
        capture_page(rc, "https://b.test/", "beta text", "Raft notes")

        assert {h.url for h in rc.quick_search("raft")} == {"https://a.test/", "https://b.test/"}
        assert {h.url for h in rc.quick_search("zebra")} == {"https://a.test/"}

    def test_all_versions_searched(self, recall_factory):
        emb = MockEmbeddingProvider(dimension=8)
        old = "quantum tunneling explained simply"
        new = "completely rewritten article"
        emb.fixed = {old: basis(0), new: basis(1), "quantum tunneling": basis(2)}
        rc = recall_factory(embedding=emb)
        capture_page(rc, "https://a.test/", old, "Physics", timestamp=1000)
        capture_page(rc, "https://a.test/", new, "Physics", timestamp=2000)

        hits = rc.quick_search("quantum tunneling", limit=10)
        exact = [h for h in hits if h.contains_exact]
        assert len(exact) == 1
        assert exact[0].timestamp == 1000

    def test_limit_and_empty_query(self, recall):
        capture_page(recall, "https://a.test/", "first page text")
        capture_page(recall, "https://b.test/", "second page text")
        assert len(recall.search("page text", limit=1)) == 1
        assert recall.search("   ") == []
        assert recall.search("page", limit=0) == []

    def test_new_capture_visible_to_next_search(self, recall):
        capture_page(recall, "https://a.test/", "first page text")
        assert {h.url for h in recall.search("text")} == {"https://a.test/"}
        capture_page(recall, "https://b.test/", "second page text")
        assert {h.url for h in recall.search("text")} == {"https://a.test/", "https://b.test/"}

    def test_deleted_page_disappears(self, recall):
        capture_page(recall, "https://a.test/", "first page text")
        capture_page(recall, "https://b.test/", "second page text")
        recall.search("text")
        assert recall.delete_by_url("https://a.test/") == 1
        assert {h.url for h in recall.search("text")} == {"https://b.test/"}

    def test_calibrated_without_rerank(self, recall):
        capture_page(recall, "https://a.test/", "first page text")
        hit = recall.search("first page text")[0]
        assert hit.rerank_score is None
        assert hit.calibrated == hit.similarity_pct
        assert 0 <= hit.calibrated <= 100

    def test_rerank_applied_with_chat(self, recall_factory):
        rc = recall_factory(chat=MockChatProvider())
        capture_page(rc, "https://a.test/", "first page text")
        hit = rc.search("first page")[0]
        assert hit.rerank_score == 5.0
        assert hit.llm_rank_pct == 50
        assert hit.calibrated == round(0.8 * hit.similarity_pct + 0.2 * 50)

    def test_rerank_disabled(self, recall_factory):
        chat = MockChatProvider()

        def configure(cfg):
            cfg.search.rerank = False
        rc = recall_factory(chat=chat, configure=configure)
        capture_page(rc, "https://a.test/", "first page text")
        hit = rc.search("first page")[0]
        assert hit.rerank_score is None
        assert chat.calls_with("cross-encoder") == []

    def test_query_rewrite(self, recall_factory):
        def responder(messages, tools):
            if "rewrites search queries" in messages[0].content:
                return "page one\nfirst document"
            return ""
        chat = MockChatProvider(responder=responder)
        emb = MockEmbeddingProvider()

        def configure(cfg):
            cfg.search.query_rewrite = True
            cfg.search.rerank = False
        rc = recall_factory(chat=chat, embedding=emb, configure=configure)
        capture_page(rc, "https://a.test/", "first page text")
        before = emb.embed_calls
        rc.quick_search("first page")
        assert emb.embed_calls - before == 3
        assert len(chat.calls_with("rewrites search queries")) == 1


class TestOffline:
    """Embedding failures at query time."""

    def test_offline_raises(self, recall):
        capture_page(recall, "https://a.test/", "first page text")
        provider = recall._embedder.provider
        provider.fail_all = True
        provider.online = False
        with pytest.raises(ProviderUnavailable):
            recall.search("first")

    def test_failed_embedding_online_returns_nothing(self, recall):
        capture_page(recall, "https://a.test/", "first page text")
        recall._embedder.provider.fail_all = True
        assert recall.search("first") == []
