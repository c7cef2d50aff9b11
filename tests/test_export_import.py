"""
Tests for export and tolerant import.
"""

import pytest

from recall.errors import ImportFormatError
from recall.transfer import SCHEMA_VERSION, map_page

from tests.conftest import MockEmbeddingProvider, capture_page


def basis(i: int, dim: int = 384) -> list[float]:
    v = [0.0] * dim
    v[i % dim] = 1.0
    return v


class TestExport:

    def test_structure(self, recall):
        capture_page(recall, "https://a.test/", "first page text", "First", timestamp=1000)
        capture_page(recall, "https://b.test/", "second page text", "Second", timestamp=2000)
        data = recall.export_data()
        assert data["schemaVersion"] == SCHEMA_VERSION
        assert data["exportedAt"].endswith("Z")
        assert data["embeddingMeta"] == {"model": "mock-model", "dim": 384}
        assert [p["url"] for p in data["pages"]] == ["https://a.test/", "https://b.test/"]
        page = data["pages"][0]
        assert page["canonicalUrl"] == "https://a.test/"
        assert len(page["versions"][0]["items"][0]["embedding"]) == 384
        assert isinstance(page["versions"][0]["hash"], int)

    def test_streaming_header_first(self, recall):
        capture_page(recall, "https://a.test/", "first page text")
        it = recall.export_iter()
        header = next(it)
        assert "pages" not in header
        assert [p["url"] for p in it] == ["https://a.test/"]

    def test_empty_store(self, recall):
        data = recall.export_data()
        assert data["pages"] == []
        assert "embeddingMeta" not in data


class TestImport:
    """Merging exported pages."""

    def test_round_trip_reuses_embeddings(self, recall_factory):
        source = recall_factory(name="source")
        capture_page(source, "https://a.test/", "first page text", "First", timestamp=1000)
        capture_page(source, "https://b.test/", "second page text", "Second", timestamp=2000)

        emb = MockEmbeddingProvider()
        target = recall_factory(name="target", embedding=emb)
        result = target.import_data(source.export_data())
        assert result.imported == 2
        assert result.skipped_incompatible == 0
        assert result.failed == 0
        assert emb.embed_calls == 0
        assert {p["url"] for p in target.list_pages()} == {"https://a.test/", "https://b.test/"}
        assert target.embedding_meta().dim == 384

    def test_reimport_does_not_duplicate(self, recall):
        capture_page(recall, "https://a.test/", "first page text", "First")
        data = recall.export_data()
        recall.import_data(data)
        recall.import_data(data)
        assert len(recall.list_pages()) == 1
        page = recall.get_page(recall.list_pages()[0]["id"])
        assert len(page.versions) == 1

    def test_imported_pages_searchable(self, recall_factory):
        source = recall_factory(name="source")
        capture_page(source, "https://a.test/", "first page text", "First")
        target = recall_factory(name="target")
        target.import_data(source.export_data())
        assert target.search("first page text")[0].url == "https://a.test/"

    def test_alternate_keys_and_bare_array(self, recall_factory):
        emb = MockEmbeddingProvider()
        rc = recall_factory(embedding=emb)
        result = rc.import_data([{
            "href": "https://a.test/post?utm_source=feed",
            "name": "A post",
            "time": "2024-03-05T12:00:00Z",
            "chunks": ["text one", {"content": "text two", "vector": basis(1)}],
        }])
        assert result.imported == 1
        page = rc.get_page(rc.list_pages()[0]["id"])
        assert page.title == "A post"
        assert page.canonical_url == "https://a.test/post"
        assert page.timestamp == 1709640000000
        assert [it.text for it in page.items] == ["text one", "text two"]
        assert all(len(it.embedding) == 384 for it in page.items)
        assert page.items[1].embedding == basis(1)
        assert emb.embed_calls == 1

    def test_versions_sorted_by_time(self, recall):
        recall.import_data([{
            "url": "https://a.test/",
            "title": "A",
            "versions": [
                {"timestamp": 3000, "hash": 3, "items": [{"text": "three", "embedding": basis(3)}]},
                {"timestamp": 1000, "hash": 1, "items": [{"text": "one", "embedding": basis(1)}]},
                {"timestamp": 2000, "hash": 2, "items": [{"text": "two", "embedding": basis(2)}]},
            ],
        }])
        page = recall.get_page(recall.list_pages()[0]["id"])
        assert [v.timestamp for v in page.versions] == [1000, 2000, 3000]
        assert page.latest.hash == 3
        assert page.text() == "three"

    def test_wrong_dimension_skipped(self, recall):
        capture_page(recall, "https://a.test/", "first page text")
        result = recall.import_data({
            "schemaVersion": 1,
            "embeddingMeta": {"model": "big-model", "dim": 768},
            "pages": [{
                "url": "https://b.test/",
                "versions": [{"timestamp": 1000, "items": [{"text": "x", "embedding": [0.5] * 768}]}],
            }],
        })
        assert result.skipped_incompatible == 1
        assert result.imported == 0
        assert len(recall.list_pages()) == 1
        assert recall.embedding_meta().dim == 384

    def test_dimension_adopted_on_empty_store(self, recall):
        result = recall.import_data({
            "embeddingMeta": {"model": "tiny-model", "dim": 4},
            "pages": [{
                "url": "https://b.test/",
                "versions": [{"timestamp": 1000, "items": [{"text": "x", "embedding": [0.5] * 4}]}],
            }],
        })
        assert result.imported == 1
        meta = recall.embedding_meta()
        assert (meta.model, meta.dim) == ("tiny-model", 4)

    def test_dimension_inferred_without_header(self, recall):
        result = recall.import_data([{
            "url": "https://b.test/",
            "items": [{"text": "x", "embedding": [0.5] * 4}],
        }])
        assert result.imported == 1
        assert recall.embedding_meta().dim == 4

    def test_bad_page_counted(self, recall):
        result = recall.import_data([
            {"title": "no url here"},
            "not even an object",
            {"url": "https://ok.test/", "items": [{"text": "fine"}]},
        ])
        assert result.failed == 2
        assert result.imported == 1

    def test_newer_schema_attempted(self, recall):
        result = recall.import_data({
            "schemaVersion": SCHEMA_VERSION + 1,
            "pages": [{"url": "https://ok.test/", "items": [{"text": "fine"}]}],
        })
        assert result.imported == 1

    @pytest.mark.parametrize("payload", ["nonsense", 42, {"pages": "nope"}, {"other": []}])
    def test_invalid_payload(self, recall, payload):
        with pytest.raises(ImportFormatError):
            recall.import_data(payload)


class TestMapPage:

    def test_single_version_from_flat_page(self):
        canonical, url, title, versions = map_page({
            "url": "https://a.test/#top",
            "timestamp": 5000,
            "summary": "flat summary",
            "items": [{"text": "body"}],
        })
        assert canonical == "https://a.test/"
        assert title == "https://a.test/#top"
        assert len(versions) == 1
        assert versions[0].timestamp == 5000
        assert versions[0].summary == "flat summary"

    def test_requires_url(self):
        with pytest.raises(ImportFormatError):
            map_page({"title": "nothing"})
