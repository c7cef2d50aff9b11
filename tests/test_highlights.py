"""
Tests for daily highlights and summary backfill.
"""

from datetime import datetime

import pytest

from recall.highlights import DIGEST_PAGES, NO_PAGES_MESSAGE, validate_date

from tests.conftest import MockChatProvider, capture_page


def ts(day: int, hour: int = 12) -> int:
    return int(datetime(2024, 3, day, hour).timestamp() * 1000)


class TestDigest:
    """Per-date digests."""

    def test_format(self, recall_factory):
        rc = recall_factory(chat=MockChatProvider(summary="Mock summary."))
        capture_page(rc, "https://raft.test/a", "raft text", "Raft explained", timestamp=ts(5, 9))
        capture_page(rc, "https://pasta.test/b", "pasta text", "Pasta at home", timestamp=ts(5, 18))
        capture_page(rc, "https://other.test/", "other day", "Other", timestamp=ts(6))

        digest = rc.highlights("2024-03-05")
        assert digest == (
            "• Pasta at home (domain: pasta.test): Mock summary.\n\n"
            "• Raft explained (domain: raft.test): Mock summary."
        )

    def test_no_pages(self, recall):
        assert recall.highlights("2024-03-05") == NO_PAGES_MESSAGE

    def test_invalid_date(self, recall):
        with pytest.raises(ValueError):
            recall.highlights("05/03/2024")
        with pytest.raises(ValueError):
            validate_date("2024-13-01")

    def test_limited_to_newest_pages(self, recall_factory):
        rc = recall_factory(chat=MockChatProvider())
        for i in range(DIGEST_PAGES + 2):
            capture_page(rc, f"https://p{i}.test/", f"page {i}", f"Page {i}", timestamp=ts(5, i + 1))
        digest = rc.highlights("2024-03-05")
        assert digest.count("• ") == DIGEST_PAGES
        assert digest.startswith(f"• Page {DIGEST_PAGES + 1} ")

    def test_cached_until_page_count_changes(self, recall_factory):
        rc = recall_factory(chat=MockChatProvider())
        capture_page(rc, "https://a.test/", "first", "First", timestamp=ts(5))
        first = rc.highlights("2024-03-05")
        assert rc._store.get_highlight("2024-03-05")["text"] == first
        assert rc.highlights("2024-03-05") == first

        capture_page(rc, "https://b.test/", "second", "Second", timestamp=ts(5, 13))
        second = rc.highlights("2024-03-05")
        assert "Second" in second
        assert rc._store.get_highlight("2024-03-05")["count"] == 2

    def test_deleting_a_page_refreshes_digest(self, recall_factory):
        rc = recall_factory(chat=MockChatProvider())
        capture_page(rc, "https://a.test/", "first", "First", timestamp=ts(5))
        capture_page(rc, "https://b.test/", "second", "Second", timestamp=ts(5, 13))
        rc.highlights("2024-03-05")
        rc.delete_by_url("https://b.test/")
        assert "Second" not in rc.highlights("2024-03-05")


class TestSummaryBackfill:
    """Missing summaries are filled in the background."""

    def test_pending_summary_filled(self, recall_factory):
        chat = MockChatProvider(summary="")
        rc = recall_factory(chat=chat)
        capture_page(rc, "https://a.test/", "some page text", "Page", timestamp=ts(5))

        chat.summary = "Later summary."
        assert rc.highlights("2024-03-05") == "• Page (domain: a.test): (summary pending)"
        assert rc.drain(5)
        assert rc.highlights("2024-03-05") == "• Page (domain: a.test): Later summary."
        assert rc.get_page(rc.list_pages()[0]["id"]).summary == "Later summary."

    def test_empty_summary_retried_then_given_up(self, recall_factory):
        chat = MockChatProvider(summary="")
        rc = recall_factory(chat=chat)
        capture_page(rc, "https://a.test/", "some page text", "Page", timestamp=ts(5))
        assert chat.summaries == 1

        rc.highlights("2024-03-05")
        assert rc.drain(5)
        assert chat.summaries == 1 + 3

    def test_no_backfill_without_chat(self, recall):
        capture_page(recall, "https://a.test/", "some page text", "Page", timestamp=ts(5))
        assert "(summary pending)" in recall.highlights("2024-03-05")
        assert recall.drain(1)


class TestDates:
    """Dates with captures."""

    def _seed(self, rc):
        capture_page(rc, "https://a.test/", "a", timestamp=ts(3))
        capture_page(rc, "https://b.test/", "b", timestamp=ts(5))
        capture_page(rc, "https://c.test/", "c", timestamp=ts(5, 20))
        capture_page(rc, "https://d.test/", "d", timestamp=ts(7))

    def test_newest_first_with_counts(self, recall):
        self._seed(recall)
        days, total = recall.highlight_dates()
        assert total == 3
        assert [(d.date, d.count) for d in days] == [
            ("2024-03-07", 1), ("2024-03-05", 2), ("2024-03-03", 1),
        ]

    def test_range_and_paging(self, recall):
        self._seed(recall)
        days, total = recall.highlight_dates("2024-03-04", "2024-03-08")
        assert total == 2
        assert [d.date for d in days] == ["2024-03-07", "2024-03-05"]

        days, total = recall.highlight_dates(offset=1, limit=1)
        assert total == 3
        assert [d.date for d in days] == ["2024-03-05"]

    def test_invalid_bounds(self, recall):
        with pytest.raises(ValueError):
            recall.highlight_dates("March")
