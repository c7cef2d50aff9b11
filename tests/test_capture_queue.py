"""
Tests for the serialized capture queue.
"""

import threading
import time

import pytest

from recall.capture_queue import CaptureQueue
from recall.errors import CaptureError, ProviderError
from recall.pending_captures import PendingCaptureStore
from recall.types import CaptureMessage


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


class RecordingHandler:
    """Handler that records calls, can block on one URL and can fail."""

    def __init__(self, block_url=None, failures=None):
        self.calls: list[CaptureMessage] = []
        self.block_url = block_url
        self.release = threading.Event()
        self.failures = failures or {}
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __call__(self, message: CaptureMessage):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls.append(message)
        try:
            if message.url == self.block_url:
                self.release.wait(5)
            remaining = self.failures.get(message.url)
            if remaining:
                error = remaining.pop(0)
                raise error
        finally:
            with self._lock:
                self.active -= 1

    def urls(self) -> list[str]:
        return [m.url for m in self.calls]


@pytest.fixture
def pending(tmp_path):
    store = PendingCaptureStore(tmp_path / "queue.db")
    yield store
    store.close()


def make_queue(handler, pending, **kw) -> CaptureQueue:
    kw.setdefault("retry_backoff", 0.01)
    return CaptureQueue(handler, pending, **kw)


def msg(url: str, text: str = "body") -> CaptureMessage:
    return CaptureMessage(url=url, title=url, text=text)


class TestOrdering:
    """FIFO, one URL at a time."""

    def test_fifo(self, pending):
        handler = RecordingHandler()
        queue = make_queue(handler, pending)
        for url in ("https://a.test/", "https://b.test/", "https://c.test/"):
            queue.enqueue(msg(url))
        assert queue.drain(5)
        assert handler.urls() == ["https://a.test/", "https://b.test/", "https://c.test/"]
        assert handler.max_active == 1
        queue.close()

    def test_success_clears_pending_state(self, pending):
        handler = RecordingHandler()
        queue = make_queue(handler, pending)
        message = msg("https://a.test/")
        pending.save_payload(message)
        queue.enqueue(message)
        assert queue.drain(5)
        assert pending.get_processing("https://a.test/") is None
        assert pending.get_payload("https://a.test/") is None
        queue.close()

    def test_delay_honored(self, pending):
        handler = RecordingHandler()
        queue = make_queue(handler, pending)
        started = time.monotonic()
        queue.enqueue(msg("https://a.test/"), delay=0.1)
        assert queue.drain(5)
        assert time.monotonic() - started >= 0.1
        queue.close()


class TestDeduplication:
    """Re-enqueueing a URL never duplicates work."""

    def test_queued_duplicate_replaces_payload(self, pending):
        handler = RecordingHandler(block_url="https://block.test/")
        queue = make_queue(handler, pending)
        queue.enqueue(msg("https://block.test/"))
        assert wait_for(lambda: queue.current == "https://block.test/")

        assert queue.enqueue(msg("https://a.test/", "first"), delay=0.05)
        assert queue.enqueue(msg("https://a.test/", "second"), delay=0.0)
        assert queue.queued_urls() == ["https://a.test/"]
        assert queue._items[0].delay == 0.05

        handler.release.set()
        assert queue.drain(5)
        a_calls = [m for m in handler.calls if m.url == "https://a.test/"]
        assert len(a_calls) == 1
        assert a_calls[0].text == "second"
        queue.close()

    def test_in_flight_duplicate_dropped(self, pending):
        handler = RecordingHandler(block_url="https://a.test/")
        queue = make_queue(handler, pending)
        queue.enqueue(msg("https://a.test/"))
        assert wait_for(lambda: handler.calls)
        assert queue.enqueue(msg("https://a.test/", "again")) is False
        handler.release.set()
        assert queue.drain(5)
        assert handler.urls() == ["https://a.test/"]
        queue.close()


class TestRetries:
    """Backoff retries and abandonment."""

    def test_transient_failure_retried(self, pending):
        handler = RecordingHandler(failures={
            "https://a.test/": [ProviderError("timeout"), ProviderError("timeout")],
        })
        queue = make_queue(handler, pending)
        pending.save_payload(msg("https://a.test/"))
        queue.enqueue(msg("https://a.test/"))
        assert queue.drain(5)
        assert handler.urls() == ["https://a.test/"] * 3
        assert pending.get_processing("https://a.test/") is None
        assert pending.get_payload("https://a.test/") is None
        queue.close()

    def test_abandoned_after_max_attempts(self, pending):
        handler = RecordingHandler(failures={
            "https://a.test/": [ProviderError("down") for _ in range(10)],
        })
        queue = make_queue(handler, pending, max_attempts=3)
        pending.save_payload(msg("https://a.test/"))
        queue.enqueue(msg("https://a.test/"))
        assert queue.drain(5)
        # Attempts 1-3 are retried, the fourth failure abandons
        assert len(handler.calls) == 4
        entry = pending.get_processing("https://a.test/")
        assert entry.status == "failed"
        assert entry.attempts == 4
        assert entry.last_error == "down"
        assert pending.get_payload("https://a.test/") is None
        queue.close()

    def test_new_capture_after_abandon_gets_fresh_retries(self, pending):
        handler = RecordingHandler(failures={
            "https://a.test/": [ProviderError("down") for _ in range(4)],
        })
        queue = make_queue(handler, pending, max_attempts=3)
        queue.enqueue(msg("https://a.test/"))
        assert queue.drain(5)
        assert pending.get_processing("https://a.test/").status == "failed"

        handler.failures["https://a.test/"] = [ProviderError("blip")]
        queue.enqueue(msg("https://a.test/", text="new body"))
        assert queue.drain(5)
        assert len(handler.calls) == 4 + 2
        assert pending.get_processing("https://a.test/") is None
        queue.close()

    def test_new_capture_after_abandon_reported_as_processing(self, pending):
        handler = RecordingHandler(block_url="https://a.test/")
        pending.add_processing("https://a.test/", "A", 1000)
        for _ in range(4):
            pending.record_failure("https://a.test/", "down")
        pending.abandon("https://a.test/")

        queue = make_queue(handler, pending)
        queue.enqueue(msg("https://a.test/"))
        assert wait_for(lambda: handler.calls)
        entry = pending.get_processing("https://a.test/")
        assert (entry.status, entry.attempts, entry.last_error) == ("processing", 0, None)
        handler.release.set()
        assert queue.drain(5)
        queue.close()

    def test_permanent_error_not_retried(self, pending):
        handler = RecordingHandler(failures={
            "https://a.test/": [CaptureError("no text")],
        })
        queue = make_queue(handler, pending)
        queue.enqueue(msg("https://a.test/"))
        assert queue.drain(5)
        assert len(handler.calls) == 1
        assert pending.get_processing("https://a.test/").status == "failed"
        queue.close()

    def test_failure_does_not_block_queue(self, pending):
        handler = RecordingHandler(failures={
            "https://a.test/": [CaptureError("bad")],
        })
        queue = make_queue(handler, pending)
        queue.enqueue(msg("https://a.test/"))
        queue.enqueue(msg("https://b.test/"))
        assert queue.drain(5)
        assert "https://b.test/" in handler.urls()
        assert pending.get_processing("https://b.test/") is None
        queue.close()


class TestCancelAndLifecycle:

    def test_cancel_queued(self, pending):
        handler = RecordingHandler(block_url="https://block.test/")
        queue = make_queue(handler, pending)
        queue.enqueue(msg("https://block.test/"))
        assert wait_for(lambda: queue.current == "https://block.test/")
        pending.save_payload(msg("https://a.test/"))
        queue.enqueue(msg("https://a.test/"))

        assert queue.cancel("https://a.test/") is True
        assert pending.get_payload("https://a.test/") is None
        handler.release.set()
        assert queue.drain(5)
        assert handler.urls() == ["https://block.test/"]
        queue.close()

    def test_cancel_unknown(self, pending):
        queue = make_queue(RecordingHandler(), pending)
        assert queue.cancel("https://nothing.test/") is False
        queue.close()

    def test_drain_timeout(self, pending):
        handler = RecordingHandler(block_url="https://block.test/")
        queue = make_queue(handler, pending)
        queue.enqueue(msg("https://block.test/"))
        assert queue.drain(0.05) is False
        handler.release.set()
        assert queue.drain(5) is True
        queue.close()

    def test_closed_queue_rejects(self, pending):
        queue = make_queue(RecordingHandler(), pending)
        queue.close()
        assert queue.enqueue(msg("https://a.test/")) is False
