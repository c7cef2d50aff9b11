"""
Serialized capture queue.

One worker thread processes captured pages strictly in FIFO order, one URL
at a time. Re-enqueueing a URL that is still queued replaces its payload
instead of duplicating it; a URL that is being processed right now is not
queued again. Failures are retried with exponential backoff via timers, and
abandoned after ``max_attempts``.

Pending payloads and processing entries live in a PendingCaptureStore so
that a failed capture can be inspected and retried later.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .errors import CaptureError, IncompatibleEmbeddingError, log_exception
from .pending_captures import PendingCaptureStore
from .types import CaptureMessage

logger = logging.getLogger(__name__)

# Errors that another attempt cannot fix
PERMANENT_ERRORS = (CaptureError, IncompatibleEmbeddingError)


@dataclass
class _QueuedCapture:
    message: CaptureMessage
    delay: float = 0.0


class CaptureQueue:
    """
    FIFO capture queue with a single worker thread.

    Args:
        handler: Called with each message on the worker thread
        pending: Persistent payload/processing state
        max_attempts: Failures tolerated before a capture is abandoned
        retry_backoff: Base delay in seconds, doubled per attempt
    """

    def __init__(
        self,
        handler: Callable[[CaptureMessage], Any],
        pending: PendingCaptureStore,
        *,
        max_attempts: int = 3,
        retry_backoff: float = 1.0,
    ):
        self._handler = handler
        self._pending = pending
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff

        self._items: list[_QueuedCapture] = []
        self._current: Optional[str] = None
        self._timers: dict[str, threading.Timer] = {}
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def enqueue(self, message: CaptureMessage, delay: float = 0.0) -> bool:
        """
        Queue a capture. Returns False when it was dropped because the same
        URL is being processed, or the queue is closed.
        """
        url = message.url
        with self._cond:
            if self._stop.is_set():
                return False
            if url == self._current:
                logger.debug("Capture for %s already in progress, dropped", url)
                return False
            for item in self._items:
                if item.message.url == url:
                    item.message = message
                    item.delay = max(item.delay, delay)
                    logger.debug("Replaced queued capture for %s", url)
                    return True
            self._items.append(_QueuedCapture(message, delay))
            self._ensure_worker()
            self._cond.notify_all()
        return True

    def cancel(self, url: str) -> bool:
        """
        Drop any queued entry and scheduled retry for ``url`` and forget its
        payload and processing entry. An in-flight capture runs to completion.
        """
        with self._cond:
            before = len(self._items)
            self._items = [it for it in self._items if it.message.url != url]
            found = len(self._items) != before
            timer = self._timers.pop(url, None)
            if timer is not None:
                timer.cancel()
                found = True
            self._cond.notify_all()
        self._pending.remove_processing(url)
        self._pending.remove_payload(url)
        return found

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Block until nothing is queued, in flight or scheduled for retry.

        Returns True when the queue went idle, False on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._items or self._current is not None or self._timers:
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    self._cond.wait(remaining)
        return True

    @property
    def current(self) -> Optional[str]:
        """URL being processed right now, if any."""
        with self._cond:
            return self._current

    def queued_urls(self) -> list[str]:
        with self._cond:
            return [it.message.url for it in self._items]

    def close(self, timeout: float = 5.0) -> None:
        """Stop the worker and cancel scheduled retries."""
        with self._cond:
            self._stop.set()
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._cond.notify_all()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        # Caller holds self._cond
        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(
                target=self._run, name="recall-capture", daemon=True
            )
            self._thread.start()

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._items and not self._stop.is_set():
                    self._cond.wait()
                if self._stop.is_set():
                    return
                item = self._items.pop(0)
                self._current = item.message.url

            try:
                if item.delay > 0 and self._stop.wait(item.delay):
                    return
                self._process(item.message)
            finally:
                with self._cond:
                    self._current = None
                    self._cond.notify_all()

    def _process(self, message: CaptureMessage) -> None:
        url = message.url
        self._pending.add_processing(url, message.title, message.timestamp)
        try:
            self._handler(message)
        except Exception as e:
            self._on_failure(message, e)
            return
        self._pending.remove_processing(url)
        self._pending.remove_payload(url)

    def _on_failure(self, message: CaptureMessage, error: Exception) -> None:
        url = message.url
        attempts = self._pending.record_failure(url, str(error))
        if isinstance(error, PERMANENT_ERRORS):
            logger.warning("Capture of %s failed permanently: %s", url, error)
            self._pending.abandon(url, str(error))
            return
        if attempts > self.max_attempts:
            log_exception(error, f"capture {url}")
            self._pending.abandon(url, str(error))
            return
        backoff = self.retry_backoff * (2 ** (attempts - 1))
        logger.info("Capture of %s failed (attempt %d), retrying in %.1fs: %s",
                    url, attempts, backoff, error)
        timer = threading.Timer(backoff, self._retry, args=(message,))
        timer.daemon = True
        with self._cond:
            if self._stop.is_set():
                return
            previous = self._timers.pop(url, None)
            if previous is not None:
                previous.cancel()
            self._timers[url] = timer
        timer.start()

    def _retry(self, message: CaptureMessage) -> None:
        # Condition lock is re-entrant; enqueue before the timer disappears
        # so drain() never sees a gap
        with self._cond:
            if self._timers.get(message.url) is not threading.current_thread():
                # Cancelled or superseded
                return
            self._pending.update_processing(message.url, status="retrying")
            self.enqueue(message)
            del self._timers[message.url]
            self._cond.notify_all()
