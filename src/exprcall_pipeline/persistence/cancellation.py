"""Cooperative cancellation of blocking store operations.

A supervising thread calls `CancellationToken.cancel()`; the worker thread
running a query observes it and raises `QueryInterruptedError`. The
cancelling thread never raises on behalf of the worker.
"""

import threading
from contextlib import contextmanager
from typing import Callable, Iterator

import structlog

from exprcall_pipeline.errors import QueryInterruptedError

logger = structlog.get_logger(__name__)


class CancellationToken:
    """Thread-safe cancellation flag with interrupt callbacks."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Flag the token and interrupt the operations registered on it."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                # The worker still sees the flag after its query returns
                logger.warning("cancel_callback_failed", error=str(exc))

    def raise_if_cancelled(self) -> None:
        """
        Raises:
            QueryInterruptedError: If the token was cancelled
        """
        if self._event.is_set():
            raise QueryInterruptedError("Operation cancelled")

    @contextmanager
    def on_cancel(self, callback: Callable[[], None]) -> Iterator[None]:
        """Run `callback` if the token is cancelled while the block executes."""
        with self._lock:
            self._callbacks.append(callback)
        try:
            self.raise_if_cancelled()
            yield
        finally:
            with self._lock:
                self._callbacks.remove(callback)

    @contextmanager
    def timeout_after(self, seconds: float | None) -> Iterator["CancellationToken"]:
        """Cancel the token if the block runs longer than `seconds`.

        No timer is started when `seconds` is None.
        """
        if seconds is None:
            yield self
            return
        timer = threading.Timer(seconds, self.cancel)
        timer.daemon = True
        timer.start()
        try:
            yield self
        finally:
            timer.cancel()
