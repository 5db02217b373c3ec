"""
Retrieval Error Taxonomy and Cancellation

Branch-local failures (embedding, store timeout, malformed store query) are
RetrievalError subclasses: searchers and the orchestrator catch them, log
and degrade. RetrievalCancelled is the only error retrieve() lets escape; stores
raise it when a cancelled token aborted their in-flight statement.
"""

import time
import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RetrievalError(Exception):
    """Base class for degradable retrieval failures."""

    def __init__(self, message: str, method: Optional[str] = None, corpus: Optional[str] = None):
        super().__init__(message)
        self.method = method
        self.corpus = corpus


class EmbeddingFailure(RetrievalError):
    """Embedding provider unreachable or returned an error."""


class StoreTimeout(RetrievalError):
    """A store call exceeded its deadline (statement_timeout or branch timeout)."""


class StoreQueryError(RetrievalError):
    """The underlying store rejected or failed a query."""


class RetrievalCancelled(Exception):
    """The caller cancelled the retrieve() call. Partial results are discarded."""


class CancellationToken:
    """
    Caller-supplied cancellation signal with an optional deadline.

    Usage:
        token = CancellationToken(timeout_s=2.0)
        retriever.retrieve(query, cancel_token=token)
        token.cancel()  # from another thread

    Stores register a callback for the duration of a query so cancel()
    (or the deadline) aborts the statement on the server.
    """

    def __init__(self, timeout_s: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout_s if timeout_s is not None else None
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._timer: Optional[threading.Timer] = None

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RetrievalCancelled("Retrieval cancelled by caller")

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancellation; runs it right away if already cancelled."""
        with self._lock:
            if not self.cancelled:
                self._callbacks.append(callback)
                if self._deadline is not None and self._timer is None:
                    self._timer = threading.Timer(self.remaining(), self.cancel)
                    self._timer.daemon = True
                    self._timer.start()
                return
        self.cancel()
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)
            # Nothing left to notify at the deadline
            if not self._callbacks and self._timer is not None:
                self._timer.cancel()
                self._timer = None
