"""Caller-owned run control token with two independent stop semantics."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class RunControl:
    """Cancellation token shared by the caller, the orchestrator and agent sessions.

    ``cancel()`` is immediate: it runs every registered callback (agent
    sessions register one that signals their child process) and the
    orchestrator ends the run as soon as it observes the flag.
    ``request_stop()`` is graceful: it is only read at the end of an iteration.
    Both are safe to call from any thread, including signal handlers.
    """

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._stop_requested = threading.Event()
        self._lock = threading.RLock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def request_stop(self) -> None:
        self._stop_requested.set()

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception:  # noqa: BLE001
                logger.warning("Cancel callback failed", exc_info=True)

    def add_cancel_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it.

        A callback added after ``cancel()`` runs immediately.
        """

        with self._lock:
            already_cancelled = self._cancelled.is_set()
            if not already_cancelled:
                self._callbacks.append(callback)
        if already_cancelled:
            callback()

        def _remove() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _remove
