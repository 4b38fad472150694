"""Cancellation tokens for in-flight model calls."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """Set once by the caller; observed by the model provider.

    Abort callbacks run exactly once, on the thread that cancels, so a
    provider can close its open connection and unblock the waiting request.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # noqa: BLE001
                logger.exception("cancellation event=abort_callback_failed")

    def on_cancel(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout_s: float) -> bool:
        return self._event.wait(timeout_s)


class DoublePressCanceller:
    """Confirm an abort only when a second cancel signal arrives in the window."""

    def __init__(self, window_s: float = 0.5, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_s = window_s
        self._clock = clock
        self._lock = threading.Lock()
        self._last_press: dict[str, float] = {}

    def press(self, key: str) -> bool:
        """Record a cancel signal for ``key``; True when it confirms the abort."""
        now = self._clock()
        with self._lock:
            previous = self._last_press.get(key)
            if previous is not None and now - previous <= self.window_s:
                self._last_press.pop(key, None)
                return True
            self._last_press[key] = now
            return False

    def reset(self, key: str) -> None:
        with self._lock:
            self._last_press.pop(key, None)
