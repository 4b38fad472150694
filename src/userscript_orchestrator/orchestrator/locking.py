"""Per-conversation write serialization."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class ConversationBusyError(RuntimeError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(
            f"Conversation {conversation_id} is already processing a request. "
            "Wait for it to finish or cancel it."
        )
        self.conversation_id = conversation_id


class ConversationLocks:
    """One re-entrant lock per conversation id.

    Re-entrancy lets an approval action resend through ``advance`` on the
    same thread without tripping over its own lock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, conversation_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[conversation_id] = lock
            return lock

    @contextmanager
    def hold(self, conversation_id: str, *, blocking: bool = False) -> Iterator[None]:
        lock = self._lock_for(conversation_id)
        if not lock.acquire(blocking=blocking):
            raise ConversationBusyError(conversation_id)
        try:
            yield
        finally:
            lock.release()

    def discard(self, conversation_id: str) -> None:
        with self._guard:
            self._locks.pop(conversation_id, None)
