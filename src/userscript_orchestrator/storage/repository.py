"""Read-through record cache over a storage backend.

The backend is the single source of truth. Every write goes to the backend
first and then replaces the cached record, so readers never observe a record
that was mutated in place.
"""

from __future__ import annotations

import threading

from userscript_orchestrator.storage.base import ScriptStorage, WorkingSet, filter_working_set
from userscript_orchestrator.storage.models import Conversation, Userscript


class ConversationNotFoundError(KeyError):
    pass


class UserscriptNotFoundError(KeyError):
    pass


class ConversationStore:
    def __init__(self, backend: ScriptStorage) -> None:
        self.backend = backend
        self._lock = threading.Lock()
        self._userscripts: dict[str, Userscript] = {}
        self._conversations: dict[str, Conversation] = {}
        self._working_set: WorkingSet | None = None

    def get_conversation(self, conversation_id: str) -> Conversation:
        with self._lock:
            cached = self._conversations.get(conversation_id)
        if cached is not None:
            return cached
        record = self.backend.get_conversation(conversation_id)
        if record is None or not record.domain:
            raise ConversationNotFoundError(conversation_id)
        with self._lock:
            self._conversations[conversation_id] = record
        return record

    def get_userscript(self, userscript_id: str) -> Userscript:
        with self._lock:
            cached = self._userscripts.get(userscript_id)
        if cached is not None:
            return cached
        record = self.backend.get_userscript(userscript_id)
        if record is None:
            raise UserscriptNotFoundError(userscript_id)
        with self._lock:
            self._userscripts[userscript_id] = record
        return record

    def userscript_for_conversation(self, conversation_id: str) -> Userscript:
        for item in self.working_set().userscripts:
            if item.conversation_id == conversation_id:
                return item
        raise UserscriptNotFoundError(f"No userscript for conversation {conversation_id}")

    def save_conversation(self, conversation: Conversation) -> Conversation:
        saved = self.backend.save_conversation(conversation)
        with self._lock:
            self._conversations[saved.id] = saved
            self._working_set = None
        return saved

    def save_userscript(self, userscript: Userscript) -> Userscript:
        saved = self.backend.save_userscript(userscript)
        with self._lock:
            self._userscripts[saved.id] = saved
            self._working_set = None
        return saved

    def create_pair(self, userscript: Userscript, conversation: Conversation) -> None:
        """Persist both halves; the conversation first so the script always resolves."""
        self.save_conversation(conversation)
        try:
            self.save_userscript(userscript)
        except Exception:
            self.delete_pair(userscript.id, conversation.id)
            raise

    def delete_pair(self, userscript_id: str, conversation_id: str) -> None:
        self.backend.delete_userscript(userscript_id)
        self.backend.delete_conversation(conversation_id)
        with self._lock:
            self._userscripts.pop(userscript_id, None)
            self._conversations.pop(conversation_id, None)
            self._working_set = None

    def working_set(self) -> WorkingSet:
        with self._lock:
            cached = self._working_set
        if cached is not None:
            return cached
        loaded = filter_working_set(
            self.backend.list_userscripts(),
            self.backend.list_conversations(),
        )
        with self._lock:
            self._working_set = loaded
        return loaded

    def list_userscripts(self, *, domain: str | None = None) -> list[Userscript]:
        working = self.working_set()
        if domain is None:
            return list(working.userscripts)
        ids = {item.id for item in working.conversations if item.domain == domain}
        return [item for item in working.userscripts if item.conversation_id in ids]

    def list_conversations(self, *, domain: str | None = None) -> list[Conversation]:
        items = [
            item
            for item in self.working_set().conversations
            if domain is None or item.domain == domain
        ]
        return sorted(items, key=lambda item: item.updated_at, reverse=True)

    def invalidate(self) -> None:
        with self._lock:
            self._userscripts.clear()
            self._conversations.clear()
            self._working_set = None
