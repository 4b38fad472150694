"""In-memory storage backend for tests and local development."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any

from pydantic import ValidationError

from userscript_orchestrator.storage.base import StorageQuotaExceededError
from userscript_orchestrator.storage.models import Conversation, Userscript

logger = logging.getLogger(__name__)


class InMemoryScriptStorage:
    """Keeps serialized records per collection, like a browser key-value store.

    Records are stored as JSON-compatible dicts so callers can never mutate a
    stored record through a returned model. An optional byte quota emulates
    storage exhaustion.
    """

    def __init__(self, *, quota_bytes: int | None = None) -> None:
        self.quota_bytes = quota_bytes
        self._lock = threading.Lock()
        self._collections: dict[str, dict[str, dict[str, Any]]] = {
            "userscripts": {},
            "conversations": {},
        }

    def migrate(self) -> None:
        return None

    def save_userscript(self, userscript: Userscript) -> Userscript:
        self._put("userscripts", userscript.id, userscript.model_dump(mode="json"))
        return userscript

    def get_userscript(self, userscript_id: str) -> Userscript | None:
        return self._get("userscripts", userscript_id, Userscript)

    def list_userscripts(self) -> list[Userscript]:
        return self._list("userscripts", Userscript)

    def delete_userscript(self, userscript_id: str) -> None:
        with self._lock:
            self._collections["userscripts"].pop(userscript_id, None)

    def save_conversation(self, conversation: Conversation) -> Conversation:
        self._put("conversations", conversation.id, conversation.model_dump(mode="json"))
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._get("conversations", conversation_id, Conversation)

    def list_conversations(self) -> list[Conversation]:
        return self._list("conversations", Conversation)

    def delete_conversation(self, conversation_id: str) -> None:
        with self._lock:
            self._collections["conversations"].pop(conversation_id, None)

    def put_raw(self, collection: str, record_id: str, payload: dict[str, Any]) -> None:
        """Store an unvalidated payload, used to simulate legacy or corrupt rows."""
        with self._lock:
            self._collections[collection][record_id] = payload

    def _put(self, collection: str, record_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            if self.quota_bytes is not None:
                projected = self._size_without(collection, record_id) + _size(payload)
                if projected > self.quota_bytes:
                    raise StorageQuotaExceededError(
                        f"{projected} bytes requested, quota is {self.quota_bytes}"
                    )
            self._collections[collection][record_id] = payload

    def _get(self, collection: str, record_id: str, model: type[Any]) -> Any:
        with self._lock:
            payload = self._collections[collection].get(record_id)
        if payload is None:
            return None
        try:
            return model.model_validate(payload)
        except ValidationError:
            logger.warning("storage event=invalid_record collection=%s id=%s", collection, record_id)
            return None

    def _list(self, collection: str, model: type[Any]) -> list[Any]:
        with self._lock:
            items = list(self._collections[collection].items())
        records: list[Any] = []
        for record_id, payload in items:
            try:
                records.append(model.model_validate(payload))
            except ValidationError:
                logger.warning(
                    "storage event=invalid_record collection=%s id=%s", collection, record_id
                )
        return records

    def _size_without(self, collection: str, record_id: str) -> int:
        total = 0
        for name, records in self._collections.items():
            for key, payload in records.items():
                if name == collection and key == record_id:
                    continue
                total += _size(payload)
        return total


def _size(payload: dict[str, Any]) -> int:
    return len(json.dumps(payload).encode("utf-8"))
