"""Storage interfaces for userscript and conversation records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from userscript_orchestrator.storage.models import Conversation, Userscript

logger = logging.getLogger(__name__)

QUOTA_GUIDANCE = "Storage quota exceeded. Please delete some old userscripts to free up space."


class StorageQuotaExceededError(RuntimeError):
    """The backend refused a write because it is out of space."""

    def __init__(self, detail: str = "") -> None:
        message = QUOTA_GUIDANCE if not detail else f"{QUOTA_GUIDANCE} ({detail})"
        super().__init__(message)


class ScriptStorage(Protocol):
    """Key-value persistence for the two record collections."""

    def migrate(self) -> None: ...

    def save_userscript(self, userscript: Userscript) -> Userscript: ...

    def get_userscript(self, userscript_id: str) -> Userscript | None: ...

    def list_userscripts(self) -> list[Userscript]: ...

    def delete_userscript(self, userscript_id: str) -> None: ...

    def save_conversation(self, conversation: Conversation) -> Conversation: ...

    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    def list_conversations(self) -> list[Conversation]: ...

    def delete_conversation(self, conversation_id: str) -> None: ...


@dataclass(frozen=True)
class WorkingSet:
    userscripts: tuple[Userscript, ...]
    conversations: tuple[Conversation, ...]


def filter_working_set(
    userscripts: list[Userscript],
    conversations: list[Conversation],
) -> WorkingSet:
    """Exclude records that break the 1:1 pairing; nothing is deleted."""
    valid_conversations = [item for item in conversations if item.id and item.domain]
    valid_ids = {item.id for item in valid_conversations}
    valid_userscripts = [
        item
        for item in userscripts
        if item.id and item.conversation_id and item.conversation_id in valid_ids
    ]

    dropped_conversations = len(conversations) - len(valid_conversations)
    dropped_userscripts = len(userscripts) - len(valid_userscripts)
    if dropped_conversations:
        logger.warning(
            "working_set event=filtered kind=conversation dropped=%d", dropped_conversations
        )
    if dropped_userscripts:
        logger.warning(
            "working_set event=filtered kind=userscript dropped=%d", dropped_userscripts
        )
    return WorkingSet(
        userscripts=tuple(valid_userscripts),
        conversations=tuple(valid_conversations),
    )
