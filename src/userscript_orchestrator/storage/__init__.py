"""Storage backends and models."""

from userscript_orchestrator.storage.base import (
    ScriptStorage,
    StorageQuotaExceededError,
    WorkingSet,
    filter_working_set,
)
from userscript_orchestrator.storage.memory import InMemoryScriptStorage
from userscript_orchestrator.storage.models import (
    ChatMessage,
    Conversation,
    ExecutionStatus,
    GrabbedElement,
    PendingApproval,
    ScriptSnapshot,
    ToolCall,
    ToolResult,
    Userscript,
)
from userscript_orchestrator.storage.postgres import PostgresScriptStorage
from userscript_orchestrator.storage.repository import (
    ConversationNotFoundError,
    ConversationStore,
    UserscriptNotFoundError,
)

__all__ = [
    "ChatMessage",
    "Conversation",
    "ConversationNotFoundError",
    "ConversationStore",
    "ExecutionStatus",
    "GrabbedElement",
    "InMemoryScriptStorage",
    "PendingApproval",
    "PostgresScriptStorage",
    "ScriptSnapshot",
    "ScriptStorage",
    "StorageQuotaExceededError",
    "ToolCall",
    "ToolResult",
    "Userscript",
    "UserscriptNotFoundError",
    "WorkingSet",
    "filter_working_set",
]
