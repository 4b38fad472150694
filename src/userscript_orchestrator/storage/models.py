"""Storage models shared by the API, the orchestrator and persistence backends."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

MessageRole = Literal["user", "assistant"]
SourceType = Literal["greasyfork", "openuserjs", "manual"]
MarkupKind = Literal["html", "structure"]

# Explicit conversation lifecycle; never re-derived from message counts.
ConversationPhase = Literal[
    "awaiting_prompt",
    "no_draft",
    "pending_approval",
    "enabled",
    "iterating",
    "reset",
]

PLACEHOLDER_NAME_PREFIX = "New Script for "


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class ScriptSnapshot(BaseModel):
    """Userscript fields captured right before a user message was sent."""

    name: str
    match_pattern: str
    script: str
    enabled: bool


class ToolCallFunction(BaseModel):
    name: str
    # JSON-encoded arguments exactly as returned by the model.
    arguments: str


class ToolCall(BaseModel):
    id: str
    type: Literal["function"] = "function"
    function: ToolCallFunction


class ToolResult(BaseModel):
    tool_call_id: str
    output: str


class GrabbedElement(BaseModel):
    """A page element the user picked as extra context."""

    xpath: str
    tag_name: str
    attributes: dict[str, str] = Field(default_factory=dict)
    text_content: str = ""
    outer_html: str = ""
    screenshot: str | None = None


class ChatMessage(BaseModel):
    id: str
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    tool_calls: list[ToolCall] | None = None
    tool_results: list[ToolResult] | None = None
    # Only set on user messages; the sole source for revert.
    script_snapshot: ScriptSnapshot | None = None
    grabbed_elements: list[GrabbedElement] | None = None


class PendingApproval(BaseModel):
    """Draft produced by the last tool execution, awaiting a human decision."""

    script: str
    summary: str
    error: str | None = None
    console_output: str = ""


class Conversation(BaseModel):
    """Durable negotiation transcript for one userscript."""

    id: str
    domain: str
    initial_prompt: str = ""
    initial_url: str = ""
    initial_markup: str = ""
    initial_markup_kind: MarkupKind = "html"
    initial_console_log: str = ""
    initial_screenshot: str = ""
    messages: list[ChatMessage] = Field(default_factory=list)
    pending_approval: PendingApproval | None = None
    phase: ConversationPhase = "awaiting_prompt"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def message_index(self, message_id: str) -> int:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return -1

    def last_user_snapshot(self) -> ScriptSnapshot | None:
        for message in reversed(self.messages):
            if message.role == "user" and message.script_snapshot is not None:
                return message.script_snapshot
        return None


class Userscript(BaseModel):
    """One automation unit, matched against page URLs for auto-run."""

    id: str
    name: str
    # Regular expression over page URLs.
    match_pattern: str
    script: str = ""
    conversation_id: str
    enabled: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    source_url: str | None = None
    source_type: SourceType | None = None

    def snapshot(self) -> ScriptSnapshot:
        return ScriptSnapshot(
            name=self.name,
            match_pattern=self.match_pattern,
            script=self.script,
            enabled=self.enabled,
        )

    @property
    def has_placeholder_name(self) -> bool:
        return self.name.startswith(PLACEHOLDER_NAME_PREFIX)


class ExecutionStatus(BaseModel):
    """Outcome of the latest auto-run of one userscript."""

    success: bool
    error: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
