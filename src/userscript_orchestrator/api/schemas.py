"""Request and response bodies for the HTTP API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from userscript_orchestrator.orchestrator.service import AdvanceEffect
from userscript_orchestrator.storage.models import (
    Conversation,
    ExecutionStatus,
    GrabbedElement,
    SourceType,
    Userscript,
)


class OpenTargetRequest(BaseModel):
    url: str = Field(min_length=1)


class TargetInfo(BaseModel):
    target_id: str
    url: str


class PageLoadedRequest(BaseModel):
    url: str = Field(min_length=1)


class CreateTaskRequest(BaseModel):
    target_id: str = Field(min_length=1)


class ImportTaskRequest(BaseModel):
    code: str = Field(min_length=1)
    name: str = ""
    source_type: SourceType = "manual"
    source_url: str | None = None
    target_id: str | None = None
    page_url: str = ""


class UpdateTaskRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    match_pattern: str | None = Field(default=None, min_length=1)
    script: str | None = None
    enabled: bool | None = None


class TaskResponse(BaseModel):
    userscript: Userscript
    conversation: Conversation


class ObservationPayload(BaseModel):
    """Page state supplied by the caller instead of a fresh capture."""

    url: str = Field(min_length=1)
    html: str = Field(min_length=1)
    console_log: str = ""
    screenshot: str = ""


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1)
    target_id: str = Field(min_length=1)
    grabbed_elements: list[GrabbedElement] = Field(default_factory=list)
    observation: ObservationPayload | None = None


class CancelRequest(BaseModel):
    force: bool = False


class CancelResponse(BaseModel):
    result: Literal["idle", "confirm", "cancelled"]


class RejectRequest(BaseModel):
    mode: Literal["continue", "start_over"]
    target_id: str = Field(min_length=1)
    feedback: str = ""
    grabbed_elements: list[GrabbedElement] = Field(default_factory=list)


class RejectResponse(BaseModel):
    effect: AdvanceEffect | None = None


class EditMessageRequest(BaseModel):
    content: str = Field(min_length=1)
    target_id: str = Field(min_length=1)


class ExecutionStatusResponse(BaseModel):
    userscript_id: str
    status: ExecutionStatus | None = None
