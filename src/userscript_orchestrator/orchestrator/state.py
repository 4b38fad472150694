"""Typed state contract for the advance workflow."""

from typing import Any, Literal, TypedDict

from userscript_orchestrator.page.capture import Observation
from userscript_orchestrator.storage.models import GrabbedElement

AdvanceOutcome = Literal["tool_call", "reply", "error", "cancelled"]


class AdvanceState(TypedDict, total=False):
    conversation_id: str
    target_id: str
    user_message: str
    grabbed_elements: list[GrabbedElement]
    fresh_observation: Observation | None
    started: bool
    outcome: AdvanceOutcome
    reply_content: str
    tool_call: dict[str, Any] | None
    js_script: str
    error: str | None
    effect: dict[str, Any]


def initial_state(
    conversation_id: str,
    user_message: str,
    *,
    target_id: str,
    grabbed_elements: list[GrabbedElement] | None = None,
    fresh_observation: Observation | None = None,
) -> AdvanceState:
    return {
        "conversation_id": conversation_id,
        "target_id": target_id,
        "user_message": user_message,
        "grabbed_elements": list(grabbed_elements or []),
        "fresh_observation": fresh_observation,
        "started": False,
        "reply_content": "",
        "tool_call": None,
        "js_script": "",
        "error": None,
        "effect": {},
    }
