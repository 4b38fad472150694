"""Tool-calling orchestration loop for one conversation turn."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field

from userscript_orchestrator.llm.provider import (
    ChatModelProvider,
    ModelCallCancelled,
    ModelProviderError,
)
from userscript_orchestrator.llm.titles import TitleGenerator
from userscript_orchestrator.orchestrator.cancellation import CancellationToken, DoublePressCanceller
from userscript_orchestrator.orchestrator.code_blocks import CODE_SAVED_NOTE, extract_script
from userscript_orchestrator.orchestrator.diffing import diff_summary
from userscript_orchestrator.orchestrator.locking import ConversationLocks
from userscript_orchestrator.orchestrator.prompts import (
    EXECUTE_JS_ARGUMENT,
    EXECUTE_JS_TOOL,
    EXECUTE_JS_TOOL_NAME,
    build_model_messages,
    compose_user_content,
)
from userscript_orchestrator.orchestrator.state import AdvanceOutcome, AdvanceState, initial_state
from userscript_orchestrator.orchestrator.workflow import build_advance_graph
from userscript_orchestrator.page.capture import CaptureFailedError, Observation, ObservationCapturer
from userscript_orchestrator.page.gateway import PageGateway, PageGatewayError
from userscript_orchestrator.registry.script_registry import ScriptRegistry
from userscript_orchestrator.storage.models import (
    ChatMessage,
    Conversation,
    GrabbedElement,
    PendingApproval,
    ToolCall,
    ToolResult,
    utc_now,
)
from userscript_orchestrator.storage.repository import ConversationStore

logger = logging.getLogger(__name__)

CancelResult = Literal["idle", "confirm", "cancelled"]


class AdvanceEffect(BaseModel):
    """What one ``advance`` round changed, for the caller to render."""

    conversation_id: str
    outcome: AdvanceOutcome
    appended_message_ids: list[str] = Field(default_factory=list)
    pending_approval: PendingApproval | None = None
    script_adopted: bool = False
    error: str | None = None


def new_message_id() -> str:
    return str(uuid.uuid4())


class Orchestrator:
    def __init__(
        self,
        *,
        store: ConversationStore,
        gateway: PageGateway,
        capturer: ObservationCapturer,
        provider: ChatModelProvider,
        registry: ScriptRegistry,
        locks: ConversationLocks,
        canceller: DoublePressCanceller | None = None,
        title_generator: TitleGenerator | None = None,
        console_log_max_chars: int = 10_000,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.capturer = capturer
        self.provider = provider
        self.registry = registry
        self.locks = locks
        self.canceller = canceller or DoublePressCanceller()
        self.title_generator = title_generator
        self.console_log_max_chars = console_log_max_chars
        self._inflight_lock = threading.Lock()
        self._inflight: dict[str, CancellationToken] = {}
        self.graph = build_advance_graph(self)

    def advance(
        self,
        conversation_id: str,
        user_message: str,
        *,
        target_id: str,
        fresh_observation: Observation | None = None,
        grabbed_elements: list[GrabbedElement] | None = None,
    ) -> AdvanceEffect:
        """Run one user turn through the model and record its outcome.

        Raises ConversationNotFoundError, ConversationBusyError when another
        turn holds the conversation, CaptureFailedError when the page cannot
        be observed, and StorageQuotaExceededError when a write is refused.
        Provider failures and cancellation are not raised; they are reported
        in the returned effect.
        """
        with self.locks.hold(conversation_id):
            self.store.get_conversation(conversation_id)
            token = CancellationToken()
            with self._inflight_lock:
                self._inflight[conversation_id] = token
            self.canceller.reset(conversation_id)
            logger.info("advance event=started conversation_id=%s target_id=%s", conversation_id, target_id)
            try:
                final = self.graph.invoke(
                    initial_state(
                        conversation_id,
                        user_message,
                        target_id=target_id,
                        grabbed_elements=grabbed_elements,
                        fresh_observation=fresh_observation,
                    )
                )
            finally:
                with self._inflight_lock:
                    self._inflight.pop(conversation_id, None)

            effect = AdvanceEffect.model_validate(final["effect"])
            logger.info(
                "advance event=finished conversation_id=%s outcome=%s",
                conversation_id,
                effect.outcome,
            )

        if final.get("started") and self.title_generator is not None:
            userscript = self.store.userscript_for_conversation(conversation_id)
            if userscript.has_placeholder_name:
                self.title_generator.request_title(userscript.id, user_message)
        return effect

    def cancel(self, conversation_id: str, *, force: bool = False) -> CancelResult:
        """Abort the in-flight model call; without ``force`` a second press confirms."""
        with self._inflight_lock:
            token = self._inflight.get(conversation_id)
        if token is None:
            return "idle"
        if not force and not self.canceller.press(conversation_id):
            return "confirm"
        token.cancel()
        logger.info("advance event=cancel_requested conversation_id=%s", conversation_id)
        return "cancelled"

    def is_busy(self, conversation_id: str) -> bool:
        with self._inflight_lock:
            return conversation_id in self._inflight

    # Graph nodes

    def record_user_turn(self, state: AdvanceState) -> AdvanceState:
        conversation = self.store.get_conversation(state["conversation_id"])
        userscript = self.store.userscript_for_conversation(conversation.id)
        first_turn = not conversation.initial_prompt and not conversation.messages

        observation = state.get("fresh_observation")
        # A caller-supplied observation only stands in for the very first call.
        if not first_turn or observation is None or not observation.usable:
            observation = self.capturer.capture(state["target_id"])
        if not observation.usable:
            raise CaptureFailedError(observation)

        grabbed = state.get("grabbed_elements") or []
        message = ChatMessage(
            id=new_message_id(),
            role="user",
            content=compose_user_content(state["user_message"], grabbed),
            script_snapshot=userscript.snapshot(),
            grabbed_elements=grabbed or None,
        )
        if conversation.pending_approval is not None:
            self.registry.disarm_preview(userscript.id)

        self._persist(
            conversation,
            initial_prompt=state["user_message"] if first_turn else conversation.initial_prompt,
            initial_url=observation.url,
            initial_markup=observation.markup,
            initial_markup_kind=observation.markup_kind,
            initial_console_log=observation.console_log,
            initial_screenshot=observation.screenshot or conversation.initial_screenshot,
            messages=[*conversation.messages, message],
            pending_approval=None,
            phase="iterating" if userscript.script else "no_draft",
        )
        return {"started": first_turn, "effect": {"appended_message_ids": [message.id]}}

    def call_model(self, state: AdvanceState) -> AdvanceState:
        conversation_id = state["conversation_id"]
        conversation = self.store.get_conversation(conversation_id)
        userscript = self.store.userscript_for_conversation(conversation_id)
        with self._inflight_lock:
            token = self._inflight.get(conversation_id) or CancellationToken()

        messages = build_model_messages(
            conversation,
            userscript.script,
            console_log_max_chars=self.console_log_max_chars,
        )
        try:
            reply = self.provider.complete(messages, tools=[EXECUTE_JS_TOOL], cancel_token=token)
        except ModelCallCancelled:
            return self._cancelled(state)
        except ModelProviderError as exc:
            logger.warning("advance event=provider_failed conversation_id=%s reason=%s", conversation_id, exc)
            return {"outcome": "error", "error": str(exc)}
        if token.cancelled:
            return self._cancelled(state)

        tool_call = next(
            (call for call in reply.tool_calls if call.function.name == EXECUTE_JS_TOOL_NAME),
            None,
        )
        if tool_call is None:
            if reply.tool_calls and not reply.content:
                names = ", ".join(call.function.name for call in reply.tool_calls)
                return {"outcome": "error", "error": f"Model requested unsupported tool: {names}"}
            return {"outcome": "reply", "reply_content": reply.content}

        try:
            js_script = _script_argument(tool_call)
        except ValueError as exc:
            return {"outcome": "error", "error": str(exc)}
        return {
            "outcome": "tool_call",
            "reply_content": reply.content,
            "tool_call": tool_call.model_dump(),
            "js_script": js_script,
        }

    def execute_tool(self, state: AdvanceState) -> AdvanceState:
        conversation = self.store.get_conversation(state["conversation_id"])
        userscript = self.store.userscript_for_conversation(conversation.id)
        tool_call = ToolCall.model_validate(state["tool_call"])
        new_script = state["js_script"]
        snapshot = conversation.last_user_snapshot()
        old_script = snapshot.script if snapshot is not None else userscript.script

        try:
            result = self.gateway.execute(state["target_id"], new_script, str(uuid.uuid4()))
        except PageGatewayError as exc:
            return {"outcome": "error", "error": str(exc)}

        summary = diff_summary(old_script, new_script)
        pending = PendingApproval(
            script=new_script,
            summary=summary,
            error=result.error,
            console_output=result.result,
        )
        message = ChatMessage(
            id=new_message_id(),
            role="assistant",
            content=state.get("reply_content", ""),
            tool_calls=[tool_call],
            tool_results=[
                ToolResult(
                    tool_call_id=tool_call.id,
                    output=_tool_output(summary, result.result, result.error),
                )
            ],
        )
        # Stored disabled until approved; undone when the approval cannot be persisted.
        draft_saved = False
        try:
            self.store.save_userscript(
                userscript.model_copy(update={"script": new_script, "updated_at": utc_now()})
            )
            draft_saved = True
            self.registry.arm_preview(userscript.id)
            self._persist(
                conversation,
                messages=[*conversation.messages, message],
                pending_approval=pending,
                phase="pending_approval",
            )
        except Exception:
            self.registry.disarm_preview(userscript.id)
            if draft_saved:
                self.store.save_userscript(userscript)
            logger.warning(
                "advance event=draft_rolled_back conversation_id=%s userscript_id=%s",
                conversation.id,
                userscript.id,
            )
            raise
        self.registry.clear_status(userscript.id)

        try:
            self.gateway.reload(state["target_id"])
        except PageGatewayError as exc:
            logger.warning("advance event=reload_failed target_id=%s reason=%s", state["target_id"], exc)

        return {
            "effect": {
                **state.get("effect", {}),
                "conversation_id": conversation.id,
                "outcome": "tool_call",
                "appended_message_ids": [*_appended(state), message.id],
                "pending_approval": pending.model_dump(),
            }
        }

    def record_reply(self, state: AdvanceState) -> AdvanceState:
        conversation = self.store.get_conversation(state["conversation_id"])
        content = state.get("reply_content", "")
        reply = ChatMessage(id=new_message_id(), role="assistant", content=content)
        messages = [*conversation.messages, reply]
        appended = [*_appended(state), reply.id]

        extracted = extract_script(content) if content else None
        phase = conversation.phase
        if extracted is not None:
            userscript = self.store.userscript_for_conversation(conversation.id)
            update: dict[str, Any] = {
                "script": extracted.script,
                "enabled": True,
                "updated_at": utc_now(),
            }
            if extracted.match_pattern:
                update["match_pattern"] = extracted.match_pattern
            self.store.save_userscript(userscript.model_copy(update=update))
            self.registry.clear_status(userscript.id)
            note = ChatMessage(id=new_message_id(), role="assistant", content=CODE_SAVED_NOTE)
            messages.append(note)
            appended.append(note.id)
            phase = "enabled"
            logger.info("advance event=code_block_adopted conversation_id=%s", conversation.id)

        self._persist(conversation, messages=messages, phase=phase)
        return {
            "effect": {
                "conversation_id": conversation.id,
                "outcome": "reply",
                "appended_message_ids": appended,
                "script_adopted": extracted is not None,
            }
        }

    def record_error(self, state: AdvanceState) -> AdvanceState:
        conversation = self.store.get_conversation(state["conversation_id"])
        error_text = state.get("error") or "Unknown error"
        message = ChatMessage(id=new_message_id(), role="assistant", content=f"Error: {error_text}")
        self._persist(
            conversation,
            messages=[*conversation.messages, message],
            pending_approval=None,
        )
        return {
            "effect": {
                "conversation_id": conversation.id,
                "outcome": "error",
                "appended_message_ids": [*_appended(state), message.id],
                "error": error_text,
            }
        }

    def _cancelled(self, state: AdvanceState) -> AdvanceState:
        logger.info("advance event=cancelled conversation_id=%s", state["conversation_id"])
        return {
            "outcome": "cancelled",
            "effect": {
                "conversation_id": state["conversation_id"],
                "outcome": "cancelled",
                "appended_message_ids": _appended(state),
            },
        }

    def _persist(self, conversation: Conversation, **updates: Any) -> Conversation:
        return self.store.save_conversation(
            conversation.model_copy(update={**updates, "updated_at": utc_now()})
        )


def _appended(state: AdvanceState) -> list[str]:
    return list(state.get("effect", {}).get("appended_message_ids", []))


def _script_argument(tool_call: ToolCall) -> str:
    try:
        arguments = json.loads(tool_call.function.arguments or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError(f"Failed to parse {EXECUTE_JS_TOOL_NAME} arguments as JSON") from exc
    script = arguments.get(EXECUTE_JS_ARGUMENT) if isinstance(arguments, dict) else None
    if not isinstance(script, str):
        raise ValueError(f"{EXECUTE_JS_TOOL_NAME} call is missing the {EXECUTE_JS_ARGUMENT} argument")
    return script


def _tool_output(summary: str, console_output: str, error: str | None) -> str:
    lines = [summary]
    if console_output:
        lines.append(f"Console output:\n{console_output}")
    if error:
        lines.append(f"Error: {error}")
    return "\n".join(lines)
