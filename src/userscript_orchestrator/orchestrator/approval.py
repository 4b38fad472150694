"""Human decisions on drafted scripts: approve, reject, edit and revert."""

from __future__ import annotations

import logging
from typing import Any, Literal

from userscript_orchestrator.orchestrator.locking import ConversationLocks
from userscript_orchestrator.orchestrator.service import AdvanceEffect, Orchestrator, new_message_id
from userscript_orchestrator.page.capture import Observation
from userscript_orchestrator.registry.script_registry import ScriptRegistry
from userscript_orchestrator.storage.models import (
    ChatMessage,
    Conversation,
    GrabbedElement,
    Userscript,
    utc_now,
)
from userscript_orchestrator.storage.repository import ConversationStore

logger = logging.getLogger(__name__)

RejectMode = Literal["continue", "start_over"]

APPROVED_NOTE = "Script approved and enabled."
FINAL_NAME_MAX_CHARS = 50


class InvalidTransitionError(RuntimeError):
    """The requested decision does not apply to the conversation's current state."""


def finalized_name(userscript: Userscript, conversation: Conversation) -> str:
    """Keep a real name; replace the placeholder from the prompt or domain."""
    if not userscript.has_placeholder_name:
        return userscript.name
    prompt = " ".join(conversation.initial_prompt.split())
    if prompt:
        if len(prompt) <= FINAL_NAME_MAX_CHARS:
            return prompt
        return prompt[: FINAL_NAME_MAX_CHARS - 3].rstrip() + "..."
    return f"Script for {conversation.domain}"


class ApprovalController:
    def __init__(
        self,
        *,
        store: ConversationStore,
        orchestrator: Orchestrator,
        registry: ScriptRegistry,
        locks: ConversationLocks,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.registry = registry
        self.locks = locks

    def approve(self, conversation_id: str) -> Userscript:
        with self.locks.hold(conversation_id):
            conversation = self.store.get_conversation(conversation_id)
            if conversation.pending_approval is None:
                raise InvalidTransitionError("There is no pending draft to approve.")
            userscript = self.store.userscript_for_conversation(conversation_id)
            userscript = self.store.save_userscript(
                userscript.model_copy(
                    update={
                        "enabled": True,
                        "name": finalized_name(userscript, conversation),
                        "updated_at": utc_now(),
                    }
                )
            )
            self.registry.disarm_preview(userscript.id)
            note = ChatMessage(id=new_message_id(), role="assistant", content=APPROVED_NOTE)
            self._persist(
                conversation,
                messages=[*conversation.messages, note],
                pending_approval=None,
                phase="enabled",
            )
            logger.info("approval event=approved conversation_id=%s userscript_id=%s", conversation_id, userscript.id)
            return userscript

    def reject(
        self,
        conversation_id: str,
        *,
        mode: RejectMode,
        target_id: str,
        feedback: str = "",
        grabbed_elements: list[GrabbedElement] | None = None,
        fresh_observation: Observation | None = None,
    ) -> AdvanceEffect | None:
        """Clear the pending draft and either iterate or restart from scratch.

        Returns the effect of the resent turn, or None when nothing was sent.
        """
        with self.locks.hold(conversation_id):
            conversation = self.store.get_conversation(conversation_id)
            if mode == "continue":
                return self._reject_continue(
                    conversation,
                    target_id=target_id,
                    feedback=feedback,
                    grabbed_elements=grabbed_elements,
                )
            return self._start_over(conversation, target_id=target_id, fresh_observation=fresh_observation)

    def _reject_continue(
        self,
        conversation: Conversation,
        *,
        target_id: str,
        feedback: str,
        grabbed_elements: list[GrabbedElement] | None,
    ) -> AdvanceEffect | None:
        if conversation.pending_approval is None:
            raise InvalidTransitionError("There is no pending draft to reject.")
        userscript = self.store.userscript_for_conversation(conversation.id)
        self.registry.disarm_preview(userscript.id)
        self._persist(conversation, pending_approval=None, phase="iterating")
        logger.info("approval event=rejected mode=continue conversation_id=%s", conversation.id)
        if not feedback.strip() and not grabbed_elements:
            return None
        return self.orchestrator.advance(
            conversation.id,
            feedback.strip(),
            target_id=target_id,
            grabbed_elements=grabbed_elements,
        )

    def _start_over(
        self,
        conversation: Conversation,
        *,
        target_id: str,
        fresh_observation: Observation | None,
    ) -> AdvanceEffect | None:
        prompt = conversation.initial_prompt
        userscript = self.store.userscript_for_conversation(conversation.id)
        self.store.save_userscript(
            userscript.model_copy(update={"script": "", "enabled": False, "updated_at": utc_now()})
        )
        self.registry.disarm_preview(userscript.id)
        self.registry.clear_status(userscript.id)
        self._persist(
            conversation,
            messages=[],
            initial_prompt="",
            pending_approval=None,
            phase="reset",
        )
        logger.info("approval event=rejected mode=start_over conversation_id=%s", conversation.id)
        if not prompt:
            return None
        return self.orchestrator.advance(
            conversation.id,
            prompt,
            target_id=target_id,
            fresh_observation=fresh_observation,
        )

    def edit_and_resend(
        self,
        conversation_id: str,
        message_id: str,
        new_content: str,
        *,
        target_id: str,
    ) -> AdvanceEffect:
        """Branch at a past user message: drop it and everything after, then resend."""
        with self.locks.hold(conversation_id):
            conversation = self.store.get_conversation(conversation_id)
            index = self._user_message_index(conversation, message_id)
            userscript = self.store.userscript_for_conversation(conversation_id)
            self.registry.disarm_preview(userscript.id)
            self._persist(
                conversation,
                messages=conversation.messages[:index],
                initial_prompt=conversation.initial_prompt if index > 0 else "",
                pending_approval=None,
            )
            logger.info(
                "approval event=edited conversation_id=%s message_index=%d", conversation_id, index
            )
            return self.orchestrator.advance(conversation_id, new_content, target_id=target_id)

    def revert(self, conversation_id: str, message_id: str) -> Userscript:
        """Rewind to a past user message and restore its script snapshot."""
        with self.locks.hold(conversation_id):
            conversation = self.store.get_conversation(conversation_id)
            index = self._user_message_index(conversation, message_id)
            snapshot = conversation.messages[index].script_snapshot
            if snapshot is None:
                raise InvalidTransitionError("This message has no script snapshot to revert to.")

            userscript = self.store.userscript_for_conversation(conversation_id)
            userscript = self.store.save_userscript(
                userscript.model_copy(update={**snapshot.model_dump(), "updated_at": utc_now()})
            )
            self.registry.disarm_preview(userscript.id)
            self.registry.clear_status(userscript.id)
            self._persist(
                conversation,
                messages=conversation.messages[: index + 1],
                pending_approval=None,
                phase="enabled" if snapshot.enabled and snapshot.script else "no_draft",
            )
            logger.info("approval event=reverted conversation_id=%s message_index=%d", conversation_id, index)
            return userscript

    @staticmethod
    def _user_message_index(conversation: Conversation, message_id: str) -> int:
        index = conversation.message_index(message_id)
        if index < 0:
            raise InvalidTransitionError(f"Message {message_id} is not part of this conversation.")
        if conversation.messages[index].role != "user":
            raise InvalidTransitionError("Only user messages can be edited or reverted to.")
        return index

    def _persist(self, conversation: Conversation, **updates: Any) -> Conversation:
        return self.store.save_conversation(
            conversation.model_copy(update={**updates, "updated_at": utc_now()})
        )
