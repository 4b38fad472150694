"""Creation, import, manual edits and deletion of userscript/conversation pairs."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any
from urllib.parse import urlparse

from userscript_orchestrator.orchestrator.locking import ConversationLocks
from userscript_orchestrator.page.capture import CaptureFailedError, Observation, ObservationCapturer
from userscript_orchestrator.registry.metadata import metadata_to_match_regex, parse_metadata
from userscript_orchestrator.registry.script_registry import ScriptRegistry
from userscript_orchestrator.storage.models import (
    PLACEHOLDER_NAME_PREFIX,
    Conversation,
    SourceType,
    Userscript,
    utc_now,
)
from userscript_orchestrator.storage.repository import ConversationStore

logger = logging.getLogger(__name__)

SOURCE_NAMES = {"greasyfork": "Greasyfork", "openuserjs": "OpenUserJS", "manual": "Manual"}
EDITABLE_FIELDS = ("name", "match_pattern", "script", "enabled")


def domain_from_url(url: str) -> str:
    return urlparse(url).hostname or ""


def default_match_pattern(domain: str) -> str:
    return "https?://" + domain.replace(".", "\\.") + ".*"


def placeholder_name(domain: str) -> str:
    return f"{PLACEHOLDER_NAME_PREFIX}{domain}"


class TaskLifecycle:
    def __init__(
        self,
        *,
        store: ConversationStore,
        capturer: ObservationCapturer,
        registry: ScriptRegistry,
        locks: ConversationLocks,
    ) -> None:
        self.store = store
        self.capturer = capturer
        self.registry = registry
        self.locks = locks

    def create_task(self, target_id: str) -> tuple[Userscript, Conversation]:
        """Start a blank userscript and conversation for the page on ``target_id``."""
        observation = self.capturer.capture(target_id)
        if not observation.usable:
            raise CaptureFailedError(observation)
        domain = domain_from_url(observation.url)
        if not domain:
            raise CaptureFailedError(
                observation.model_copy(update={"error": f"Cannot derive a domain from {observation.url}."})
            )

        conversation = _conversation_from(observation, domain=domain)
        userscript = Userscript(
            id=str(uuid.uuid4()),
            name=placeholder_name(domain),
            match_pattern=default_match_pattern(domain),
            conversation_id=conversation.id,
        )
        self.store.create_pair(userscript, conversation)
        logger.info(
            "task event=created userscript_id=%s conversation_id=%s domain=%s",
            userscript.id,
            conversation.id,
            domain,
        )
        return userscript, conversation

    def import_script(
        self,
        code: str,
        *,
        name: str = "",
        source_type: SourceType = "manual",
        source_url: str | None = None,
        target_id: str | None = None,
        page_url: str = "",
    ) -> tuple[Userscript, Conversation]:
        """Adopt an existing script; its header supplies the name and pattern."""
        metadata = parse_metadata(code)
        display_name = metadata.name or name or "Imported Script"

        observation = Observation(url=page_url)
        if target_id is not None:
            captured = self.capturer.capture(target_id)
            # Page context is optional for imports.
            if captured.usable:
                observation = captured
            else:
                logger.info("task event=import_capture_skipped reason=%s", captured.error)
        domain = domain_from_url(observation.url)
        if not domain:
            raise ValueError("An import needs a page URL or a reachable target to derive its domain.")

        conversation = _conversation_from(observation, domain=domain).model_copy(
            update={
                "initial_prompt": f"Imported: {display_name} (from {SOURCE_NAMES[source_type]})",
                "phase": "enabled",
            }
        )
        userscript = Userscript(
            id=str(uuid.uuid4()),
            name=display_name,
            match_pattern=metadata_to_match_regex(metadata),
            script=code,
            conversation_id=conversation.id,
            enabled=True,
            source_url=source_url,
            source_type=source_type,
        )
        self.store.create_pair(userscript, conversation)
        logger.info(
            "task event=imported userscript_id=%s source_type=%s", userscript.id, source_type
        )
        return userscript, conversation

    def update(self, userscript_id: str, **changes: Any) -> Userscript:
        """Manual edit of name, pattern, script or enabled flag."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        pattern = changes.get("match_pattern")
        if pattern is not None:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid match pattern: {exc}") from exc

        current = self.store.get_userscript(userscript_id)
        with self.locks.hold(current.conversation_id):
            current = self.store.get_userscript(userscript_id)
            updated = self.store.save_userscript(
                current.model_copy(update={**changes, "updated_at": utc_now()})
            )
        if "script" in changes:
            self.registry.clear_status(userscript_id)
        return updated

    def toggle(self, userscript_id: str) -> Userscript:
        current = self.store.get_userscript(userscript_id)
        return self.update(userscript_id, enabled=not current.enabled)

    def delete(self, userscript_id: str) -> None:
        """Remove both halves of the pair together."""
        current = self.store.get_userscript(userscript_id)
        with self.locks.hold(current.conversation_id):
            self.store.delete_pair(current.id, current.conversation_id)
        self.locks.discard(current.conversation_id)
        self.registry.forget(current.id)
        logger.info("task event=deleted userscript_id=%s", userscript_id)


def _conversation_from(observation: Observation, *, domain: str) -> Conversation:
    return Conversation(
        id=str(uuid.uuid4()),
        domain=domain,
        initial_url=observation.url,
        initial_markup=observation.markup,
        initial_markup_kind=observation.markup_kind,
        initial_console_log=observation.console_log,
        initial_screenshot=observation.screenshot,
    )
