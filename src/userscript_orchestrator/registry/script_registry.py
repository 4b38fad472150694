"""Auto-run of stored userscripts on page loads."""

from __future__ import annotations

import logging
import re
import threading
import uuid

from userscript_orchestrator.page.gateway import PageGateway, PageGatewayError
from userscript_orchestrator.storage.models import ExecutionStatus, Userscript
from userscript_orchestrator.storage.repository import ConversationStore

logger = logging.getLogger(__name__)


class ScriptRegistry:
    """Runs every eligible userscript whose pattern matches a loaded URL.

    Eligible means enabled, or armed as a preview of a draft that is waiting
    for approval. Each userscript is matched and run in isolation, and its
    latest outcome is kept by userscript id.
    """

    def __init__(self, store: ConversationStore, gateway: PageGateway) -> None:
        self.store = store
        self.gateway = gateway
        self._lock = threading.Lock()
        self._statuses: dict[str, ExecutionStatus] = {}
        self._previews: set[str] = set()

    def attach(self) -> None:
        self.gateway.add_load_listener(self.handle_page_load)

    def eligible(self) -> list[Userscript]:
        with self._lock:
            previews = set(self._previews)
        return [
            item
            for item in self.store.list_userscripts()
            if item.script and (item.enabled or item.id in previews)
        ]

    def handle_page_load(self, target_id: str, url: str) -> dict[str, ExecutionStatus]:
        outcomes: dict[str, ExecutionStatus] = {}
        for userscript in self.eligible():
            try:
                matched = re.search(userscript.match_pattern, url) is not None
            except re.error as exc:
                logger.warning(
                    "registry event=invalid_pattern userscript_id=%s pattern=%r reason=%s",
                    userscript.id,
                    userscript.match_pattern,
                    exc,
                )
                outcomes[userscript.id] = self._record(
                    userscript.id,
                    ExecutionStatus(success=False, error=f"Invalid match pattern: {exc}"),
                )
                continue
            if not matched:
                continue
            outcomes[userscript.id] = self._record(userscript.id, self._run(target_id, userscript))
        logger.info(
            "registry event=page_loaded target_id=%s url=%s executed=%d",
            target_id,
            url,
            len(outcomes),
        )
        return outcomes

    def _run(self, target_id: str, userscript: Userscript) -> ExecutionStatus:
        try:
            result = self.gateway.execute(target_id, userscript.script, str(uuid.uuid4()))
        except PageGatewayError as exc:
            logger.warning(
                "registry event=execution_failed userscript_id=%s reason=%s", userscript.id, exc
            )
            return ExecutionStatus(success=False, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("registry event=execution_crashed userscript_id=%s", userscript.id)
            return ExecutionStatus(success=False, error=f"{type(exc).__name__}: {exc}")
        if result.error:
            return ExecutionStatus(success=False, error=result.error)
        return ExecutionStatus(success=True)

    def _record(self, userscript_id: str, status: ExecutionStatus) -> ExecutionStatus:
        with self._lock:
            self._statuses[userscript_id] = status
        return status

    def status(self, userscript_id: str) -> ExecutionStatus | None:
        with self._lock:
            return self._statuses.get(userscript_id)

    def clear_status(self, userscript_id: str) -> None:
        with self._lock:
            self._statuses.pop(userscript_id, None)

    def arm_preview(self, userscript_id: str) -> None:
        with self._lock:
            self._previews.add(userscript_id)

    def disarm_preview(self, userscript_id: str) -> None:
        with self._lock:
            self._previews.discard(userscript_id)

    def is_armed(self, userscript_id: str) -> bool:
        with self._lock:
            return userscript_id in self._previews

    def forget(self, userscript_id: str) -> None:
        with self._lock:
            self._statuses.pop(userscript_id, None)
            self._previews.discard(userscript_id)
