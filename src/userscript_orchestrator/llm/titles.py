"""Best-effort short titles for new userscripts, from a smaller model."""

from __future__ import annotations

import logging
from concurrent.futures import Executor

from userscript_orchestrator.llm.provider import ChatModelProvider, ModelProviderError
from userscript_orchestrator.orchestrator.locking import ConversationLocks
from userscript_orchestrator.storage.models import utc_now
from userscript_orchestrator.storage.repository import ConversationStore, UserscriptNotFoundError

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50
TITLE_MAX_TOKENS = 20
TITLE_SYSTEM_PROMPT = (
    "You are a helpful assistant that creates short, descriptive titles. "
    "Respond with ONLY the title, nothing else."
)


def title_request(prompt: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": TITLE_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                "Create a short title (2-4 words) that summarizes this request for a "
                "browser userscript. The title should describe what the script does. "
                f"Do not use quotes or punctuation.\n\nRequest: {prompt}"
            ),
        },
    ]


class TitleGenerator:
    def __init__(
        self,
        *,
        store: ConversationStore,
        provider: ChatModelProvider,
        locks: ConversationLocks,
        model: str = "gpt-4.1-mini",
        enabled: bool = True,
        executor: Executor | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.locks = locks
        self.model = model
        self.enabled = enabled
        self.executor = executor

    def request_title(self, userscript_id: str, prompt: str) -> None:
        """Schedule title generation; inline when no executor is configured."""
        if not self.enabled or not prompt.strip():
            return
        if self.executor is None:
            self.generate(userscript_id, prompt)
            return
        self.executor.submit(self.generate, userscript_id, prompt)

    def generate(self, userscript_id: str, prompt: str) -> str | None:
        try:
            reply = self.provider.complete(
                title_request(prompt),
                model=self.model,
                max_tokens=TITLE_MAX_TOKENS,
            )
        except ModelProviderError as exc:
            logger.warning("title event=failed userscript_id=%s reason=%s", userscript_id, exc)
            return None

        title = reply.content.strip()
        if not title or len(title) > TITLE_MAX_CHARS:
            logger.info("title event=rejected userscript_id=%s length=%d", userscript_id, len(title))
            return None
        return self._apply(userscript_id, title)

    def _apply(self, userscript_id: str, title: str) -> str | None:
        try:
            current = self.store.get_userscript(userscript_id)
        except UserscriptNotFoundError:
            return None
        with self.locks.hold(current.conversation_id, blocking=True):
            try:
                current = self.store.get_userscript(userscript_id)
            except UserscriptNotFoundError:
                return None
            # A user rename or an approval wins over a late title.
            if not current.has_placeholder_name:
                return None
            self.store.save_userscript(current.model_copy(update={"name": title, "updated_at": utc_now()}))
        logger.info("title event=applied userscript_id=%s title=%s", userscript_id, title)
        return title
