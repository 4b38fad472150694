"""Observation capture: a normalized, size-bounded snapshot of the target page."""

from __future__ import annotations

import logging

from pydantic import BaseModel

from userscript_orchestrator.page.gateway import PageGateway, PageGatewayError
from userscript_orchestrator.page.markup import prepare_markup
from userscript_orchestrator.storage.models import MarkupKind

logger = logging.getLogger(__name__)

RESTRICTED_URL_PREFIXES = ("chrome://", "edge://", "about:", "chrome-extension://")


class CaptureFailedError(RuntimeError):
    """Raised by callers that cannot proceed without a usable observation."""

    def __init__(self, observation: Observation) -> None:
        super().__init__(observation.error or "Failed to capture page data.")
        self.observation = observation


class Observation(BaseModel):
    url: str = ""
    markup: str = ""
    markup_kind: MarkupKind = "html"
    console_log: str = ""
    screenshot: str = ""
    # Populated instead of raising so callers can tell "empty" from "failed".
    error: str | None = None

    @property
    def usable(self) -> bool:
        return self.error is None and bool(self.url) and bool(self.markup)


def is_restricted_url(url: str) -> bool:
    return url.startswith(RESTRICTED_URL_PREFIXES)


class ObservationCapturer:
    def __init__(
        self,
        gateway: PageGateway,
        *,
        markup_budget: int = 100_000,
        console_log_max_chars: int = 10_000,
    ) -> None:
        self.gateway = gateway
        self.markup_budget = markup_budget
        self.console_log_max_chars = console_log_max_chars

    def capture(self, target_id: str, include_screenshot: bool = True) -> Observation:
        try:
            raw = self.gateway.capture(target_id, include_screenshot=include_screenshot)
        except PageGatewayError as exc:
            logger.warning("capture event=failed target_id=%s reason=%s", target_id, exc)
            return Observation(error=str(exc) or "Failed to capture page data.")

        if raw.url and is_restricted_url(raw.url):
            scheme = raw.url.split(":", 1)[0]
            return Observation(
                url=raw.url,
                error=(
                    f'Cannot modify restricted pages like "{scheme}://" URLs. '
                    "Please navigate to a regular website."
                ),
            )
        if not raw.url:
            return Observation(
                error="Content script returned invalid data. Try reloading the page."
            )
        if not raw.html:
            return Observation(
                url=raw.url,
                error="Failed to capture page data. Try reloading the page and trying again.",
            )

        return self.normalize(
            url=raw.url,
            html=raw.html,
            console_log=raw.console_log,
            screenshot=raw.screenshot,
        )

    def normalize(
        self,
        *,
        url: str,
        html: str,
        console_log: str = "",
        screenshot: str = "",
    ) -> Observation:
        """Bound and scrub externally supplied page data."""
        markup, is_summary = prepare_markup(html, budget=self.markup_budget)
        return Observation(
            url=url,
            markup=markup,
            markup_kind="structure" if is_summary else "html",
            console_log=tail(console_log, self.console_log_max_chars),
            screenshot=screenshot,
        )


def tail(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    return text[-max_chars:]
