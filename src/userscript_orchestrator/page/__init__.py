"""Page runtime gateway, observation capture and markup preparation."""

from userscript_orchestrator.page.capture import (
    CaptureFailedError,
    Observation,
    ObservationCapturer,
    is_restricted_url,
)
from userscript_orchestrator.page.gateway import (
    NO_OUTPUT_MESSAGE,
    ExecutionResult,
    PageGateway,
    PageGatewayError,
    RawPageCapture,
)
from userscript_orchestrator.page.markup import prepare_markup, scrub_high_entropy, summarize_structure
from userscript_orchestrator.page.playwright_gateway import PlaywrightPageGateway

__all__ = [
    "CaptureFailedError",
    "NO_OUTPUT_MESSAGE",
    "ExecutionResult",
    "Observation",
    "ObservationCapturer",
    "PageGateway",
    "PageGatewayError",
    "PlaywrightPageGateway",
    "RawPageCapture",
    "is_restricted_url",
    "prepare_markup",
    "scrub_high_entropy",
    "summarize_structure",
]
