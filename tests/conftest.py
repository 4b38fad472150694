from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest
from fastapi.testclient import TestClient

from userscript_orchestrator.api.main import Runtime, build_runtime, create_app
from userscript_orchestrator.config.settings import Settings
from userscript_orchestrator.llm.provider import ModelReply
from userscript_orchestrator.orchestrator.cancellation import CancellationToken
from userscript_orchestrator.page.gateway import (
    ExecutionResult,
    PageGatewayError,
    PageLoadListener,
    RawPageCapture,
)
from userscript_orchestrator.storage.memory import InMemoryScriptStorage
from userscript_orchestrator.storage.models import ToolCall, ToolCallFunction

EXAMPLE_URL = "https://example.com/page"
EXAMPLE_HTML = "<html><head><title>Example</title></head><body><h1>Example Domain</h1></body></html>"
EXAMPLE_SCREENSHOT = "data:image/png;base64,iVBORw0KGgo="


class FakePageGateway:
    """Test-only page runtime that records executions and replays load events."""

    def __init__(self) -> None:
        self.pages: dict[str, dict[str, str]] = {}
        self.executions: list[tuple[str, str]] = []
        self.reloads: list[str] = []
        self.capture_calls: list[str] = []
        self.script_errors: dict[str, str] = {}
        self.capture_error: str | None = None
        self._listeners: list[PageLoadListener] = []

    def open(self, url: str) -> str:
        target_id = f"target-{len(self.pages) + 1}"
        self.pages[target_id] = {
            "url": url,
            "html": EXAMPLE_HTML,
            "console_log": "[LOG] page ready",
            "screenshot": EXAMPLE_SCREENSHOT,
        }
        return target_id

    def list_targets(self) -> dict[str, str]:
        return {target_id: page["url"] for target_id, page in self.pages.items()}

    def execute(self, target_id: str, js_script: str, request_id: str) -> ExecutionResult:
        self._page(target_id)
        self.executions.append((target_id, js_script))
        error = self.script_errors.get(js_script)
        if error is not None:
            return ExecutionResult(request_id=request_id, result="", error=error)
        return ExecutionResult(request_id=request_id, result="[LOG] applied")

    def capture(self, target_id: str, *, include_screenshot: bool = True) -> RawPageCapture:
        self.capture_calls.append(target_id)
        if self.capture_error is not None:
            raise PageGatewayError(self.capture_error)
        page = self._page(target_id)
        return RawPageCapture(
            url=page["url"],
            html=page["html"],
            console_log=page["console_log"],
            screenshot=page["screenshot"] if include_screenshot else "",
        )

    def reload(self, target_id: str) -> None:
        page = self._page(target_id)
        self.reloads.append(target_id)
        for listener in list(self._listeners):
            listener(target_id, page["url"])

    def add_load_listener(self, listener: PageLoadListener) -> None:
        self._listeners.append(listener)

    def _page(self, target_id: str) -> dict[str, str]:
        page = self.pages.get(target_id)
        if page is None:
            raise PageGatewayError(f"No active page for target {target_id}.")
        return page


Scripted = ModelReply | Exception | Callable[[CancellationToken | None], ModelReply]


class FakeProvider:
    """Replays queued replies and records every request."""

    def __init__(self, replies: list[Scripted] | None = None) -> None:
        self.replies: list[Scripted] = list(replies or [])
        self.calls: list[dict[str, Any]] = []

    def queue(self, *replies: Scripted) -> None:
        self.replies.extend(replies)

    def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        cancel_token: CancellationToken | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> ModelReply:
        self.calls.append(
            {"messages": messages, "tools": tools, "model": model, "max_tokens": max_tokens}
        )
        if not self.replies:
            raise AssertionError("FakeProvider has no queued reply")
        item = self.replies.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(cancel_token)
        return item


def tool_reply(script: str, *, call_id: str = "call_1", content: str = "") -> ModelReply:
    return ModelReply(
        content=content,
        tool_calls=[
            ToolCall(
                id=call_id,
                function=ToolCallFunction(
                    name="execute_js", arguments=json.dumps({"jsScript": script})
                ),
            )
        ],
    )


def text_reply(content: str) -> ModelReply:
    return ModelReply(content=content)


@pytest.fixture
def settings() -> Settings:
    return Settings(title_generation_enabled=False, storage_backend="memory")


@pytest.fixture
def gateway() -> FakePageGateway:
    return FakePageGateway()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def storage() -> InMemoryScriptStorage:
    return InMemoryScriptStorage()


@pytest.fixture
def runtime(
    settings: Settings,
    storage: InMemoryScriptStorage,
    gateway: FakePageGateway,
    provider: FakeProvider,
) -> Runtime:
    return build_runtime(settings, storage=storage, gateway=gateway, provider=provider)


@pytest.fixture
def client(
    settings: Settings,
    storage: InMemoryScriptStorage,
    gateway: FakePageGateway,
    provider: FakeProvider,
) -> TestClient:
    app = create_app(
        storage=storage,
        gateway=gateway,
        provider=provider,
        settings_override=settings,
    )
    return TestClient(app)
