"""OpenAI chat completions client with function calling and hard abort.

The connection is opened before the request is sent so a cancel can shut
the socket down while the model is still generating.
"""

from __future__ import annotations

import json
import logging
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from http import client as http_client
from typing import Any, Protocol
from urllib import parse

from pydantic import BaseModel, Field

from userscript_orchestrator.config.settings import Settings
from userscript_orchestrator.orchestrator.cancellation import CancellationToken
from userscript_orchestrator.storage.models import ToolCall, ToolCallFunction

logger = logging.getLogger(__name__)


class ModelProviderError(RuntimeError):
    """The provider call failed; the message is shown to the user verbatim."""


class ModelCallCancelled(RuntimeError):
    """The caller aborted the in-flight request."""


class ModelReply(BaseModel):
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)


class ChatModelProvider(Protocol):
    """Interface for chat completions with function calling."""

    def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        cancel_token: CancellationToken | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> ModelReply: ...


class OpenAIChatCompletionsProvider:
    """OpenAI chat completions over plain HTTP, with retry and hard abort."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 120.0,
        max_retries: int = 0,
        backoff_s: float = 0.2,
        trace: bool = False,
        poll_interval_s: float = 0.05,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.trace = trace
        self.poll_interval_s = poll_interval_s
        self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="llm")

    def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        cancel_token: CancellationToken | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> ModelReply:
        payload: dict[str, Any] = {"model": model or self.model, "messages": messages}
        if tools:
            payload["tools"] = tools
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        response_json = self._request_with_retry(payload, cancel_token)
        return parse_reply(response_json)

    def _request_with_retry(
        self,
        payload: dict[str, Any],
        cancel_token: CancellationToken | None,
    ) -> dict[str, Any]:
        last_error: ModelProviderError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request_cancellable(payload, cancel_token)
            except ModelProviderError as exc:
                last_error = exc
                logger.warning(
                    "OpenAI request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    payload["model"],
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    if cancel_token is not None and cancel_token.wait(self.backoff_s):
                        raise ModelCallCancelled("Request cancelled") from exc
                    if cancel_token is None:
                        time.sleep(self.backoff_s)
        if last_error is None:
            raise ModelProviderError("LLM request failed with unknown error")
        raise last_error

    def _request_cancellable(
        self,
        payload: dict[str, Any],
        cancel_token: CancellationToken | None,
    ) -> dict[str, Any]:
        if cancel_token is None:
            return self._request(payload, None)
        if cancel_token.cancelled:
            raise ModelCallCancelled("Request cancelled")
        future = self._pool.submit(self._request, payload, cancel_token)
        while not future.done():
            if cancel_token.wait(self.poll_interval_s):
                break
        if cancel_token.cancelled:
            # The worker may still be unwinding; its result is discarded.
            future.cancel()
            raise ModelCallCancelled("Request cancelled")
        return future.result()

    def _request(
        self,
        payload: dict[str, Any],
        cancel_token: CancellationToken | None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        if self.trace:
            logger.warning(
                "LLM trace request provider=openai model=%s url=%s messages=%d tools=%d",
                payload["model"],
                url,
                len(payload["messages"]),
                len(payload.get("tools", [])),
            )
        target = parse.urlsplit(url)
        path = f"{target.path}?{target.query}" if target.query else target.path
        connection = open_connection(target, self.timeout_s)
        try:
            connection.connect()
            if cancel_token is not None:
                # Runs immediately when the cancel already happened during connect.
                cancel_token.on_cancel(_closer(connection))
            connection.request(
                "POST",
                path,
                body=json.dumps(payload).encode("utf-8"),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
            response = connection.getresponse()
            status, reason = response.status, response.reason
            body = response.read().decode("utf-8", errors="replace")
        except (TimeoutError, OSError, http_client.HTTPException, ValueError) as exc:
            if cancel_token is not None and cancel_token.cancelled:
                raise ModelCallCancelled("Request cancelled") from exc
            raise ModelProviderError(f"API request failed: {exc}") from exc
        finally:
            connection.close()
        if cancel_token is not None and cancel_token.cancelled:
            raise ModelCallCancelled("Request cancelled")
        if status >= 400:
            raise ModelProviderError(_http_error_message(status, reason, body))
        if self.trace:
            logger.warning("LLM trace response provider=openai model=%s status=ok", payload["model"])
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ModelProviderError("Failed to parse API response as JSON") from exc
        if not isinstance(parsed, dict):
            raise ModelProviderError("Failed to parse API response as JSON")
        return parsed


class UnconfiguredProvider:
    """Stand-in used when no API key is configured; every call fails visibly."""

    def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        cancel_token: CancellationToken | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> ModelReply:
        raise ModelProviderError(
            "OpenAI API key is not configured. Set OPENAI_API_KEY and try again."
        )


def parse_reply(response_json: dict[str, Any]) -> ModelReply:
    choices = response_json.get("choices")
    if not choices:
        raise ModelProviderError(_body_error_message(response_json) or "API returned no choices")
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        raise ModelProviderError("Malformed API response: choices must be a list of objects")

    message = choices[0].get("message")
    if message is None:
        message = {}
    if not isinstance(message, dict):
        raise ModelProviderError("Malformed API response: choice message must be an object")
    raw_calls = message.get("tool_calls") or []
    if not isinstance(raw_calls, list):
        raise ModelProviderError("Malformed API response: tool_calls must be a list")

    tool_calls: list[ToolCall] = []
    for item in raw_calls:
        function = item.get("function") if isinstance(item, dict) else None
        if not isinstance(function, dict) or not function.get("name"):
            continue
        arguments = function.get("arguments")
        tool_calls.append(
            ToolCall(
                id=str(item.get("id") or ""),
                function=ToolCallFunction(
                    name=str(function["name"]),
                    arguments=arguments if isinstance(arguments, str) else json.dumps(arguments or {}),
                ),
            )
        )
    return ModelReply(content=_content_text(message.get("content")), tool_calls=tool_calls)


def build_provider(settings: Settings) -> ChatModelProvider:
    api_key = settings.resolved_openai_api_key()
    if not api_key:
        logger.warning("llm event=provider_unconfigured reason=missing_api_key")
        return UnconfiguredProvider()
    return OpenAIChatCompletionsProvider(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
        trace=settings.llm_trace,
    )


def open_connection(target: parse.SplitResult, timeout_s: float) -> http_client.HTTPConnection:
    if target.scheme == "http":
        return http_client.HTTPConnection(target.hostname or "", target.port, timeout=timeout_s)
    return http_client.HTTPSConnection(target.hostname or "", target.port, timeout=timeout_s)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        segments = [
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        ]
        return "".join(segments)
    return ""


def _http_error_message(status: int, reason: str, raw: str) -> str:
    message = f"API error: {status} {reason}"
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        return f"API error: {raw[:200]}" if raw else message
    return _body_error_message(body) or message


def _body_error_message(body: Any) -> str:
    if not isinstance(body, dict):
        return ""
    detail = body.get("error")
    if isinstance(detail, dict) and isinstance(detail.get("message"), str):
        return detail["message"]
    return ""


def _closer(connection: Any):
    # Shutdown wakes the worker blocked in recv; the worker closes the connection.
    def _close() -> None:
        sock = getattr(connection, "sock", None)
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            logger.debug("llm event=abort_shutdown_failed")

    return _close
