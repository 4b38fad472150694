from __future__ import annotations

import json
import socket
import threading
from typing import Any

import pytest

from conftest import EXAMPLE_URL, FakePageGateway
from userscript_orchestrator.api.main import build_runtime
from userscript_orchestrator.config.settings import Settings
from userscript_orchestrator.llm import provider as provider_module
from userscript_orchestrator.llm.provider import (
    ModelCallCancelled,
    ModelProviderError,
    OpenAIChatCompletionsProvider,
    UnconfiguredProvider,
    build_provider,
    parse_reply,
)
from userscript_orchestrator.orchestrator.cancellation import CancellationToken
from userscript_orchestrator.storage.memory import InMemoryScriptStorage

MALFORMED_BODIES = [
    ({"choices": ["oops"]}, "choices must be a list of objects"),
    ({"choices": {"x": 1}}, "choices must be a list of objects"),
    ({"choices": [{"message": "oops"}]}, "choice message must be an object"),
    ({"choices": [{"message": {"tool_calls": {"id": "x"}}}]}, "tool_calls must be a list"),
]


class _FakeResponse:
    def __init__(self, status: int, reason: str, body: bytes) -> None:
        self.status = status
        self.reason = reason
        self._body = body

    def read(self) -> bytes:
        return self._body


class _FakeConnection:
    def __init__(
        self,
        payload: Any = None,
        *,
        status: int = 200,
        reason: str = "OK",
        connect_error: OSError | None = None,
    ) -> None:
        if payload is None:
            payload = b""
        self.body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        self.status = status
        self.reason = reason
        self.connect_error = connect_error
        self.sock = None
        self.requests: list[dict[str, Any]] = []
        self.closed = False

    def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error

    def request(self, method: str, path: str, body: bytes | None = None, headers: Any = None) -> None:
        self.requests.append({"method": method, "path": path, "body": body, "headers": headers})

    def getresponse(self) -> _FakeResponse:
        return _FakeResponse(self.status, self.reason, self.body)

    def close(self) -> None:
        self.closed = True


def _install(monkeypatch: pytest.MonkeyPatch, *connections: _FakeConnection) -> list[tuple[Any, float]]:
    pending = list(connections)
    opened: list[tuple[Any, float]] = []

    def fake_open_connection(target: Any, timeout_s: float) -> _FakeConnection:
        opened.append((target, timeout_s))
        if not pending:
            raise AssertionError("no connection expected")
        return pending.pop(0)

    monkeypatch.setattr(provider_module, "open_connection", fake_open_connection)
    return opened


def _provider(**kwargs: Any) -> OpenAIChatCompletionsProvider:
    return OpenAIChatCompletionsProvider(api_key="sk-test", **kwargs)


def test_complete_sends_tools_and_parses_tool_calls(monkeypatch: pytest.MonkeyPatch) -> None:
    connection = _FakeConnection(
        {
            "choices": [
                {
                    "message": {
                        "content": "Adding the button.",
                        "tool_calls": [
                            {
                                "id": "call_9",
                                "type": "function",
                                "function": {
                                    "name": "execute_js",
                                    "arguments": '{"jsScript": "alert(1);"}',
                                },
                            }
                        ],
                    }
                }
            ]
        }
    )
    opened = _install(monkeypatch, connection)
    tools = [{"type": "function", "function": {"name": "execute_js"}}]

    reply = _provider(timeout_s=30.0).complete([{"role": "user", "content": "hi"}], tools=tools)

    target, timeout_s = opened[0]
    assert (target.scheme, target.hostname) == ("https", "api.openai.com")
    assert timeout_s == 30.0
    sent = connection.requests[0]
    assert (sent["method"], sent["path"]) == ("POST", "/v1/chat/completions")
    assert sent["headers"]["Authorization"] == "Bearer sk-test"
    payload = json.loads(sent["body"].decode("utf-8"))
    assert payload["model"] == "gpt-4o"
    assert payload["tools"] == tools
    assert connection.closed is True
    assert reply.content == "Adding the button."
    assert reply.tool_calls[0].id == "call_9"
    assert reply.tool_calls[0].function.arguments == '{"jsScript": "alert(1);"}'


def test_open_connection_follows_scheme() -> None:
    plain = provider_module.open_connection(
        provider_module.parse.urlsplit("http://localhost:1234/v1"), 5.0
    )
    secure = provider_module.open_connection(
        provider_module.parse.urlsplit("https://api.openai.com/v1"), 5.0
    )

    assert type(plain) is provider_module.http_client.HTTPConnection
    assert (plain.host, plain.port, plain.timeout) == ("localhost", 1234, 5.0)
    assert isinstance(secure, provider_module.http_client.HTTPSConnection)
    assert secure.port == 443


def test_http_error_uses_message_from_json_body(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(
        monkeypatch,
        _FakeConnection(
            b'{"error": {"message": "Incorrect API key provided"}}', status=401, reason="Unauthorized"
        ),
    )

    with pytest.raises(ModelProviderError, match="^Incorrect API key provided$"):
        _provider().complete([{"role": "user", "content": "hi"}])


def test_http_error_with_plain_body(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _FakeConnection(b"upstream exploded", status=502, reason="Bad Gateway"))

    with pytest.raises(ModelProviderError, match="^API error: upstream exploded$"):
        _provider().complete([{"role": "user", "content": "hi"}])


def test_http_error_without_body(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _FakeConnection(b"", status=500, reason="Internal Server Error"))

    with pytest.raises(ModelProviderError, match="^API error: 500 Internal Server Error$"):
        _provider().complete([{"role": "user", "content": "hi"}])


def test_non_json_success_body(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _FakeConnection(b"<html>proxy login</html>"))

    with pytest.raises(ModelProviderError, match="Failed to parse API response as JSON"):
        _provider().complete([{"role": "user", "content": "hi"}])


def test_retries_until_success(monkeypatch: pytest.MonkeyPatch) -> None:
    refused = [
        _FakeConnection(connect_error=ConnectionRefusedError("connection refused")) for _ in range(2)
    ]
    opened = _install(
        monkeypatch, *refused, _FakeConnection({"choices": [{"message": {"content": "ok"}}]})
    )

    reply = _provider(max_retries=2, backoff_s=0.0).complete([{"role": "user", "content": "hi"}])

    assert reply.content == "ok"
    assert len(opened) == 3
    assert all(connection.closed for connection in refused)


def test_cancel_before_response_headers_shuts_the_socket() -> None:
    server = socket.create_server(("127.0.0.1", 0))
    port = server.getsockname()[1]
    request_seen = threading.Event()
    peer_closed = threading.Event()

    def serve() -> None:
        conn, _ = server.accept()
        with conn:
            conn.settimeout(5.0)
            try:
                conn.recv(65536)
                request_seen.set()
                # Never answers; returns once the client side goes away.
                while conn.recv(65536):
                    pass
                peer_closed.set()
            except ConnectionResetError:
                peer_closed.set()
            except OSError:
                pass

    server_thread = threading.Thread(target=serve, daemon=True)
    server_thread.start()
    token = CancellationToken()
    outcome: dict[str, BaseException] = {}
    provider = _provider(base_url=f"http://127.0.0.1:{port}/v1", timeout_s=10.0, poll_interval_s=0.01)

    def run() -> None:
        try:
            provider.complete([{"role": "user", "content": "hi"}], cancel_token=token)
        except BaseException as exc:  # noqa: BLE001
            outcome["error"] = exc

    worker = threading.Thread(target=run)
    worker.start()
    try:
        assert request_seen.wait(2.0)
        token.cancel()
        worker.join(timeout=2.0)

        assert isinstance(outcome.get("error"), ModelCallCancelled)
        assert peer_closed.wait(2.0)
    finally:
        token.cancel()
        server.close()
        server_thread.join(timeout=6.0)


def test_already_cancelled_token_skips_request(monkeypatch: pytest.MonkeyPatch) -> None:
    opened = _install(monkeypatch)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(ModelCallCancelled):
        _provider().complete([{"role": "user", "content": "hi"}], cancel_token=token)
    assert opened == []


def test_parse_reply_without_choices() -> None:
    with pytest.raises(ModelProviderError, match="^API returned no choices$"):
        parse_reply({"choices": []})
    with pytest.raises(ModelProviderError, match="^Rate limit reached$"):
        parse_reply({"error": {"message": "Rate limit reached"}})


@pytest.mark.parametrize(("body", "detail"), MALFORMED_BODIES)
def test_parse_reply_rejects_malformed_structure(body: dict[str, Any], detail: str) -> None:
    with pytest.raises(ModelProviderError, match=f"^Malformed API response: {detail}$"):
        parse_reply(body)


def test_parse_reply_tolerates_null_message() -> None:
    reply = parse_reply({"choices": [{"message": None}]})

    assert reply.content == ""
    assert reply.tool_calls == []


@pytest.mark.parametrize(("body", "detail"), MALFORMED_BODIES)
def test_malformed_reply_becomes_error_turn(
    monkeypatch: pytest.MonkeyPatch,
    settings: Settings,
    gateway: FakePageGateway,
    body: dict[str, Any],
    detail: str,
) -> None:
    _install(monkeypatch, _FakeConnection(body))
    runtime = build_runtime(
        settings, storage=InMemoryScriptStorage(), gateway=gateway, provider=_provider()
    )
    target_id = gateway.open(EXAMPLE_URL)
    _, conversation = runtime.lifecycle.create_task(target_id)

    effect = runtime.orchestrator.advance(conversation.id, "hello", target_id=target_id)

    assert effect.outcome == "error"
    assert effect.error == f"Malformed API response: {detail}"
    stored = runtime.store.get_conversation(conversation.id)
    assert [message.role for message in stored.messages] == ["user", "assistant"]
    assert stored.messages[-1].content == f"Error: Malformed API response: {detail}"
    assert runtime.orchestrator.is_busy(conversation.id) is False


def test_parse_reply_joins_content_parts_and_skips_nameless_calls() -> None:
    reply = parse_reply(
        {
            "choices": [
                {
                    "message": {
                        "content": [{"type": "text", "text": "Hello "}, {"type": "text", "text": "there"}],
                        "tool_calls": [{"id": "x", "function": {"arguments": "{}"}}],
                    }
                }
            ]
        }
    )

    assert reply.content == "Hello there"
    assert reply.tool_calls == []


def test_build_provider_without_key_fails_visibly(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    built = build_provider(Settings(openai_api_key=""))

    assert isinstance(built, UnconfiguredProvider)
    with pytest.raises(ModelProviderError, match="OpenAI API key is not configured"):
        built.complete([{"role": "user", "content": "hi"}])


def test_build_provider_reads_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")

    built = build_provider(Settings(openai_api_key="", llm_model="gpt-4o-mini", llm_max_retries=2))

    assert isinstance(built, OpenAIChatCompletionsProvider)
    assert built.api_key == "sk-env"
    assert built.model == "gpt-4o-mini"
    assert built.max_retries == 2
