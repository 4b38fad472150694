"""Page execution gateway contract shared by runtimes and the orchestrator."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from pydantic import BaseModel

NO_OUTPUT_MESSAGE = "Script executed successfully (no console output)"

PageLoadListener = Callable[[str, str], None]

# Wraps user code so console output and the thrown error come back as data.
# The placeholder is substituted with str.replace because the template is full
# of JavaScript braces.
CONSOLE_CAPTURE_TEMPLATE = """
() => {
  const logs = [];
  let error = null;
  const original = {
    log: console.log, error: console.error, warn: console.warn, info: console.info,
  };
  const format = (value) => {
    if (typeof value === "object") {
      try { return JSON.stringify(value); } catch (_) { return String(value); }
    }
    return String(value);
  };
  const capture = (level, name) => (...args) => {
    original[name].apply(console, args);
    try { logs.push("[" + level + "] " + args.map(format).join(" ")); } catch (_) {}
  };
  console.log = capture("LOG", "log");
  console.error = capture("ERROR", "error");
  console.warn = capture("WARN", "warn");
  console.info = capture("INFO", "info");
  try {
    __USER_CODE__
  } catch (e) {
    error = e instanceof Error ? e.message : String(e);
  } finally {
    console.log = original.log;
    console.error = original.error;
    console.warn = original.warn;
    console.info = original.info;
  }
  return { output: logs.join("\\n"), error: error };
}
"""


class PageGatewayError(RuntimeError):
    """The execution host could not reach or drive the target."""


class ExecutionResult(BaseModel):
    request_id: str
    # Captured console lines, or the no-output notice.
    result: str
    error: str | None = None


class RawPageCapture(BaseModel):
    url: str = ""
    html: str = ""
    console_log: str = ""
    screenshot: str = ""


class PageGateway(Protocol):
    def open(self, url: str) -> str: ...

    def list_targets(self) -> dict[str, str]: ...

    def execute(self, target_id: str, js_script: str, request_id: str) -> ExecutionResult: ...

    def capture(self, target_id: str, *, include_screenshot: bool = True) -> RawPageCapture: ...

    def reload(self, target_id: str) -> None: ...

    def add_load_listener(self, listener: PageLoadListener) -> None: ...


def wrap_with_console_capture(js_script: str) -> str:
    return CONSOLE_CAPTURE_TEMPLATE.replace("__USER_CODE__", js_script)


def execution_result_from_payload(request_id: str, payload: object) -> ExecutionResult:
    """Normalize the wrapper's return value into an ExecutionResult."""
    if not isinstance(payload, dict):
        return ExecutionResult(request_id=request_id, result=NO_OUTPUT_MESSAGE)
    output = str(payload.get("output") or "")
    raw_error = payload.get("error")
    error = str(raw_error) if raw_error else None
    if not output and error is None:
        output = NO_OUTPUT_MESSAGE
    return ExecutionResult(request_id=request_id, result=output, error=error)
