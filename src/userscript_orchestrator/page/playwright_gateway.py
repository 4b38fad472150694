"""Playwright-driven page runtime.

Playwright's sync API is bound to the thread that started it, so every
browser call is funneled through a single-worker executor. Page-load events
are queued by the browser thread and delivered to listeners on the caller's
thread once the triggering call returns.
"""

from __future__ import annotations

import base64
import logging
import threading
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from userscript_orchestrator.page.gateway import (
    ExecutionResult,
    PageGatewayError,
    PageLoadListener,
    RawPageCapture,
    execution_result_from_payload,
    wrap_with_console_capture,
)

logger = logging.getLogger(__name__)

CONSOLE_BUFFER_SIZE = 100
_CONSOLE_LEVELS = {"log": "LOG", "error": "ERROR", "warning": "WARN", "info": "INFO"}


class PlaywrightPageGateway:
    def __init__(self, *, headless: bool = True, timeout_ms: int = 15_000) -> None:
        self.headless = headless
        self.timeout_ms = timeout_ms
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="playwright")
        self._lock = threading.Lock()
        self._listeners: list[PageLoadListener] = []
        self._pending_loads: list[tuple[str, str]] = []
        self._pages: dict[str, Any] = {}
        self._console: dict[str, deque[str]] = {}
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None

    def open(self, url: str) -> str:
        return self._call(self._open, url)

    def list_targets(self) -> dict[str, str]:
        return self._call(lambda: {target_id: page.url for target_id, page in self._pages.items()})

    def execute(self, target_id: str, js_script: str, request_id: str) -> ExecutionResult:
        return self._call(self._execute, target_id, js_script, request_id)

    def capture(self, target_id: str, *, include_screenshot: bool = True) -> RawPageCapture:
        return self._call(self._capture, target_id, include_screenshot)

    def reload(self, target_id: str) -> None:
        self._call(self._reload, target_id)

    def add_load_listener(self, listener: PageLoadListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def close(self) -> None:
        try:
            self._pool.submit(self._shutdown).result()
        finally:
            self._pool.shutdown(wait=True)

    def _call(self, fn: Any, *args: Any) -> Any:
        try:
            result = self._pool.submit(fn, *args).result()
        finally:
            self._deliver_loads()
        return result

    def _deliver_loads(self) -> None:
        with self._lock:
            loads, self._pending_loads = self._pending_loads, []
            listeners = list(self._listeners)
        for target_id, url in loads:
            for listener in listeners:
                try:
                    listener(target_id, url)
                except Exception:  # noqa: BLE001
                    logger.exception("page_load event=listener_failed target_id=%s", target_id)

    def _ensure_browser(self) -> None:
        if self._context is not None:
            return
        sync_playwright = self._load_playwright()
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(headless=self.headless)
        # The execution world must not be blocked by the page's own CSP.
        self._context = self._browser.new_context(bypass_csp=True)
        logger.info("playwright event=started headless=%s", self.headless)

    def _open(self, url: str) -> str:
        self._ensure_browser()
        target_id = str(uuid.uuid4())
        page = self._context.new_page()
        page.set_default_timeout(self.timeout_ms)
        buffer: deque[str] = deque(maxlen=CONSOLE_BUFFER_SIZE)
        self._console[target_id] = buffer
        self._pages[target_id] = page

        def _on_console(message: Any) -> None:
            level = _CONSOLE_LEVELS.get(message.type)
            if level is not None:
                buffer.append(f"[{level}] {message.text}")

        def _on_load(loaded: Any) -> None:
            with self._lock:
                self._pending_loads.append((target_id, loaded.url))

        page.on("console", _on_console)
        page.on("load", _on_load)
        try:
            page.goto(url, wait_until="load")
        except Exception as exc:  # noqa: BLE001
            raise PageGatewayError(f"Failed to open {url}: {exc}") from exc
        return target_id

    def _page(self, target_id: str) -> Any:
        page = self._pages.get(target_id)
        if page is None or page.is_closed():
            raise PageGatewayError(
                f"No active page for target {target_id}. Open the page again and retry."
            )
        return page

    def _execute(self, target_id: str, js_script: str, request_id: str) -> ExecutionResult:
        page = self._page(target_id)
        try:
            payload = page.evaluate(wrap_with_console_capture(js_script))
        except Exception as exc:  # noqa: BLE001
            # Syntax errors surface here rather than inside the wrapper.
            return ExecutionResult(request_id=request_id, result="", error=str(exc))
        return execution_result_from_payload(request_id, payload)

    def _capture(self, target_id: str, include_screenshot: bool) -> RawPageCapture:
        page = self._page(target_id)
        try:
            html = page.content()
        except Exception as exc:  # noqa: BLE001
            raise PageGatewayError(
                f"No response from page. The page may not be ready yet ({exc})."
            ) from exc
        screenshot = ""
        if include_screenshot:
            try:
                encoded = base64.b64encode(page.screenshot(type="png")).decode("ascii")
                screenshot = f"data:image/png;base64,{encoded}"
            except Exception as exc:  # noqa: BLE001
                logger.warning("capture event=screenshot_failed target_id=%s reason=%s", target_id, exc)
        return RawPageCapture(
            url=page.url,
            html=html,
            console_log="\n".join(self._console.get(target_id, ())),
            screenshot=screenshot,
        )

    def _reload(self, target_id: str) -> None:
        page = self._page(target_id)
        try:
            page.reload(wait_until="load")
        except Exception as exc:  # noqa: BLE001
            raise PageGatewayError(f"Failed to reload target {target_id}: {exc}") from exc

    def _shutdown(self) -> None:
        if self._browser is not None:
            self._browser.close()
        if self._playwright is not None:
            self._playwright.stop()
        self._pages.clear()
        self._context = None
        self._browser = None
        self._playwright = None

    @staticmethod
    def _load_playwright() -> Any:
        try:
            from playwright.sync_api import sync_playwright
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "The browser runtime requires playwright. Install with: "
                'python -m pip install "playwright>=1.44" && python -m playwright install chromium'
            ) from exc
        return sync_playwright
