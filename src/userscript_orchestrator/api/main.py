"""FastAPI app entrypoint for userscript-orchestrator."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
import uvicorn

from userscript_orchestrator.api.schemas import (
    CancelRequest,
    CancelResponse,
    CreateTaskRequest,
    EditMessageRequest,
    ExecutionStatusResponse,
    ImportTaskRequest,
    OpenTargetRequest,
    PageLoadedRequest,
    RejectRequest,
    RejectResponse,
    SendMessageRequest,
    TargetInfo,
    TaskResponse,
    UpdateTaskRequest,
)
from userscript_orchestrator.config.settings import Settings, get_settings
from userscript_orchestrator.llm.provider import ChatModelProvider, build_provider
from userscript_orchestrator.llm.titles import TitleGenerator
from userscript_orchestrator.orchestrator.approval import ApprovalController, InvalidTransitionError
from userscript_orchestrator.orchestrator.cancellation import DoublePressCanceller
from userscript_orchestrator.orchestrator.lifecycle import TaskLifecycle
from userscript_orchestrator.orchestrator.locking import ConversationBusyError, ConversationLocks
from userscript_orchestrator.orchestrator.service import AdvanceEffect, Orchestrator
from userscript_orchestrator.page.capture import CaptureFailedError, ObservationCapturer
from userscript_orchestrator.page.gateway import PageGateway, PageGatewayError
from userscript_orchestrator.page.playwright_gateway import PlaywrightPageGateway
from userscript_orchestrator.registry.script_registry import ScriptRegistry
from userscript_orchestrator.storage.base import ScriptStorage, StorageQuotaExceededError
from userscript_orchestrator.storage.memory import InMemoryScriptStorage
from userscript_orchestrator.storage.models import Conversation, ExecutionStatus, Userscript
from userscript_orchestrator.storage.postgres import PostgresScriptStorage
from userscript_orchestrator.storage.repository import (
    ConversationNotFoundError,
    ConversationStore,
    UserscriptNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    store: ConversationStore
    gateway: PageGateway
    capturer: ObservationCapturer
    registry: ScriptRegistry
    orchestrator: Orchestrator
    approvals: ApprovalController
    lifecycle: TaskLifecycle
    locks: ConversationLocks
    title_executor: ThreadPoolExecutor | None = None

    def close(self) -> None:
        if self.title_executor is not None:
            self.title_executor.shutdown(wait=False)
        close = getattr(self.gateway, "close", None)
        if callable(close):
            close()


def _build_storage(settings: Settings) -> ScriptStorage:
    if settings.storage_backend == "memory":
        return InMemoryScriptStorage()
    if settings.storage_backend == "postgres":
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set USERSCRIPT_ORCHESTRATOR_DATABASE_URL "
                "or ORCHESTRATOR_DATABASE_URL before starting the app."
            )
        return PostgresScriptStorage(database_url)
    raise RuntimeError(f"Unknown storage backend: {settings.storage_backend}")


def build_runtime(
    settings: Settings,
    *,
    storage: ScriptStorage | None = None,
    gateway: PageGateway | None = None,
    provider: ChatModelProvider | None = None,
    title_executor: ThreadPoolExecutor | None = None,
) -> Runtime:
    backend = storage or _build_storage(settings)
    backend.migrate()
    store = ConversationStore(backend)
    gateway = gateway or PlaywrightPageGateway(
        headless=settings.page_headless,
        timeout_ms=settings.page_timeout_ms,
    )
    provider = provider or build_provider(settings)
    locks = ConversationLocks()
    capturer = ObservationCapturer(
        gateway,
        markup_budget=settings.markup_char_budget,
        console_log_max_chars=settings.console_log_max_chars,
    )
    registry = ScriptRegistry(store, gateway)
    registry.attach()
    titles = TitleGenerator(
        store=store,
        provider=provider,
        locks=locks,
        model=settings.title_model,
        enabled=settings.title_generation_enabled,
        executor=title_executor,
    )
    orchestrator = Orchestrator(
        store=store,
        gateway=gateway,
        capturer=capturer,
        provider=provider,
        registry=registry,
        locks=locks,
        canceller=DoublePressCanceller(window_s=settings.cancel_confirm_window_s),
        title_generator=titles,
        console_log_max_chars=settings.console_log_max_chars,
    )
    return Runtime(
        store=store,
        gateway=gateway,
        capturer=capturer,
        registry=registry,
        orchestrator=orchestrator,
        approvals=ApprovalController(
            store=store, orchestrator=orchestrator, registry=registry, locks=locks
        ),
        lifecycle=TaskLifecycle(store=store, capturer=capturer, registry=registry, locks=locks),
        locks=locks,
        title_executor=title_executor,
    )


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: ScriptStorage | None,
    gateway_override: PageGateway | None,
    provider_override: ChatModelProvider | None,
) -> None:
    if not hasattr(app.state, "runtime"):
        title_executor = None
        if provider_override is None:
            title_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="titles")
        app.state.runtime = build_runtime(
            settings,
            storage=storage_override,
            gateway=gateway_override,
            provider=provider_override,
            title_executor=title_executor,
        )

    if not hasattr(app.state, "settings"):
        app.state.settings = settings


def create_app(
    *,
    storage: ScriptStorage | None = None,
    gateway: PageGateway | None = None,
    provider: ChatModelProvider | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    overrides = {
        "storage_override": storage,
        "gateway_override": gateway,
        "provider_override": provider,
    }

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, **overrides)
        yield
        app.state.runtime.close()

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, debug=settings.app_debug, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(app, settings=settings, **overrides)

    def _runtime(request: Request) -> Runtime:
        if not hasattr(request.app.state, "runtime"):
            _ensure_runtime_state(request.app, settings=settings, **overrides)
        return request.app.state.runtime

    _register_error_handlers(app)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/targets", response_model=TargetInfo)
    def open_target(payload: OpenTargetRequest, request: Request) -> TargetInfo:
        target_id = _runtime(request).gateway.open(payload.url)
        return TargetInfo(target_id=target_id, url=payload.url)

    @app.get("/targets", response_model=list[TargetInfo])
    def list_targets(request: Request) -> list[TargetInfo]:
        targets = _runtime(request).gateway.list_targets()
        return [TargetInfo(target_id=key, url=value) for key, value in targets.items()]

    @app.post("/targets/{target_id}/page-loaded", response_model=dict[str, ExecutionStatus])
    def page_loaded(target_id: str, payload: PageLoadedRequest, request: Request) -> dict[str, ExecutionStatus]:
        return _runtime(request).registry.handle_page_load(target_id, payload.url)

    @app.post("/tasks", response_model=TaskResponse)
    def create_task(payload: CreateTaskRequest, request: Request) -> TaskResponse:
        userscript, conversation = _runtime(request).lifecycle.create_task(payload.target_id)
        return TaskResponse(userscript=userscript, conversation=conversation)

    @app.post("/tasks/import", response_model=TaskResponse)
    def import_task(payload: ImportTaskRequest, request: Request) -> TaskResponse:
        userscript, conversation = _runtime(request).lifecycle.import_script(
            payload.code,
            name=payload.name,
            source_type=payload.source_type,
            source_url=payload.source_url,
            target_id=payload.target_id,
            page_url=payload.page_url,
        )
        return TaskResponse(userscript=userscript, conversation=conversation)

    @app.get("/tasks", response_model=list[Userscript])
    def list_tasks(request: Request, domain: str | None = None) -> list[Userscript]:
        return _runtime(request).store.list_userscripts(domain=domain)

    @app.get("/tasks/{task_id}", response_model=Userscript)
    def get_task(task_id: str, request: Request) -> Userscript:
        return _runtime(request).store.get_userscript(task_id)

    @app.patch("/tasks/{task_id}", response_model=Userscript)
    def update_task(task_id: str, payload: UpdateTaskRequest, request: Request) -> Userscript:
        changes = payload.model_dump(exclude_none=True)
        if not changes:
            raise HTTPException(status_code=422, detail="No fields to update")
        return _runtime(request).lifecycle.update(task_id, **changes)

    @app.post("/tasks/{task_id}/toggle", response_model=Userscript)
    def toggle_task(task_id: str, request: Request) -> Userscript:
        return _runtime(request).lifecycle.toggle(task_id)

    @app.delete("/tasks/{task_id}")
    def delete_task(task_id: str, request: Request) -> dict[str, str]:
        _runtime(request).lifecycle.delete(task_id)
        return {"status": "deleted", "task_id": task_id}

    @app.get("/tasks/{task_id}/execution-status", response_model=ExecutionStatusResponse)
    def execution_status(task_id: str, request: Request) -> ExecutionStatusResponse:
        runtime = _runtime(request)
        runtime.store.get_userscript(task_id)
        return ExecutionStatusResponse(userscript_id=task_id, status=runtime.registry.status(task_id))

    @app.get("/conversations", response_model=list[Conversation])
    def list_conversations(request: Request, domain: str | None = None) -> list[Conversation]:
        return _runtime(request).store.list_conversations(domain=domain)

    @app.get("/conversations/{conversation_id}", response_model=Conversation)
    def get_conversation(conversation_id: str, request: Request) -> Conversation:
        return _runtime(request).store.get_conversation(conversation_id)

    @app.post("/conversations/{conversation_id}/messages", response_model=AdvanceEffect)
    def send_message(conversation_id: str, payload: SendMessageRequest, request: Request) -> AdvanceEffect:
        runtime = _runtime(request)
        observation = None
        if payload.observation is not None:
            observation = runtime.capturer.normalize(**payload.observation.model_dump())
        return runtime.orchestrator.advance(
            conversation_id,
            payload.content,
            target_id=payload.target_id,
            fresh_observation=observation,
            grabbed_elements=payload.grabbed_elements,
        )

    @app.post("/conversations/{conversation_id}/cancel", response_model=CancelResponse)
    def cancel(conversation_id: str, payload: CancelRequest, request: Request) -> CancelResponse:
        result = _runtime(request).orchestrator.cancel(conversation_id, force=payload.force)
        return CancelResponse(result=result)

    @app.post("/conversations/{conversation_id}/approve", response_model=Userscript)
    def approve(conversation_id: str, request: Request) -> Userscript:
        return _runtime(request).approvals.approve(conversation_id)

    @app.post("/conversations/{conversation_id}/reject", response_model=RejectResponse)
    def reject(conversation_id: str, payload: RejectRequest, request: Request) -> RejectResponse:
        effect = _runtime(request).approvals.reject(
            conversation_id,
            mode=payload.mode,
            target_id=payload.target_id,
            feedback=payload.feedback,
            grabbed_elements=payload.grabbed_elements,
        )
        return RejectResponse(effect=effect)

    @app.post(
        "/conversations/{conversation_id}/messages/{message_id}/edit",
        response_model=AdvanceEffect,
    )
    def edit_message(
        conversation_id: str,
        message_id: str,
        payload: EditMessageRequest,
        request: Request,
    ) -> AdvanceEffect:
        return _runtime(request).approvals.edit_and_resend(
            conversation_id,
            message_id,
            payload.content,
            target_id=payload.target_id,
        )

    @app.post(
        "/conversations/{conversation_id}/messages/{message_id}/revert",
        response_model=Userscript,
    )
    def revert_message(conversation_id: str, message_id: str, request: Request) -> Userscript:
        return _runtime(request).approvals.revert(conversation_id, message_id)

    return app


def _register_error_handlers(app: FastAPI) -> None:
    def _handler(status_code: int, detail: str | None = None):
        async def _respond(request: Request, exc: Exception) -> JSONResponse:
            message = detail or str(exc)
            if status_code >= 500:
                logger.warning(
                    "api event=request_failed path=%s status=%d reason=%s",
                    request.url.path,
                    status_code,
                    exc,
                )
            return JSONResponse(status_code=status_code, content={"detail": message})

        return _respond

    app.add_exception_handler(ConversationNotFoundError, _handler(404, "Conversation not found"))
    app.add_exception_handler(UserscriptNotFoundError, _handler(404, "Task not found"))
    app.add_exception_handler(ConversationBusyError, _handler(409))
    app.add_exception_handler(InvalidTransitionError, _handler(409))
    app.add_exception_handler(CaptureFailedError, _handler(502))
    app.add_exception_handler(PageGatewayError, _handler(502))
    app.add_exception_handler(StorageQuotaExceededError, _handler(507))
    app.add_exception_handler(ValueError, _handler(422))


# Module-level app for `uvicorn userscript_orchestrator.api.main:app`.
app = create_app()


def run() -> None:
    settings = get_settings()
    logger.info("api event=serve host=%s port=%d", settings.api_host, settings.api_port)
    uvicorn.run(
        "userscript_orchestrator.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
    )
