import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .catalog import ModelCatalog, is_model_downloaded, list_models, load_or_create_catalog
from .chat import ChatOrchestrator
from .config import AppSettings, RuntimeConfig, default_settings, load_runtime_config, load_settings, save_settings
from .db import Database
from .downloads import DownloadManager
from .errors import (
    DownloadCancelled,
    EigenError,
    PolicyError,
    ResourceError,
    TransportError,
    UnknownModel,
)
from .events import EventBus
from .llm import LlamaServerClient
from .schemas import CancelGenerationRequest, ChatTurnRequest, RenameChatRequest, ServerStatus
from .server import ServerLifecycleManager
from .state import RuntimeState
from .tools import ToolExecutor, get_all_tools

logger = logging.getLogger("uvicorn.error")


def get_state(request: Request) -> RuntimeState:
    return request.app.state.runtime


def get_config(request: Request) -> RuntimeConfig:
    return request.app.state.config


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_server(request: Request) -> ServerLifecycleManager:
    return request.app.state.server


def get_downloads(request: Request) -> DownloadManager:
    return request.app.state.downloads


def get_chat(request: Request) -> ChatOrchestrator:
    return request.app.state.chat


def get_catalog(request: Request) -> ModelCatalog:
    return request.app.state.catalog


def get_background_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.background_tasks


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def http_error(exc: EigenError) -> HTTPException:
    if isinstance(exc, UnknownModel):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (PolicyError, DownloadCancelled)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransportError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, ResourceError):
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _track(tasks: Dict[str, asyncio.Task], key: str, task: asyncio.Task) -> None:
    tasks[key] = task

    def _done(finished: asyncio.Task) -> None:
        if tasks.get(key) is finished:
            tasks.pop(key, None)
        if finished.cancelled():
            return
        exc = finished.exception()
        if exc is not None:
            logger.warning("Background task %s failed: %s", key, exc)

    task.add_done_callback(_done)


router = APIRouter()


@router.get("/api/status")
async def status(state: RuntimeState = Depends(get_state)):
    return ServerStatus(
        ready=state.ready,
        current_model_id=await state.current_model_id(),
        downloads=await state.download_progress(),
    ).model_dump()


@router.get("/api/settings")
async def get_settings_route(state: RuntimeState = Depends(get_state)):
    settings = await state.get_settings()
    return settings.model_dump()


@router.put("/api/settings")
async def save_settings_route(
    payload: Dict[str, Any] = Body(default={}),
    state: RuntimeState = Depends(get_state),
    config: RuntimeConfig = Depends(get_config),
):
    try:
        new_settings = AppSettings(**payload)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid settings payload")
    save_settings(new_settings, config.resolved_settings_path())
    await state.replace_settings(new_settings)
    return {"ok": True, "settings": new_settings.model_dump()}


@router.post("/api/settings/reset")
async def reset_settings_route(
    state: RuntimeState = Depends(get_state),
    config: RuntimeConfig = Depends(get_config),
):
    settings = default_settings()
    save_settings(settings, config.resolved_settings_path())
    await state.replace_settings(settings)
    return {"ok": True, "settings": settings.model_dump()}


@router.get("/api/tools")
async def list_tools(state: RuntimeState = Depends(get_state)):
    enabled = set((await state.get_settings()).tools.enabled_tools)
    return {"tools": [{**tool.to_dict(), "enabled": tool.id in enabled} for tool in get_all_tools()]}


@router.get("/api/models")
async def list_models_route(
    state: RuntimeState = Depends(get_state),
    catalog: ModelCatalog = Depends(get_catalog),
):
    models = list_models(catalog, state.models_dir, await state.current_model_id(), await state.download_progress())
    return {"models": [m.model_dump() for m in models]}


@router.get("/api/models/current")
async def current_model(state: RuntimeState = Depends(get_state)):
    selection = await state.get_selection()
    return {**selection.to_dict(), "ready": state.ready}


@router.post("/api/models/{model_id}/switch")
async def switch_model_route(
    model_id: str,
    server: ServerLifecycleManager = Depends(get_server),
    catalog: ModelCatalog = Depends(get_catalog),
):
    try:
        await server.switch_model(model_id, catalog)
    except EigenError as exc:
        raise http_error(exc)
    return {"ok": True, "model_id": model_id}


@router.post("/api/models/{model_id}/download")
async def download_model_route(
    model_id: str,
    state: RuntimeState = Depends(get_state),
    downloads: DownloadManager = Depends(get_downloads),
    catalog: ModelCatalog = Depends(get_catalog),
    tasks: Dict[str, asyncio.Task] = Depends(get_background_tasks),
):
    entry = catalog.find(model_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Model {model_id} not found in catalog")
    if is_model_downloaded(state.models_dir, entry):
        raise HTTPException(status_code=409, detail="Model is already downloaded")
    if await state.is_downloading(model_id):
        raise HTTPException(status_code=409, detail="Model is already being downloaded")
    task = asyncio.create_task(downloads.download_model(model_id, catalog))
    _track(tasks, f"download:{model_id}", task)
    return {"ok": True, "model_id": model_id}


@router.post("/api/models/{model_id}/download/cancel")
async def cancel_download_route(model_id: str, downloads: DownloadManager = Depends(get_downloads)):
    return {"cancelled": await downloads.cancel(model_id)}


@router.delete("/api/models/{model_id}")
async def delete_model_route(model_id: str, downloads: DownloadManager = Depends(get_downloads)):
    try:
        await downloads.delete_model(model_id)
    except EigenError as exc:
        raise http_error(exc)
    return {"ok": True}


@router.get("/api/chats")
async def list_chats(chat: ChatOrchestrator = Depends(get_chat)):
    return {"chats": await chat.list_chats()}


@router.post("/api/chats")
async def new_chat(chat: ChatOrchestrator = Depends(get_chat)):
    return {"chat_id": await chat.new_chat()}


@router.get("/api/chats/{chat_id}/messages")
async def chat_messages(chat_id: str, db: Database = Depends(get_db), chat: ChatOrchestrator = Depends(get_chat)):
    if not await db.get_conversation(chat_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    return {"messages": await chat.get_chat_messages(chat_id)}


@router.patch("/api/chats/{chat_id}")
async def rename_chat(chat_id: str, payload: RenameChatRequest, chat: ChatOrchestrator = Depends(get_chat)):
    title = payload.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required.")
    await chat.rename_chat(chat_id, title)
    return {"ok": True}


@router.delete("/api/chats/{chat_id}")
async def delete_chat(chat_id: str, chat: ChatOrchestrator = Depends(get_chat)):
    await chat.delete_chat(chat_id)
    return {"ok": True}


@router.post("/api/chats/{chat_id}/messages")
async def send_message(
    chat_id: str,
    payload: ChatTurnRequest,
    db: Database = Depends(get_db),
    chat: ChatOrchestrator = Depends(get_chat),
):
    if not payload.prompt.strip() and not payload.images:
        raise HTTPException(status_code=400, detail="Prompt is required.")
    if not await db.get_conversation(chat_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    try:
        answer = await chat.run_turn(chat_id, payload.prompt, payload.images)
    except EigenError as exc:
        raise http_error(exc)
    return answer.to_dict()


@router.post("/api/chats/{chat_id}/title")
async def generate_title(chat_id: str, chat: ChatOrchestrator = Depends(get_chat)):
    return {"title": await chat.generate_chat_title(chat_id)}


@router.post("/api/chats/{chat_id}/cancel")
async def cancel_chat(chat_id: str, chat: ChatOrchestrator = Depends(get_chat)):
    return {"cancelled": await chat.cancel_generation(chat_id)}


@router.post("/api/generation/cancel")
async def cancel_generation(
    payload: Optional[CancelGenerationRequest] = None,
    chat: ChatOrchestrator = Depends(get_chat),
):
    return {"cancelled": await chat.cancel_generation(payload.chat_id if payload else None)}


@router.get("/events")
async def stream_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    config: RuntimeConfig,
    *,
    settings: Optional[AppSettings] = None,
    db: Optional[Database] = None,
    llm: Optional[LlamaServerClient] = None,
    tools: Optional[ToolExecutor] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Path(app.state.config.data_dir).mkdir(parents=True, exist_ok=True)
        await app.state.db.init()
        bundled = Path(config.bundled_catalog_path) if config.bundled_catalog_path else None
        app.state.catalog = load_or_create_catalog(app.state.runtime.models_dir, bundled)
        if config.models_watch_interval_s > 0:
            watcher = asyncio.create_task(app.state.downloads.watch(config.models_watch_interval_s))
            _track(app.state.background_tasks, "models-watcher", watcher)
        if config.autostart_model:
            task = asyncio.create_task(app.state.server.start_default_model(app.state.catalog))
            _track(app.state.background_tasks, "startup", task)
        try:
            yield
        finally:
            await app.state.runtime.cancel_generation()
            for task in list(app.state.background_tasks.values()):
                task.cancel()
            for downloading in await app.state.runtime.active_download_ids():
                await app.state.runtime.cancel_download(downloading)
            await app.state.server.close()
            await app.state.downloads.close()
            await app.state.llm.close()
            await app.state.tools.close()

    if settings is None:
        settings = load_settings(config.resolved_settings_path())
    runtime = RuntimeState(config.server_url, config.models_dir, settings)
    bus = EventBus()

    app = FastAPI(title="Eigen Agent", lifespan=lifespan)
    app.state.config = config
    app.state.runtime = runtime
    app.state.bus = bus
    app.state.db = db or Database(str(config.db_path))
    app.state.llm = llm or LlamaServerClient(config.server_url)
    app.state.tools = tools or ToolExecutor()
    app.state.server = ServerLifecycleManager(
        runtime,
        bus,
        binary=config.server_binary,
        host=config.server_host,
        port=config.server_port,
        readiness_timeout_s=config.readiness_timeout_s,
    )
    app.state.downloads = DownloadManager(runtime, bus)
    app.state.chat = ChatOrchestrator(runtime, bus, app.state.db, app.state.llm, app.state.tools)
    app.state.catalog = ModelCatalog()
    app.state.background_tasks = {}
    app.include_router(router)
    return app


def main() -> None:
    import uvicorn

    config = load_runtime_config()
    try:
        uvicorn.run(create_app(config), host=config.host, port=config.port)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
