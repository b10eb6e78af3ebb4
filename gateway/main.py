import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .active_model import ActiveModelRegistry, ModelNotFoundError, ModelUnavailableError, NoActiveModelError
from .anthropic_backend import AnthropicBackend
from .attachments import AttachmentStore
from .catalog import ModelCatalog
from .catalog_sync import CatalogSynchronizer
from .config import MASK, SECRET_FIELDS, AppSettings, CONFIG_PATH, load_settings, save_settings
from .db import Database
from .gemini_backend import GeminiBackend
from .openai_backend import OpenAIBackend
from .orchestrator import ConversationNotFound, ResponseOrchestrator
from .provider_router import ProviderRouter
from .providers import ProviderAdapter, ProviderAPIError
from .retry import RetryPolicy
from .schemas import (
    CreateConversationRequest,
    CreateEventRequest,
    ModelConfig,
    SendMessageRequest,
    SetActiveModelRequest,
)
from .tavily import TavilyClient
from .tools import ToolExecutor

logger = logging.getLogger("uvicorn.error")

router = APIRouter()


def build_adapters(
    settings: AppSettings,
    attachments: AttachmentStore,
    tools: ToolExecutor,
) -> Dict[str, ProviderAdapter]:
    def retry_policy() -> RetryPolicy:
        return RetryPolicy(
            max_attempts=settings.list_models_max_attempts,
            delay_s=settings.list_models_retry_delay_s,
            retry_on=(httpx.HTTPError, ProviderAPIError, ValueError),
        )

    models = settings.provider_models
    common: Dict[str, Any] = {"attachments": attachments, "request_timeout_s": settings.request_timeout_s}
    return {
        "gemini": GeminiBackend(
            settings.gemini_api_key,
            settings.gemini_base_url,
            default_model=models.gemini_default_model,
            title_model=models.gemini_title_model,
            retry_policy=retry_policy(),
            **common,
        ),
        "openai": OpenAIBackend(
            settings.openai_api_key,
            settings.openai_base_url,
            default_model=models.openai_default_model,
            title_model=models.openai_title_model,
            retry_policy=retry_policy(),
            tools=tools,
            **common,
        ),
        "anthropic": AnthropicBackend(
            settings.anthropic_api_key,
            settings.anthropic_base_url,
            default_model=models.anthropic_default_model,
            title_model=models.anthropic_title_model,
            retry_policy=retry_policy(),
            api_version=settings.anthropic_version,
            **common,
        ),
    }


RESTART_FIELDS = ("database_path", "upload_dir", "host", "port", "log_level")


def apply_live_settings(app: FastAPI, settings: AppSettings) -> None:
    """Push changed settings into the running adapters, search client and orchestrator."""
    app.state.settings = settings
    models = settings.provider_models
    for name, adapter in app.state.adapters.items():
        if not isinstance(adapter, ProviderAdapter):
            continue
        adapter.api_key = getattr(settings, f"{name}_api_key", None)
        adapter.base_url = str(getattr(settings, f"{name}_base_url", adapter.base_url)).rstrip("/")
        adapter.default_model = getattr(models, f"{name}_default_model", adapter.default_model)
        adapter.title_model = getattr(models, f"{name}_title_model", adapter.title_model)
        adapter.client.timeout = httpx.Timeout(settings.request_timeout_s)
        adapter.retry_policy.max_attempts = settings.list_models_max_attempts
        adapter.retry_policy.delay_s = settings.list_models_retry_delay_s
        if isinstance(adapter, AnthropicBackend):
            adapter.api_version = settings.anthropic_version
    app.state.tavily_client.api_key = settings.tavily_api_key
    app.state.tavily_client.max_results = settings.search_max_results
    app.state.registry.primary_provider = settings.primary_provider
    app.state.router.default_provider = settings.fallback_provider
    app.state.synchronizer.grace_period = timedelta(hours=settings.catalog_grace_period_hours)
    app.state.orchestrator.default_system_prompt = settings.default_system_prompt
    app.state.orchestrator.stream_timeout_s = settings.stream_timeout_s


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_catalog(request: Request) -> ModelCatalog:
    return request.app.state.catalog


def get_registry(request: Request) -> ActiveModelRegistry:
    return request.app.state.registry


def get_synchronizer(request: Request) -> CatalogSynchronizer:
    return request.app.state.synchronizer


def get_orchestrator(request: Request) -> ResponseOrchestrator:
    return request.app.state.orchestrator


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def _active_payload(entry, config: Dict[str, Any]) -> dict:
    return {"model": entry.to_dict(), "config": config}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict(), "providers": settings.configured_providers()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    body: Dict[str, Any] = Body(default={}),
    settings: AppSettings = Depends(get_settings),
):
    # Masked secrets echoed back by a client keep their stored value.
    updates = {k: v for k, v in body.items() if not (k in SECRET_FIELDS and v == MASK)}
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **updates})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path=request.app.state.config_path)
    apply_live_settings(request.app, new_settings)
    restart_required = [key for key in RESTART_FIELDS if getattr(new_settings, key) != getattr(settings, key)]
    logger.info("Settings updated: %s", ", ".join(sorted(updates)) or "no changes")
    if restart_required:
        logger.warning("Settings %s take effect after a restart", ", ".join(restart_required))
    return {
        "settings": new_settings.to_safe_dict(),
        "providers": new_settings.configured_providers(),
        "restartRequired": restart_required,
    }


@router.get("/api/system-prompt")
async def get_system_prompt(db: Database = Depends(get_db), settings: AppSettings = Depends(get_settings)):
    custom = await db.get_system_prompt()
    return {"systemPrompt": custom or settings.default_system_prompt, "isDefault": custom is None}


@router.put("/api/system-prompt")
async def set_system_prompt(payload: Dict[str, Any] = Body(default={}), db: Database = Depends(get_db)):
    prompt = payload.get("systemPrompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise HTTPException(status_code=400, detail="systemPrompt must be a non-empty string")
    updated_at = await db.set_system_prompt(prompt.strip())
    return {"systemPrompt": prompt.strip(), "updated_at": updated_at}


@router.delete("/api/system-prompt")
async def reset_system_prompt(db: Database = Depends(get_db), settings: AppSettings = Depends(get_settings)):
    await db.set_system_prompt(None)
    return {"systemPrompt": settings.default_system_prompt, "isDefault": True}


@router.get("/api/models")
async def list_models(available_only: bool = False, catalog: ModelCatalog = Depends(get_catalog)):
    entries = await catalog.list_all(available_only=available_only)
    return {"models": [entry.to_dict() for entry in entries]}


@router.post("/api/models/sync")
async def sync_models(synchronizer: CatalogSynchronizer = Depends(get_synchronizer)):
    reports = await synchronizer.synchronize_all()
    return {"reports": [report.to_dict() for report in reports]}


@router.get("/api/models/active")
async def get_active_model(registry: ActiveModelRegistry = Depends(get_registry)):
    try:
        entry, config = await registry.get_active_model()
    except NoActiveModelError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _active_payload(entry, config)


@router.put("/api/models/active")
async def set_active_model(payload: SetActiveModelRequest, registry: ActiveModelRegistry = Depends(get_registry)):
    config = payload.config.to_wire() if payload.config else None
    try:
        entry, effective = await registry.set_active_model(payload.model_id, config)
    except ModelNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ModelUnavailableError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _active_payload(entry, effective)


@router.patch("/api/models/active/config")
async def update_active_model_config(payload: ModelConfig, registry: ActiveModelRegistry = Depends(get_registry)):
    try:
        entry, config = await registry.update_active_model_config(payload.to_wire())
    except NoActiveModelError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _active_payload(entry, config)


@router.get("/api/conversations")
async def list_conversations(folder_id: Optional[str] = None, db: Database = Depends(get_db)):
    return {"conversations": await db.list_conversations(folder_id=folder_id)}


@router.post("/api/conversations")
async def create_conversation(payload: CreateConversationRequest, db: Database = Depends(get_db)):
    if payload.folder_id and not await db.get_folder(payload.folder_id):
        raise HTTPException(status_code=404, detail="Folder not found")
    convo = await db.create_conversation(
        title=payload.title,
        folder_id=payload.folder_id,
        is_persona=payload.is_persona,
        system_prompt=payload.system_prompt,
    )
    return {"conversation": convo}


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, db: Database = Depends(get_db)):
    convo = await db.find_one(conversation_id)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    convo["messages"] = await db.list_messages(conversation_id)
    return {"conversation": convo}


@router.patch("/api/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    payload: Dict[str, Any] = Body(default={}),
    db: Database = Depends(get_db),
):
    field_map = {"title": "title", "folderId": "folder_id", "isPersona": "is_persona", "systemPrompt": "system_prompt"}
    changes = {field_map[key]: value for key, value in payload.items() if key in field_map}
    if changes.get("folder_id") and not await db.get_folder(changes["folder_id"]):
        raise HTTPException(status_code=404, detail="Folder not found")
    convo = await db.update_conversation(conversation_id, **changes)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation": convo}


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, db: Database = Depends(get_db)):
    if not await db.get_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    await db.delete_conversation(conversation_id)
    return {"ok": True}


@router.get("/api/conversations/{conversation_id}/messages")
async def get_conversation_messages(conversation_id: str, limit: int = 500, db: Database = Depends(get_db)):
    if not await db.get_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"messages": await db.list_messages(conversation_id, limit=limit)}


@router.post("/api/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    payload: SendMessageRequest,
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator),
):
    if not payload.content.strip() and not payload.image_url and not payload.file_url:
        raise HTTPException(status_code=400, detail="Message content is empty")
    request_config = payload.model_config_override.to_wire() if payload.model_config_override else None
    try:
        messages = await orchestrator.send_message(
            conversation_id,
            payload.content,
            image_url=payload.image_url,
            file_url=payload.file_url,
            use_web_search=payload.use_web_search,
            request_config=request_config,
        )
    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except NoActiveModelError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"messages": messages}


@router.get("/api/conversations/{conversation_id}/stream")
async def stream_message(
    conversation_id: str,
    content: str,
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator),
):
    if not content.strip():
        raise HTTPException(status_code=400, detail="Message content is empty")
    try:
        channel = await orchestrator.open_stream(conversation_id, content)
    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except LookupError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    async def event_generator():
        events = channel.events()
        try:
            async for event in events:
                yield sse_format(event.to_dict())
        except asyncio.CancelledError:
            pass
        finally:
            await events.aclose()
            await channel.close()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/api/folders")
async def list_folders(db: Database = Depends(get_db)):
    return {"folders": await db.list_folders()}


@router.post("/api/folders")
async def create_folder(payload: Dict[str, Any] = Body(default={}), db: Database = Depends(get_db)):
    name = (payload.get("name") or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Folder name is required")
    return {"folder": await db.create_folder(name, payload.get("systemPrompt"))}


@router.patch("/api/folders/{folder_id}")
async def update_folder(folder_id: str, payload: Dict[str, Any] = Body(default={}), db: Database = Depends(get_db)):
    folder = await db.update_folder(folder_id, name=payload.get("name"), system_prompt=payload.get("systemPrompt"))
    if not folder:
        raise HTTPException(status_code=404, detail="Folder not found")
    return {"folder": folder}


@router.delete("/api/folders/{folder_id}")
async def delete_folder(folder_id: str, db: Database = Depends(get_db)):
    if not await db.get_folder(folder_id):
        raise HTTPException(status_code=404, detail="Folder not found")
    await db.delete_folder(folder_id)
    return {"ok": True}


@router.get("/api/agents/main")
async def get_main_agent(db: Database = Depends(get_db)):
    return {"conversationId": await db.get_main_agent_conversation_id()}


@router.put("/api/agents/main")
async def set_main_agent(payload: Dict[str, Any] = Body(default={}), db: Database = Depends(get_db)):
    conversation_id = payload.get("conversationId")
    if not conversation_id or not await db.get_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"agent": await db.set_main_agent(conversation_id, name=payload.get("name") or "main")}


@router.get("/api/calendar/events")
async def list_events(
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    conversationId: Optional[str] = None,
    db: Database = Depends(get_db),
):
    events = await db.find_events_by_criteria(start_date=startDate, end_date=endDate, conversation_id=conversationId)
    return {"events": events}


@router.post("/api/calendar/events")
async def create_event(payload: CreateEventRequest, db: Database = Depends(get_db)):
    if payload.end_time < payload.start_time:
        raise HTTPException(status_code=400, detail="endTime is before startTime")
    event = await db.create_event(
        title=payload.title,
        start_time=payload.start_time,
        end_time=payload.end_time,
        description=payload.description,
        conversation_id=payload.conversation_id,
    )
    return {"event": event}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    catalog: Optional[ModelCatalog] = None,
    adapters: Optional[Dict[str, ProviderAdapter]] = None,
    tavily_client: Optional[TavilyClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.catalog.init()
        seeded = await app.state.catalog.seed_defaults()
        if seeded:
            logger.info("Seeded the model catalog with %s default models", seeded)
        Path(app.state.settings.upload_dir).mkdir(parents=True, exist_ok=True)
        if app.state.settings.sync_models_on_startup:
            await app.state.synchronizer.synchronize_all()
        try:
            yield
        finally:
            await app.state.orchestrator.drain()
            for adapter in app.state.adapters.values():
                await adapter.close()
            await app.state.tavily_client.close()

    app = FastAPI(title="LLM Chat Gateway", lifespan=lifespan)
    app.state.settings = settings
    app.state.config_path = config_path or CONFIG_PATH
    app.state.db = db or Database(settings.database_path)
    app.state.catalog = catalog or ModelCatalog(settings.database_path)
    app.state.attachments = AttachmentStore(settings.upload_dir)
    app.state.tools = ToolExecutor(app.state.db)
    app.state.adapters = adapters or build_adapters(settings, app.state.attachments, app.state.tools)
    app.state.tavily_client = tavily_client or TavilyClient(
        settings.tavily_api_key, max_results=settings.search_max_results
    )
    app.state.registry = ActiveModelRegistry(app.state.catalog, primary_provider=settings.primary_provider)
    app.state.router = ProviderRouter(
        {name: (lambda adapter=adapter: adapter) for name, adapter in app.state.adapters.items()},
        app.state.registry,
        default_provider=settings.fallback_provider,
    )
    app.state.synchronizer = CatalogSynchronizer(
        app.state.catalog,
        app.state.adapters,
        grace_period_hours=settings.catalog_grace_period_hours,
    )
    app.state.orchestrator = ResponseOrchestrator(
        app.state.db,
        app.state.registry,
        app.state.router,
        search_client=app.state.tavily_client,
        default_system_prompt=settings.default_system_prompt,
        stream_timeout_s=settings.stream_timeout_s,
    )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("GATEWAY_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "gateway.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
            log_level=settings.log_level,
        )
    except KeyboardInterrupt:
        pass
