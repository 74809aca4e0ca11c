import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import StreamingResponse
from fastapi.staticfiles import StaticFiles

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .controller import AgentNotFoundError, ChatController
from .db import Database
from .events import TurnStream, sse_format
from .images import ImageCascade, ImageCascadeExhaustedError, ImageOptions, MediaStore
from .llm import ResponsesClient
from .prompting import validate_agent_profile
from .schemas import AgentUpsert, ChatRequest, ImageGenerationRequest, UserIdentity
from .telemetry import log_ai_operation
from .ticketing import TicketingClient
from .tool_handlers import ToolDeps, default_registry
from .tools import ToolRegistry, ToolRouter


logger = logging.getLogger("uvicorn.error")

router = APIRouter()


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_llm_client(request: Request) -> ResponsesClient:
    return request.app.state.llm_client


def get_ticketing_client(request: Request) -> TicketingClient:
    return request.app.state.ticketing_client


def get_media_store(request: Request) -> MediaStore:
    return request.app.state.media


def get_controller(request: Request) -> ChatController:
    return request.app.state.controller


def get_turn_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.turn_tasks


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def get_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
    x_user_department: Optional[str] = Header(default=None),
) -> UserIdentity:
    # Identity is injected by the hub-fronted proxy; requests without it never reached the hub.
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return UserIdentity(
        id=x_user_id.strip(),
        email=x_user_email,
        name=x_user_name,
        department=x_user_department,
    )


def build_controller(settings: AppSettings, db: Database, llm_client: Any, registry: ToolRegistry, ticketing_client: Any, media: MediaStore) -> ChatController:
    deps = ToolDeps(db=db, ticketing=ticketing_client, hr_email_to=settings.hr_email_to)
    tool_router = ToolRouter(registry, deps=deps, timeout_s=settings.tool_timeout_s)
    return ChatController(settings, db, llm_client, tool_router, media=media)


@router.get("/api/health")
async def health(settings: AppSettings = Depends(get_settings)):
    return {
        "ok": True,
        "models": {
            "small": settings.model_small,
            "medium": settings.model_medium,
            "large": settings.model_large,
            "fast_path": settings.fast_path_model,
            "images": settings.image_models,
        },
    }


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings), user: UserIdentity = Depends(get_user)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    llm_client: ResponsesClient = Depends(get_llm_client),
    ticketing_client: TicketingClient = Depends(get_ticketing_client),
    config_path: Path = Depends(get_config_path),
    user: UserIdentity = Depends(get_user),
):
    body = await request.json()
    current = settings.model_dump()
    for key, value in list(body.items()):
        # The masked placeholder from GET /settings means "unchanged".
        if key in ("openai_api_key", "ticketing_token") and value == "********":
            body.pop(key)
    new_settings = AppSettings(**{**current, **body})
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    llm_client.base_url = new_settings.openai_base_url.rstrip("/")
    llm_client.api_key = new_settings.openai_api_key
    ticketing_client.endpoint_url = new_settings.ticketing_url
    ticketing_client.auth_header = new_settings.ticketing_auth_header
    ticketing_client.auth_token = new_settings.ticketing_token
    media = MediaStore(Path(new_settings.media_dir).resolve(), new_settings.media_base_url)
    request.app.state.media = media
    request.app.state.controller = build_controller(
        new_settings, db, llm_client, request.app.state.registry, ticketing_client, media
    )
    logging.getLogger("uvicorn.error").setLevel(new_settings.log_level.upper())
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/agents")
async def list_agents(db: Database = Depends(get_db), user: UserIdentity = Depends(get_user)):
    agents = await db.list_agents()
    return {"agents": [agent.model_dump() for agent in agents]}


@router.get("/api/agents/{agent_id}")
async def get_agent(agent_id: str, db: Database = Depends(get_db), user: UserIdentity = Depends(get_user)):
    agent = await db.get_agent(agent_id)
    if not agent or not agent.is_active:
        raise HTTPException(status_code=404, detail="Agent not found")
    return {"agent": agent.model_dump()}


@router.post("/api/agents")
async def upsert_agent(
    payload: AgentUpsert,
    db: Database = Depends(get_db),
    user: UserIdentity = Depends(get_user),
):
    errors = validate_agent_profile(payload)
    if errors:
        raise HTTPException(status_code=400, detail={"errors": errors})
    agent = await db.upsert_agent(payload.model_dump())
    return {"agent": agent.model_dump()}


@router.get("/api/chats/{chat_id}/messages")
async def get_chat_messages(chat_id: str, db: Database = Depends(get_db), user: UserIdentity = Depends(get_user)):
    chat = await db.get_chat(chat_id)
    if not chat or chat.get("user_id") != user.id:
        raise HTTPException(status_code=404, detail="Chat not found")
    messages = await db.list_messages(chat_id)
    return {"chat": chat, "messages": messages}


@router.post("/api/chat")
async def chat(
    payload: ChatRequest,
    user: UserIdentity = Depends(get_user),
    controller: ChatController = Depends(get_controller),
    turn_tasks: Dict[str, asyncio.Task] = Depends(get_turn_tasks),
):
    try:
        turn = await controller.prepare(payload, user)
    except AgentNotFoundError:
        raise HTTPException(status_code=404, detail="Agent not found")
    except PermissionError:
        raise HTTPException(status_code=403, detail="Chat belongs to another user")

    stream = TurnStream()
    turn_id = str(uuid.uuid4())

    async def run_and_cleanup() -> None:
        try:
            await controller.run(turn, stream)
        except Exception as exc:
            logger.exception("Turn %s in chat %s crashed", turn_id, turn.chat_id)
            stream.fail(f"Failed to generate response: {exc}")
        finally:
            turn_tasks.pop(turn_id, None)

    task = asyncio.create_task(run_and_cleanup())
    turn_tasks[turn_id] = task

    async def event_generator():
        try:
            async for ev in stream.events():
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            if not stream.closed:
                # Caller went away; the turn finishes in the background without delivery.
                stream.detach()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Chat-Id": turn.chat_id},
    )


@router.post("/api/images/generate")
async def generate_image(
    payload: ImageGenerationRequest,
    user: UserIdentity = Depends(get_user),
    settings: AppSettings = Depends(get_settings),
    llm_client: ResponsesClient = Depends(get_llm_client),
    media: MediaStore = Depends(get_media_store),
):
    prompt = payload.prompt.strip()
    if len(prompt) > settings.image_prompt_max_chars:
        raise HTTPException(
            status_code=400,
            detail=f"Prompt exceeds {settings.image_prompt_max_chars} characters.",
        )
    # Fields the caller left out fall back to the configured image defaults.
    chosen = {**settings.image_defaults.model_dump(), **payload.model_dump(include=payload.model_fields_set)}
    options = ImageOptions(
        size=chosen["size"],
        quality=chosen["quality"],
        output_format=chosen["output_format"],
        background=chosen["background"],
        compression=chosen["compression"],
    )
    try:
        cascade = ImageCascade(llm_client, payload.models or settings.image_models)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    try:
        result = await cascade.generate(prompt, options)
    except ImageCascadeExhaustedError as exc:
        logger.error("Image cascade exhausted for user %s: %s", user.id, exc)
        raise HTTPException(
            status_code=exc.status_code,
            detail={
                "error": exc.public_message,
                "classification": exc.classification,
                "failed_models": [attempt.to_dict() for attempt in exc.failures],
            },
        )
    try:
        image = media.save(result.image)
    except ValueError as exc:
        logger.error("Generated image from %s could not be stored: %s", result.model, exc)
        raise HTTPException(status_code=502, detail="Generated image could not be stored")
    log_ai_operation(
        "image_generated",
        model=result.model,
        user_id=user.id,
        size=image.size,
        format=image.format,
        attempts=len(result.attempted),
        fallback=bool(result.failures),
    )
    return {
        "url": image.url,
        "storage_path": image.storage_path,
        "format": image.format,
        "size": image.size,
        "model": result.model,
        "model_attempts": result.attempted,
        "failed_models": [attempt.to_dict() for attempt in result.failures],
        "revised_prompt": result.revised_prompt,
    }


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[Any] = None,
    ticketing_client: Optional[Any] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            pending = list(app.state.turn_tasks.values())
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await app.state.controller.router.drain()
            await app.state.llm_client.close()
            await app.state.ticketing_client.close()

    logging.getLogger("uvicorn.error").setLevel(settings.log_level.upper())
    app = FastAPI(title="Workchat Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_client = llm_client or ResponsesClient(
        settings.openai_base_url,
        api_key=settings.openai_api_key,
        stream_timeout_s=settings.stream_timeout_s,
        request_timeout_s=settings.request_timeout_s,
    )
    app.state.ticketing_client = ticketing_client or TicketingClient(
        settings.ticketing_url,
        auth_header=settings.ticketing_auth_header,
        auth_token=settings.ticketing_token,
    )
    media_dir = Path(settings.media_dir).resolve()
    media_dir.mkdir(parents=True, exist_ok=True)
    app.state.media = MediaStore(media_dir, settings.media_base_url)
    app.state.registry = default_registry(settings.organisation)
    app.state.controller = build_controller(
        settings, app.state.db, app.state.llm_client, app.state.registry, app.state.ticketing_client, app.state.media
    )
    app.state.turn_tasks = {}
    app.state.config_path = config_path or CONFIG_PATH

    app.mount(settings.media_base_url.rstrip("/") or "/media", StaticFiles(directory=media_dir), name="media")
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("WORKCHAT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "workchat.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
