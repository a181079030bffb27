import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .auth import HeaderAuth, Identity, require_identity
from .chat import start_turn, submit_chat
from .config import AppSettings, load_settings
from .db import Database
from .errors import ConflictError, NotFoundError, OwnershipError, ProviderError, describe_error
from .gemini import GeminiClient
from .generator import ResponseGenerator
from .images import ImageClient
from .jobs import JobQueue, JobStore
from .prompts import build_title_prompt
from .schemas import ChatRequest, CreateMessageRequest, RenameRequest, TitleRequest, TurnRequest
from .steps import StepStore
from .tavily import TavilyClient


logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


def get_gemini(request: Request) -> GeminiClient:
    return request.app.state.gemini


router = APIRouter()


@router.post("/api/chat")
async def chat(
    payload: ChatRequest,
    identity: Identity = Depends(require_identity),
    db: Database = Depends(get_db),
    queue: JobQueue = Depends(get_queue),
):
    await submit_chat(db, queue, identity, payload)
    return {"message": payload.message}


@router.post("/api/generate-title")
async def generate_title(
    payload: TitleRequest,
    identity: Identity = Depends(require_identity),
    settings: AppSettings = Depends(get_settings),
    gemini: GeminiClient = Depends(get_gemini),
):
    if not isinstance(payload.messages, list):
        raise HTTPException(status_code=400, detail="Messages array is required")
    if not settings.google_api_key:
        raise HTTPException(status_code=500, detail="Google AI API key not configured")
    try:
        title = await gemini.generate(
            build_title_prompt(payload.messages),
            temperature=0.7,
            top_k=40,
            top_p=0.95,
            max_output_tokens=50,
        )
    except (ProviderError, httpx.HTTPError) as exc:
        logger.warning("Title generation failed for user %s: %s", identity.user_id, exc)
        raise HTTPException(status_code=500, detail=describe_error(exc))
    title = title.strip()
    if not title:
        raise HTTPException(status_code=500, detail="Failed to generate title")
    return {"title": title}


@router.post("/api/users/me")
async def get_or_create_user(identity: Identity = Depends(require_identity), db: Database = Depends(get_db)):
    user = await db.get_or_create_user(identity.user_id, identity.name, identity.email, identity.image_url)
    return {"user": user}


@router.get("/api/conversations")
async def list_conversations(identity: Identity = Depends(require_identity), db: Database = Depends(get_db)):
    conversations = await db.list_conversations(identity.user_id)
    return {"conversations": conversations}


@router.post("/api/conversations")
async def create_conversation(identity: Identity = Depends(require_identity), db: Database = Depends(get_db)):
    convo = await db.create_conversation(identity.user_id)
    return {"conversation": convo}


@router.get("/api/conversations/search")
async def search_conversations(
    q: str = "",
    identity: Identity = Depends(require_identity),
    db: Database = Depends(get_db),
):
    conversations = await db.search_conversations(identity.user_id, q)
    return {"conversations": conversations}


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    identity: Identity = Depends(require_identity),
    db: Database = Depends(get_db),
):
    convo = await db.get_conversation(conversation_id, identity.user_id)
    return {"conversation": convo}


@router.patch("/api/conversations/{conversation_id}")
async def rename_conversation(
    conversation_id: str,
    payload: RenameRequest,
    identity: Identity = Depends(require_identity),
    db: Database = Depends(get_db),
):
    convo = await db.update_conversation_title(conversation_id, identity.user_id, payload.title)
    return {"success": True, "message": "Title updated successfully", "conversation": convo}


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    identity: Identity = Depends(require_identity),
    db: Database = Depends(get_db),
):
    await db.delete_conversation(conversation_id, identity.user_id)
    return {"success": True, "message": "Conversation deleted successfully"}


@router.get("/api/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    identity: Identity = Depends(require_identity),
    db: Database = Depends(get_db),
):
    messages = await db.list_messages(conversation_id, identity.user_id)
    return {"messages": messages}


@router.post("/api/conversations/{conversation_id}/messages")
async def create_message(
    conversation_id: str,
    payload: CreateMessageRequest,
    identity: Identity = Depends(require_identity),
    db: Database = Depends(get_db),
):
    await db.get_conversation(conversation_id, identity.user_id)
    # Only assistant placeholders start out pending.
    status = payload.status if payload.sender == "assistant" else "completed"
    message = await db.create_message(
        identity.user_id,
        conversation_id,
        sender=payload.sender,
        type=payload.type,
        status=status,
        text=payload.text,
        image_url=payload.image_url,
        resources=payload.resources,
        images=payload.images,
    )
    return {"message": message}


@router.post("/api/conversations/{conversation_id}/turns")
async def send_turn(
    conversation_id: str,
    payload: TurnRequest,
    identity: Identity = Depends(require_identity),
    db: Database = Depends(get_db),
    queue: JobQueue = Depends(get_queue),
):
    if not payload.message.strip():
        raise HTTPException(status_code=400, detail="Please enter a message before sending.")
    return await start_turn(db, queue, identity, conversation_id, payload.message)


@router.get("/api/messages/{message_id}")
async def get_message(
    message_id: str,
    identity: Identity = Depends(require_identity),
    db: Database = Depends(get_db),
):
    message = await db.get_owned_message(message_id, identity.user_id)
    return {"message": message}


@router.get("/api/library/images")
async def list_generated_images(identity: Identity = Depends(require_identity), db: Database = Depends(get_db)):
    images = await db.list_generated_images(identity.user_id)
    return {"images": images}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def ownership_handler(request: Request, exc: OwnershipError) -> JSONResponse:
    return JSONResponse(status_code=403, content={"detail": str(exc)})


async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    gemini: Optional[GeminiClient] = None,
    tavily_client: Optional[TavilyClient] = None,
    image_client: Optional[ImageClient] = None,
    auth: Optional[Any] = None,
    queue: Optional[JobQueue] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.queue.start()
        try:
            yield
        finally:
            await app.state.queue.drain()
            await app.state.queue.close()
            await app.state.gemini.close()
            await app.state.tavily_client.close()
            await app.state.image_client.close()

    app = FastAPI(title="Ella Chat", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.gemini = gemini or GeminiClient(
        settings.google_api_key,
        base_url=settings.gemini_base_url,
        model=settings.gemini_model,
        timeout=settings.provider_timeout_s,
    )
    app.state.tavily_client = tavily_client or TavilyClient(
        settings.tavily_api_key, base_url=settings.tavily_base_url, timeout=settings.provider_timeout_s
    )
    app.state.image_client = image_client or ImageClient(
        settings.nebius_api_key, base_url=settings.image_base_url, model=settings.image_model
    )
    app.state.auth = auth or HeaderAuth.from_settings(settings)
    app.state.queue = queue or JobQueue(
        JobStore(app.state.db.path),
        StepStore(app.state.db.path),
        max_attempts=settings.job_max_attempts,
        retry_backoff_s=settings.job_retry_backoff_s,
    )
    app.state.generator = ResponseGenerator(
        app.state.db,
        app.state.gemini,
        app.state.tavily_client,
        app.state.image_client,
        settings,
    )
    app.state.queue.register(app.state.generator.as_job_function())

    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(OwnershipError, ownership_handler)
    app.add_exception_handler(ConflictError, conflict_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


def serve() -> None:
    """Entry point of the ``ella-server`` script."""
    import uvicorn

    uvicorn.run(app, host=app.state.settings.host, port=app.state.settings.port, log_level="info")


if __name__ == "__main__":
    serve()
