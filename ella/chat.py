"""Submission side of a chat turn: placeholder creation and the entitlement gate."""

import logging
from typing import Any, Dict, List

from .auth import Identity
from .db import Database
from .errors import ConflictError
from .jobs import JobQueue
from .prompts import UPGRADE_NOTICE
from .schemas import GENERATE_AI_RESPONSE_EVENT, ChatRequest, GenerateResponseEvent
from .tools import identify_tool


logger = logging.getLogger("uvicorn.error")


def is_admitted(tool: str, has_pro_plan: bool) -> bool:
    return tool == "text" or has_pro_plan


def ensure_pending_placeholder(message: Dict[str, Any], conversation_id: str) -> None:
    """Only a pending assistant message of the named conversation can receive a response."""
    context = {"message_id": message["id"], "conversation_id": conversation_id}
    if message["conversation_id"] != conversation_id:
        raise ConflictError("Message does not belong to this conversation", context)
    if message["sender"] != "assistant":
        raise ConflictError("Only assistant messages can receive a response", context)
    if message["status"] != "pending":
        raise ConflictError(f"Message is already {message['status']}", context)


async def submit_chat(db: Database, queue: JobQueue, identity: Identity, request: ChatRequest) -> List[str]:
    """Gate the request and enqueue the generation job.

    A denied request gets its placeholder written as failed right here, since no
    job will ever run for it. Returns the enqueued job ids (empty when denied).
    """
    placeholder = await db.get_owned_message(request.ai_message_id, identity.user_id)
    ensure_pending_placeholder(placeholder, request.conversation_id)
    if not is_admitted(request.tool, identity.has_pro_plan):
        logger.info("Denied tool %s for user %s without pro plan", request.tool, identity.user_id)
        await db.update_message(
            request.ai_message_id,
            status="failed",
            text=UPGRADE_NOTICE,
            type="text",
        )
        return []
    event = GenerateResponseEvent(
        message=request.message,
        conversation_id=request.conversation_id,
        clerk_id=identity.user_id,
        tool=request.tool,
        ai_message_id=request.ai_message_id,
        has_pro_plan=identity.has_pro_plan,
    )
    return await queue.send(GENERATE_AI_RESPONSE_EVENT, event.model_dump(by_alias=True))


async def start_turn(
    db: Database,
    queue: JobQueue,
    identity: Identity,
    conversation_id: str,
    raw: str,
) -> Dict[str, Any]:
    await db.get_conversation(conversation_id, identity.user_id)
    directive = identify_tool(raw.strip())
    user_message = await db.create_message(
        identity.user_id,
        conversation_id,
        sender="user",
        type="text",
        status="completed",
        text=raw.strip(),
    )
    # The placeholder exists before any provider is contacted.
    placeholder = await db.create_message(
        identity.user_id,
        conversation_id,
        sender="assistant",
        type=directive.tool,
        status="pending",
        text="",
    )
    request = ChatRequest(
        message=directive.message,
        conversation_id=conversation_id,
        tool=directive.tool,
        ai_message_id=placeholder["id"],
    )
    job_ids = await submit_chat(db, queue, identity, request)
    return {
        "tool": directive.tool,
        "message": directive.message,
        "user_message": user_message,
        "ai_message_id": placeholder["id"],
        "job_ids": job_ids,
    }
