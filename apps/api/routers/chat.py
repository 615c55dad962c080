"""Chat sessions and quota-gated assistant replies."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user, get_auth_context
from routers.quota import quota_denial_status
from routers.rate_limit import rate_limit
from services.chat import (
    MAX_MESSAGE_CHARS,
    chat_to_dict,
    create_chat,
    get_owned_chat,
    list_chats,
    list_messages,
    message_to_dict,
    process_message,
)
from services.completion import CompletionProvider, CompletionUnavailable, get_completion_provider

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateChatRequest(BaseModel):
    title: Optional[str] = None


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=MAX_MESSAGE_CHARS)
    detailed: bool = False


@router.post("")
async def create_chat_session(
    request: CreateChatRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, auth)
    chat = await create_chat(auth.user_id, db, title=request.title)
    return chat_to_dict(chat)


@router.get("")
async def list_chat_sessions(
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    chats = await list_chats(auth.user_id, db, limit=limit)
    return {"chats": [chat_to_dict(chat) for chat in chats]}


@router.get("/{chat_id}/messages")
async def get_chat_messages(
    chat_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    chat = await get_owned_chat(chat_id, auth.user_id, db)
    messages = await list_messages(chat, db)
    return {"chat": chat_to_dict(chat), "messages": [message_to_dict(item) for item in messages]}


@router.post("/{chat_id}/messages")
async def send_chat_message(
    chat_id: str,
    request: SendMessageRequest,
    _rate_limit: None = Depends(rate_limit("chat_message", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    provider: CompletionProvider = Depends(get_completion_provider),
):
    """Store the user's message and, when quota allows, the assistant reply."""
    try:
        exchange = await process_message(
            auth.user_id,
            chat_id,
            request.content,
            db,
            provider,
            detailed=request.detailed,
        )
    except CompletionUnavailable as exc:
        logger.error("Completion failed for chat %s: %s", chat_id, exc)
        raise HTTPException(status_code=503, detail="Assistant is temporarily unavailable.") from exc

    if not exchange.decision.allowed:
        payload = exchange.decision.to_payload()
        payload["message"] = message_to_dict(exchange.user_message)
        return JSONResponse(status_code=quota_denial_status(exchange.decision.reason), content=payload)

    return {
        "message": message_to_dict(exchange.user_message),
        "reply": message_to_dict(exchange.reply),
        "quota": exchange.decision.to_payload(),
    }
