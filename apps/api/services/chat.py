"""Chat session store and the quota-gated completion pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.chat import SENDER_AI, SENDER_USER, Chat, ChatMessage
from services.completion import CompletionProvider, estimate_tokens
from services.quota import QuotaDecision, enforce_quota
from services.timeutils import isoformat

logger = logging.getLogger(__name__)


MAX_MESSAGE_CHARS = 8000
MAX_TITLE_CHARS = 120


@dataclass
class MessageExchange:
    user_message: ChatMessage
    decision: QuotaDecision
    reply: Optional[ChatMessage] = None


def chat_to_dict(chat: Chat) -> Dict[str, Any]:
    return {
        "id": chat.id,
        "user_id": chat.user_id,
        "title": chat.title,
        "created_at": isoformat(chat.created_at),
        "updated_at": isoformat(chat.updated_at),
    }


def message_to_dict(message: ChatMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "chat_id": message.chat_id,
        "user_id": message.user_id,
        "content": message.content,
        "sender": message.sender,
        "created_at": isoformat(message.created_at),
    }


async def create_chat(user_id: str, db: AsyncSession, title: Optional[str] = None) -> Chat:
    chat = Chat(user_id=user_id, title=(title or "New Chat").strip()[:MAX_TITLE_CHARS] or "New Chat")
    db.add(chat)
    await db.commit()
    await db.refresh(chat)
    return chat


async def list_chats(user_id: str, db: AsyncSession, limit: int = 50) -> List[Chat]:
    result = await db.execute(
        select(Chat)
        .where(Chat.user_id == user_id)
        .order_by(Chat.created_at.desc())
        .limit(max(1, min(int(limit or 50), 200)))
    )
    return list(result.scalars().all())


async def get_owned_chat(chat_id: str, user_id: str, db: AsyncSession) -> Chat:
    result = await db.execute(select(Chat).where(Chat.id == chat_id))
    chat = result.scalar_one_or_none()
    if chat is None or chat.user_id != user_id:
        raise HTTPException(status_code=404, detail="Chat not found.")
    return chat


async def append_message(chat: Chat, content: str, sender: str, db: AsyncSession) -> ChatMessage:
    """Append to the chat log. Messages are never edited afterwards."""
    if sender not in (SENDER_USER, SENDER_AI):
        raise ValueError(f"Unknown sender {sender!r}")
    text = str(content or "").strip()
    if not text:
        raise HTTPException(status_code=422, detail="Message content is required.")

    message = ChatMessage(
        chat_id=chat.id,
        user_id=chat.user_id,
        content=text[:MAX_MESSAGE_CHARS],
        sender=sender,
    )
    db.add(message)
    await db.commit()
    await db.refresh(message)
    return message


async def list_messages(chat: Chat, db: AsyncSession) -> List[ChatMessage]:
    result = await db.execute(
        select(ChatMessage)
        .where(ChatMessage.chat_id == chat.id)
        .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
    )
    return list(result.scalars().all())


async def list_recent_messages(chat: Chat, db: AsyncSession, limit: int) -> List[ChatMessage]:
    result = await db.execute(
        select(ChatMessage)
        .where(ChatMessage.chat_id == chat.id)
        .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        .limit(max(int(limit), 1))
    )
    return list(reversed(result.scalars().all()))


def build_completion_context(history: List[ChatMessage]) -> List[Dict[str, str]]:
    """Assemble provider messages from the persisted log for this request only."""
    messages = [{"role": "system", "content": settings.ASSISTANT_SYSTEM_PROMPT}]
    for item in history:
        role = "assistant" if item.sender == SENDER_AI else "user"
        messages.append({"role": role, "content": item.content})
    return messages


async def process_message(
    user_id: str,
    chat_id: str,
    content: str,
    db: AsyncSession,
    provider: CompletionProvider,
    *,
    detailed: bool = False,
    now: Optional[datetime] = None,
) -> MessageExchange:
    """Persist a user message, gate the completion on quota, persist the reply."""
    chat = await get_owned_chat(chat_id, user_id, db)
    user_message = await append_message(chat, content, SENDER_USER, db)

    history = await list_recent_messages(chat, db, settings.CHAT_CONTEXT_MESSAGES)
    context = build_completion_context(history)
    input_tokens = sum(estimate_tokens(item["content"]) for item in context)
    output_tokens = int(settings.FREE_MAX_OUTPUT_TOKENS if detailed else settings.FREE_BASE_OUTPUT_TOKENS)

    decision = await enforce_quota(
        user_id,
        db,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        now=now,
    )
    if not decision.allowed:
        logger.info(
            "Completion denied for user %s chat %s: %s",
            user_id,
            chat_id,
            decision.reason.value if decision.reason else "unknown",
        )
        return MessageExchange(user_message=user_message, decision=decision)

    reply_text = await provider.complete(context, max_tokens=output_tokens)
    reply = await append_message(chat, reply_text, SENDER_AI, db)
    return MessageExchange(user_message=user_message, decision=decision, reply=reply)
