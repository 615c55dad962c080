"""Chat completion provider backed by OpenAI."""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from config import settings

logger = logging.getLogger(__name__)


class CompletionUnavailable(Exception):
    """Raised when no reply could be generated."""


def estimate_tokens(text: str) -> int:
    """Rough token count (about four characters per token)."""
    if not text:
        return 0
    return max(1, int(math.ceil(len(text) / 4)))


def get_openai_client(api_key: str) -> Optional[AsyncOpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return AsyncOpenAI(api_key=api_key, timeout=settings.COMPLETION_TIMEOUT_SECONDS)


class CompletionProvider:
    """Turns an ordered message list into one assistant reply."""

    async def complete(self, messages: List[Dict[str, str]], max_tokens: int) -> str:
        raise NotImplementedError


class OpenAICompletionProvider(CompletionProvider):
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_MODEL

    async def complete(self, messages: List[Dict[str, str]], max_tokens: int) -> str:
        client = get_openai_client(self.api_key)
        if client is None:
            raise CompletionUnavailable("OpenAI API key missing or unavailable")

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
            )
        except OpenAIError as exc:
            logger.error("OpenAI completion failed: %s", exc)
            raise CompletionUnavailable(f"openai_error: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise CompletionUnavailable("OpenAI returned an empty completion")
        return content.strip()


def get_completion_provider() -> CompletionProvider:
    """FastAPI dependency returning the configured completion provider."""
    return OpenAICompletionProvider()
