"""Redis-backed fixed-window rate limiting for payment endpoints."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings
from services.session_token import decode_session_token


_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _caller_identifier(request: Request) -> str:
    """Prefer the authenticated user; fall back to the client address."""
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        try:
            payload = decode_session_token(authorization[7:].strip())
            return f"user:{payload['sub']}"
        except ValueError:
            pass
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit, max(int(reset_at - now), 1)


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with redis_client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            pipe.ttl(key)
            current, _, ttl = await pipe.execute()
    finally:
        await redis_client.aclose()
    return int(current) <= limit, max(int(ttl or window_seconds), 1)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """Return a FastAPI dependency that enforces per-caller request quotas."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"serona:rate:{prefix}:{_caller_identifier(request)}"
        try:
            allowed, retry_after = await _consume_redis_quota(key, limit, window_seconds)
        except (redis.RedisError, OSError):
            allowed, retry_after = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
