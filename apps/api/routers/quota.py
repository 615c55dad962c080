"""Plan limit checks and entitlement status."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import STORE_ERRORS, get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.quota import DenialReason, enforce_quota, get_entitlement_status

router = APIRouter()


class CheckPlanLimitsRequest(BaseModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)


def quota_denial_status(reason: DenialReason) -> int:
    if reason == DenialReason.STORE_UNAVAILABLE:
        return 503
    return 429


@router.post("/check-plan-limits")
async def check_plan_limits(
    request: CheckPlanLimitsRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Admit a completion request and charge it against the caller's quota."""
    decision = await enforce_quota(
        auth.user_id,
        db,
        input_tokens=request.input_tokens,
        output_tokens=request.output_tokens,
    )
    if not decision.allowed:
        return JSONResponse(
            status_code=quota_denial_status(decision.reason),
            content=decision.to_payload(),
        )
    return decision.to_payload()


@router.get("/plan-status")
async def plan_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Current plan, today's free-tier usage and limits."""
    try:
        return await get_entitlement_status(auth.user_id, db)
    except STORE_ERRORS as exc:
        raise HTTPException(status_code=503, detail="Entitlement store unavailable.") from exc
