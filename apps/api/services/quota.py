"""Quota enforcement for free-tier daily usage and paid-plan token budgets."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
import logging
import math
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import STORE_ERRORS
from models.daily_usage import DailyUsage
from models.user_plan import (
    PLAN_STATUS_ACTIVE,
    PLAN_STATUS_EXPIRED,
    PLAN_STATUS_INACTIVE,
    UserPlan,
)
from services.plans import plan_to_dict
from services.timeutils import as_utc, isoformat, utcnow

logger = logging.getLogger(__name__)


TIER_PLAN = "plan"
TIER_FREE = "free"
EXTENDED_LIMIT_WARNING = "extended-limit-used"


class DenialReason(str, Enum):
    PLAN_EXPIRED = "PlanExpired"
    INPUT_TOKEN_LIMIT_EXCEEDED = "InputTokenLimitExceeded"
    OUTPUT_TOKEN_LIMIT_EXCEEDED = "OutputTokenLimitExceeded"
    DAILY_RESPONSE_LIMIT_EXCEEDED = "DailyResponseLimitExceeded"
    DAILY_TOKEN_LIMIT_EXCEEDED = "DailyTokenLimitExceeded"
    ABSOLUTE_TOKEN_CEILING_EXCEEDED = "AbsoluteTokenCeilingExceeded"
    STORE_UNAVAILABLE = "StoreUnavailable"


@dataclass
class QuotaDecision:
    """Outcome of one admission check."""

    allowed: bool
    tier: str
    reason: Optional[DenialReason] = None
    remaining_input_tokens: Optional[int] = None
    remaining_output_tokens: Optional[int] = None
    remaining_responses: Optional[int] = None
    warning: Optional[str] = None
    reset_in_minutes: Optional[int] = None
    usage_stats: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        if self.allowed:
            payload: Dict[str, Any] = {"allowed": True, "tier": self.tier}
            for key in ("remaining_input_tokens", "remaining_output_tokens", "remaining_responses", "warning"):
                value = getattr(self, key)
                if value is not None:
                    payload[key] = value
            return payload

        payload = {
            "allowed": False,
            "tier": self.tier,
            "error": self.reason.value if self.reason else DenialReason.STORE_UNAVAILABLE.value,
            "usageStats": self.usage_stats,
        }
        if self.reset_in_minutes is not None:
            payload["resetInMinutes"] = self.reset_in_minutes
        return payload


def _usage_zone() -> tzinfo:
    try:
        return ZoneInfo(settings.USAGE_DAY_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown USAGE_DAY_TIMEZONE %r; falling back to UTC", settings.USAGE_DAY_TIMEZONE)
        return timezone.utc


def usage_day(now: Optional[datetime] = None) -> date:
    """Calendar day the free-tier counters are keyed on."""
    current = as_utc(now) or utcnow()
    return current.astimezone(_usage_zone()).date()


def minutes_until_reset(now: Optional[datetime] = None) -> int:
    """Whole minutes until the next usage-day boundary."""
    zone = _usage_zone()
    current = (as_utc(now) or utcnow()).astimezone(zone)
    next_midnight = datetime.combine(current.date() + timedelta(days=1), time.min, tzinfo=zone)
    seconds = (next_midnight.astimezone(timezone.utc) - current.astimezone(timezone.utc)).total_seconds()
    return max(int(math.ceil(seconds / 60)), 0)


async def get_active_plan(user_id: str, db: AsyncSession) -> Optional[UserPlan]:
    result = await db.execute(
        select(UserPlan)
        .where(UserPlan.user_id == user_id, UserPlan.status == PLAN_STATUS_ACTIVE)
        .order_by(UserPlan.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def _expire_plan(plan: UserPlan, db: AsyncSession, now: datetime) -> None:
    await db.execute(
        update(UserPlan)
        .where(UserPlan.id == plan.id, UserPlan.status == PLAN_STATUS_ACTIVE)
        .values(status=PLAN_STATUS_EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(plan)
    logger.info("Plan %s for user %s expired at %s", plan.id, plan.user_id, isoformat(plan.end_time))


def _plan_is_lapsed(plan: UserPlan, now: datetime) -> bool:
    end_time = as_utc(plan.end_time)
    return end_time is not None and end_time < now


def _plan_usage_stats(plan: UserPlan) -> Dict[str, Any]:
    return {
        "plan_type": plan.plan_type,
        "status": plan.status,
        "remaining_input_tokens": int(plan.remaining_input_tokens or 0),
        "remaining_output_tokens": int(plan.remaining_output_tokens or 0),
        "end_time": isoformat(plan.end_time),
    }


def _plan_denial(plan: UserPlan, input_tokens: int, output_tokens: int) -> Optional[DenialReason]:
    if int(plan.remaining_input_tokens or 0) < input_tokens:
        return DenialReason.INPUT_TOKEN_LIMIT_EXCEEDED
    if int(plan.remaining_output_tokens or 0) < output_tokens:
        return DenialReason.OUTPUT_TOKEN_LIMIT_EXCEEDED
    return None


def _deny_plan(plan: UserPlan, reason: DenialReason) -> QuotaDecision:
    return QuotaDecision(
        allowed=False,
        tier=TIER_PLAN,
        reason=reason,
        usage_stats=_plan_usage_stats(plan),
    )


async def _enforce_plan(
    user_id: str,
    plan: UserPlan,
    db: AsyncSession,
    input_tokens: int,
    output_tokens: int,
    now: datetime,
) -> QuotaDecision:
    if _plan_is_lapsed(plan, now):
        await _expire_plan(plan, db, now)
        return _deny_plan(plan, DenialReason.PLAN_EXPIRED)

    denial = _plan_denial(plan, input_tokens, output_tokens)
    if denial:
        return _deny_plan(plan, denial)

    # Check and decrement in one statement so concurrent requests cannot overdraw.
    result = await db.execute(
        update(UserPlan)
        .where(
            UserPlan.id == plan.id,
            UserPlan.status == PLAN_STATUS_ACTIVE,
            UserPlan.end_time >= now,
            UserPlan.remaining_input_tokens >= input_tokens,
            UserPlan.remaining_output_tokens >= output_tokens,
        )
        .values(
            remaining_input_tokens=UserPlan.remaining_input_tokens - input_tokens,
            remaining_output_tokens=UserPlan.remaining_output_tokens - output_tokens,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(plan)

    if result.rowcount != 1:
        if plan.status == PLAN_STATUS_INACTIVE:
            # Replaced by a newer purchase mid-request.
            return await enforce_quota(user_id, db, input_tokens=input_tokens, output_tokens=output_tokens, now=now)
        if plan.status == PLAN_STATUS_EXPIRED or _plan_is_lapsed(plan, now):
            return _deny_plan(plan, DenialReason.PLAN_EXPIRED)
        return _deny_plan(
            plan,
            _plan_denial(plan, input_tokens, output_tokens) or DenialReason.OUTPUT_TOKEN_LIMIT_EXCEEDED,
        )

    return QuotaDecision(
        allowed=True,
        tier=TIER_PLAN,
        remaining_input_tokens=int(plan.remaining_input_tokens),
        remaining_output_tokens=int(plan.remaining_output_tokens),
        usage_stats=_plan_usage_stats(plan),
    )


async def _load_daily_usage(user_id: str, day: date, db: AsyncSession) -> Optional[DailyUsage]:
    result = await db.execute(
        select(DailyUsage)
        .where(DailyUsage.user_id == user_id, DailyUsage.usage_date == day)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_daily_usage(user_id: str, day: date, db: AsyncSession) -> DailyUsage:
    """Return today's counters, creating a zeroed row on first use."""
    usage = await _load_daily_usage(user_id, day, db)
    if usage is not None:
        return usage

    usage = DailyUsage(
        user_id=user_id,
        usage_date=day,
        responses_count=0,
        output_tokens_used=0,
        input_tokens_used=0,
    )
    db.add(usage)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent request created the row first.
        await db.rollback()
        usage = await _load_daily_usage(user_id, day, db)
        if usage is None:
            raise
    return usage


def _free_usage_stats(usage: Optional[DailyUsage]) -> Dict[str, Any]:
    return {
        "responses_count": int(usage.responses_count or 0) if usage else 0,
        "max_responses": int(settings.FREE_DAILY_RESPONSES),
        "output_tokens_used": int(usage.output_tokens_used or 0) if usage else 0,
        "input_tokens_used": int(usage.input_tokens_used or 0) if usage else 0,
        "base_output_tokens": int(settings.FREE_BASE_OUTPUT_TOKENS),
        "max_output_tokens": int(settings.FREE_MAX_OUTPUT_TOKENS),
    }


def _free_denial(usage: DailyUsage, output_tokens: int) -> Optional[DenialReason]:
    if int(usage.responses_count or 0) >= int(settings.FREE_DAILY_RESPONSES):
        return DenialReason.DAILY_RESPONSE_LIMIT_EXCEEDED
    if output_tokens > int(settings.FREE_MAX_OUTPUT_TOKENS):
        return DenialReason.ABSOLUTE_TOKEN_CEILING_EXCEEDED
    if int(usage.output_tokens_used or 0) + output_tokens > int(settings.FREE_MAX_OUTPUT_TOKENS):
        return DenialReason.DAILY_TOKEN_LIMIT_EXCEEDED
    return None


def _deny_free(usage: DailyUsage, reason: DenialReason, now: datetime) -> QuotaDecision:
    decision = QuotaDecision(
        allowed=False,
        tier=TIER_FREE,
        reason=reason,
        usage_stats=_free_usage_stats(usage),
    )
    if reason == DenialReason.DAILY_RESPONSE_LIMIT_EXCEEDED:
        decision.reset_in_minutes = minutes_until_reset(now)
        decision.usage_stats["reset_in_minutes"] = decision.reset_in_minutes
    return decision


async def _enforce_free_tier(
    user_id: str,
    db: AsyncSession,
    input_tokens: int,
    output_tokens: int,
    now: datetime,
) -> QuotaDecision:
    usage = await get_or_create_daily_usage(user_id, usage_day(now), db)

    denial = _free_denial(usage, output_tokens)
    if denial:
        return _deny_free(usage, denial, now)

    max_responses = int(settings.FREE_DAILY_RESPONSES)
    max_output = int(settings.FREE_MAX_OUTPUT_TOKENS)
    # Admission and the usage charge are one conditional update.
    result = await db.execute(
        update(DailyUsage)
        .where(
            DailyUsage.id == usage.id,
            DailyUsage.responses_count < max_responses,
            DailyUsage.output_tokens_used + output_tokens <= max_output,
        )
        .values(
            responses_count=DailyUsage.responses_count + 1,
            output_tokens_used=DailyUsage.output_tokens_used + output_tokens,
            input_tokens_used=DailyUsage.input_tokens_used + input_tokens,
            last_usage_time=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(usage)

    if result.rowcount != 1:
        return _deny_free(
            usage,
            _free_denial(usage, output_tokens) or DenialReason.DAILY_RESPONSE_LIMIT_EXCEEDED,
            now,
        )

    warning = EXTENDED_LIMIT_WARNING if output_tokens > int(settings.FREE_BASE_OUTPUT_TOKENS) else None
    return QuotaDecision(
        allowed=True,
        tier=TIER_FREE,
        remaining_responses=max(max_responses - int(usage.responses_count), 0),
        remaining_output_tokens=max(max_output - int(usage.output_tokens_used), 0),
        warning=warning,
        usage_stats=_free_usage_stats(usage),
    )


async def enforce_quota(
    user_id: str,
    db: AsyncSession,
    *,
    input_tokens: int,
    output_tokens: int,
    now: Optional[datetime] = None,
) -> QuotaDecision:
    """Admit or deny a token-consuming request and charge the admitted amounts.

    Paid plans are charged against their remaining budgets; users without an
    active plan are charged one response plus the requested tokens against
    today's free-tier counters. Store failures deny the request.
    """
    current = as_utc(now) or utcnow()
    requested_input = max(int(input_tokens or 0), 0)
    requested_output = max(int(output_tokens or 0), 0)

    try:
        plan = await get_active_plan(user_id, db)
        if plan is not None:
            return await _enforce_plan(user_id, plan, db, requested_input, requested_output, current)
        return await _enforce_free_tier(user_id, db, requested_input, requested_output, current)
    except STORE_ERRORS as exc:
        logger.error("Quota check failed for user %s: %s", user_id, exc)
        try:
            await db.rollback()
        except STORE_ERRORS:
            logger.warning("Rollback after quota failure also failed for user %s", user_id)
        return QuotaDecision(
            allowed=False,
            tier="unknown",
            reason=DenialReason.STORE_UNAVAILABLE,
        )


async def get_entitlement_status(
    user_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Read-only entitlement summary; lapsed plans are expired on observation."""
    current = as_utc(now) or utcnow()
    plan = await get_active_plan(user_id, db)
    if plan is not None and _plan_is_lapsed(plan, current):
        await _expire_plan(plan, db, current)
        plan = None

    day = usage_day(current)
    usage = await _load_daily_usage(user_id, day, db)
    return {
        "user_id": user_id,
        "has_active_plan": plan is not None,
        "plan": plan_to_dict(plan) if plan else None,
        "daily_usage": {
            "date": day.isoformat(),
            **_free_usage_stats(usage),
            "last_usage_time": isoformat(usage.last_usage_time) if usage else None,
        },
        "reset_in_minutes": minutes_until_reset(current),
    }
