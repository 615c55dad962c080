"""Periodic entitlement housekeeping: plan expiry and usage retention."""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Dict, Optional

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import async_session_maker
from models.daily_usage import DailyUsage
from models.user_plan import PLAN_STATUS_ACTIVE, PLAN_STATUS_EXPIRED, UserPlan
from services.quota import usage_day
from services.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


async def expire_lapsed_plans(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Mark active plans past their end time as expired."""
    current = as_utc(now) or utcnow()
    result = await db.execute(
        update(UserPlan)
        .where(UserPlan.status == PLAN_STATUS_ACTIVE, UserPlan.end_time < current)
        .values(status=PLAN_STATUS_EXPIRED, updated_at=current)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(result.rowcount or 0)


async def purge_stale_daily_usage(
    db: AsyncSession,
    now: Optional[datetime] = None,
    retention_days: Optional[int] = None,
) -> int:
    """Delete free-tier counters for days older than the retention window."""
    days = max(int(retention_days if retention_days is not None else settings.USAGE_RETENTION_DAYS), 1)
    cutoff = usage_day(now) - timedelta(days=days)
    result = await db.execute(
        delete(DailyUsage)
        .where(DailyUsage.usage_date < cutoff)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(result.rowcount or 0)


async def run_maintenance(
    session_maker: Optional[async_sessionmaker] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    maker = session_maker or async_session_maker
    async with maker() as db:
        expired = await expire_lapsed_plans(db, now=now)
        purged = await purge_stale_daily_usage(db, now=now)
    if expired or purged:
        logger.info("Maintenance: expired_plans=%s purged_usage_rows=%s", expired, purged)
    return {"expired_plans": expired, "purged_usage_rows": purged}
