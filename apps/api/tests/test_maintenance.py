from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from models.daily_usage import DailyUsage
from models.user_plan import PLAN_STATUS_ACTIVE, PLAN_STATUS_EXPIRED, UserPlan
from services.maintenance import expire_lapsed_plans, purge_stale_daily_usage, run_maintenance


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _plan(user_id, end_time, order_id):
    return UserPlan(
        user_id=user_id,
        plan_type="hourly",
        status=PLAN_STATUS_ACTIVE,
        start_time=end_time - timedelta(hours=1),
        end_time=end_time,
        remaining_input_tokens=5000,
        remaining_output_tokens=9000,
        order_id=order_id,
        amount_paid=2500,
    )


@pytest.mark.asyncio
async def test_expire_lapsed_plans_only_touches_past_end_time(db, session_maker):
    db.add_all(
        [
            _plan("user-a", NOW - timedelta(minutes=5), "order_a"),
            _plan("user-b", NOW + timedelta(minutes=5), "order_b"),
        ]
    )
    await db.commit()

    assert await expire_lapsed_plans(db, now=NOW) == 1

    async with session_maker() as session:
        rows = (await session.execute(select(UserPlan).order_by(UserPlan.user_id))).scalars().all()
        assert [row.status for row in rows] == [PLAN_STATUS_EXPIRED, PLAN_STATUS_ACTIVE]


@pytest.mark.asyncio
async def test_purge_stale_daily_usage_keeps_retention_window(db, session_maker):
    for offset in (0, 5, 31):
        db.add(
            DailyUsage(
                user_id="user-a",
                usage_date=date(2026, 10, 19) - timedelta(days=offset),
                responses_count=1,
                output_tokens_used=100,
                input_tokens_used=10,
            )
        )
    await db.commit()

    assert await purge_stale_daily_usage(db, now=NOW, retention_days=30) == 1

    async with session_maker() as session:
        remaining = (await session.execute(select(DailyUsage.usage_date))).scalars().all()
        assert sorted(remaining) == [date(2026, 10, 14), date(2026, 10, 19)]


@pytest.mark.asyncio
async def test_run_maintenance_reports_counts(session_maker):
    async with session_maker() as session:
        session.add(_plan("user-c", NOW - timedelta(hours=2), "order_c"))
        await session.commit()

    result = await run_maintenance(session_maker=session_maker, now=NOW)

    assert result == {"expired_plans": 1, "purged_usage_rows": 0}
