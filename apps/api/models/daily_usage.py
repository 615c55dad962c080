"""DailyUsage model for free-tier metering."""

import uuid

from sqlalchemy import Column, Date, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class DailyUsage(Base):
    """Per-user, per-day free-tier counters."""

    __tablename__ = "user_daily_usage"
    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_user_daily_usage_user_date"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    usage_date = Column("date", Date, nullable=False, index=True)
    responses_count = Column(Integer, nullable=False, default=0)
    output_tokens_used = Column(Integer, nullable=False, default=0)
    input_tokens_used = Column(Integer, nullable=False, default=0)
    last_usage_time = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
