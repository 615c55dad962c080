"""UserPlan model for paid entitlement windows."""

import uuid

from sqlalchemy import Column, DateTime, Index, Integer, String, text
from sqlalchemy.sql import func

from database import Base


PLAN_STATUS_ACTIVE = "active"
PLAN_STATUS_INACTIVE = "inactive"
PLAN_STATUS_EXPIRED = "expired"


class UserPlan(Base):
    """Paid plan with its own token budget and validity window."""

    __tablename__ = "user_plans"
    __table_args__ = (
        # At most one active plan per user.
        Index(
            "uq_user_plans_one_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    plan_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PLAN_STATUS_ACTIVE, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    remaining_input_tokens = Column(Integer, nullable=False, default=0)
    remaining_output_tokens = Column(Integer, nullable=False, default=0)
    order_id = Column(String, nullable=True, unique=True)
    payment_id = Column(String, nullable=True)
    amount_paid = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
