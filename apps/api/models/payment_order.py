"""PaymentOrder model mapping gateway orders to the purchasing user."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PAID = "paid"


class PaymentOrder(Base):
    """Pending-order record written before checkout so webhooks can reconcile."""

    __tablename__ = "payment_orders"

    order_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    plan_type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="INR")
    status = Column(String, nullable=False, default=ORDER_STATUS_PENDING)
    payment_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    paid_at = Column(DateTime(timezone=True), nullable=True)
