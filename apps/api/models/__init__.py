"""Models package."""

from .user import User
from .daily_usage import DailyUsage
from .user_plan import UserPlan
from .payment_order import PaymentOrder
from .chat import Chat, ChatMessage
