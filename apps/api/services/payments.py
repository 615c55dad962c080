"""Payment order issuing and plan reconciliation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import STORE_ERRORS
from models.payment_order import ORDER_STATUS_PAID, ORDER_STATUS_PENDING, PaymentOrder
from models.user_plan import PLAN_STATUS_ACTIVE, PLAN_STATUS_INACTIVE, UserPlan
from services.plans import (
    get_plan_definition,
    is_valid_plan_type,
    normalize_plan_type,
    plan_duration,
    plan_price,
)
from services.razorpay import (
    GatewayError,
    RazorpayClient,
    verify_payment_signature,
    verify_webhook_signature,
)
from services.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


INVALID_PLAN_TYPE = "InvalidPlanType"
INVALID_SIGNATURE = "InvalidSignature"
GATEWAY_UNAVAILABLE = "GatewayUnavailable"
ORDER_NOT_FOUND = "OrderNotFound"
STORE_UNAVAILABLE = "StoreUnavailable"
AMOUNT_MISMATCH = "AmountMismatch"

RECONCILABLE_WEBHOOK_EVENTS = ("payment.captured", "order.paid")
_ACTIVATION_ATTEMPTS = 2


class PaymentError(Exception):
    """Payment failure carrying a taxonomy code and whether a retry can help."""

    def __init__(self, code: str, message: str, retryable: bool = False):
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable


@dataclass
class PaymentReceipt:
    order_id: str
    payment_id: str
    signature: str
    plan_type: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class ReconcileResult:
    plan: UserPlan
    created: bool


async def create_payment_order(
    user_id: str,
    plan_type: str,
    db: AsyncSession,
    gateway: RazorpayClient,
) -> Dict[str, Any]:
    """Create a gateway order for a plan and record who it belongs to."""
    if not is_valid_plan_type(plan_type):
        raise PaymentError(INVALID_PLAN_TYPE, f"Invalid plan type: {plan_type!r}")

    normalized = normalize_plan_type(plan_type)
    amount = plan_price(normalized)
    currency = settings.PAYMENT_CURRENCY

    try:
        order = await gateway.create_order(
            amount,
            currency,
            receipt=f"{normalized}:{user_id}",
            notes={"user_id": user_id, "plan_type": normalized},
        )
    except GatewayError as exc:
        raise PaymentError(GATEWAY_UNAVAILABLE, str(exc), retryable=True) from exc

    order_id = order["id"]
    # The webhook carries no user context, so the mapping must exist before checkout opens.
    try:
        db.add(
            PaymentOrder(
                order_id=order_id,
                user_id=user_id,
                plan_type=normalized,
                amount=amount,
                currency=currency,
                status=ORDER_STATUS_PENDING,
            )
        )
        await db.commit()
    except STORE_ERRORS as exc:
        await db.rollback()
        logger.error("Could not persist pending order %s: %s", order_id, exc)
        raise PaymentError(STORE_UNAVAILABLE, "Could not record payment order.", retryable=True) from exc

    logger.info("Order created: order=%s user=%s plan=%s amount=%s", order_id, user_id, normalized, amount)
    return {
        "order_id": order_id,
        "amount": amount,
        "currency": currency,
        "key_id": gateway.key_id,
    }


async def get_payment_order(order_id: str, db: AsyncSession) -> Optional[PaymentOrder]:
    result = await db.execute(select(PaymentOrder).where(PaymentOrder.order_id == order_id))
    return result.scalar_one_or_none()


async def get_plan_for_order(order_id: str, db: AsyncSession) -> Optional[UserPlan]:
    result = await db.execute(select(UserPlan).where(UserPlan.order_id == order_id))
    return result.scalar_one_or_none()


async def _mark_order_paid(order_id: str, payment_id: str, db: AsyncSession, now: datetime) -> None:
    await db.execute(
        update(PaymentOrder)
        .where(PaymentOrder.order_id == order_id, PaymentOrder.status == ORDER_STATUS_PENDING)
        .values(status=ORDER_STATUS_PAID, payment_id=payment_id, paid_at=now)
        .execution_options(synchronize_session=False)
    )


async def activate_plan(
    db: AsyncSession,
    *,
    user_id: str,
    plan_type: str,
    order_id: str,
    payment_id: str,
    amount_paid: int,
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """Activate the plan bought by ``order_id``; replays return the existing plan.

    Prior active plans for the user are deactivated in the same transaction.
    The unique ``order_id`` column and the one-active-plan index turn a racing
    second activation into an IntegrityError, which is resolved by re-reading.
    """
    current = as_utc(now) or utcnow()
    plan_def = get_plan_definition(plan_type)

    for attempt in range(_ACTIVATION_ATTEMPTS):
        existing = await get_plan_for_order(order_id, db)
        if existing is not None:
            logger.info("Order %s already reconciled as plan %s; skipping", order_id, existing.id)
            return ReconcileResult(plan=existing, created=False)

        await db.execute(
            update(UserPlan)
            .where(UserPlan.user_id == user_id, UserPlan.status == PLAN_STATUS_ACTIVE)
            .values(status=PLAN_STATUS_INACTIVE, updated_at=current)
            .execution_options(synchronize_session=False)
        )
        plan = UserPlan(
            user_id=user_id,
            plan_type=normalize_plan_type(plan_type),
            status=PLAN_STATUS_ACTIVE,
            start_time=current,
            end_time=current + plan_duration(plan_type),
            remaining_input_tokens=int(plan_def["input_tokens"]),
            remaining_output_tokens=int(plan_def["output_tokens"]),
            order_id=order_id,
            payment_id=payment_id,
            amount_paid=int(amount_paid),
        )
        db.add(plan)
        try:
            await db.flush()
            await _mark_order_paid(order_id, payment_id, db, current)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.warning(
                "Concurrent activation for order %s (attempt %s/%s)",
                order_id,
                attempt + 1,
                _ACTIVATION_ATTEMPTS,
            )
            continue

        await db.refresh(plan)
        logger.info(
            "Plan activated: plan=%s user=%s type=%s order=%s ends=%s",
            plan.id,
            user_id,
            plan.plan_type,
            order_id,
            plan.end_time,
        )
        return ReconcileResult(plan=plan, created=True)

    existing = await get_plan_for_order(order_id, db)
    if existing is not None:
        return ReconcileResult(plan=existing, created=False)
    raise PaymentError(STORE_UNAVAILABLE, "Plan activation conflicted repeatedly.", retryable=True)


async def reconcile_payment(
    receipt: PaymentReceipt,
    db: AsyncSession,
    *,
    signature_secret: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """Client-triggered reconciliation from a checkout receipt."""
    secret = signature_secret if signature_secret is not None else settings.RAZORPAY_KEY_SECRET
    if not verify_payment_signature(receipt.order_id, receipt.payment_id, receipt.signature, secret):
        logger.warning("Invalid payment signature for order %s", receipt.order_id)
        raise PaymentError(INVALID_SIGNATURE, "Payment signature verification failed.")

    order = await get_payment_order(receipt.order_id, db)
    if order is not None:
        if receipt.user_id and order.user_id != receipt.user_id:
            logger.warning("Order %s does not belong to user %s", receipt.order_id, receipt.user_id)
            raise PaymentError(ORDER_NOT_FOUND, "Order not found.")
        user_id, plan_type, amount = order.user_id, order.plan_type, int(order.amount)
    else:
        if not receipt.user_id or not is_valid_plan_type(receipt.plan_type):
            raise PaymentError(ORDER_NOT_FOUND, "Order not found.")
        user_id = receipt.user_id
        plan_type = normalize_plan_type(receipt.plan_type)
        amount = plan_price(plan_type)

    return await activate_plan(
        db,
        user_id=user_id,
        plan_type=plan_type,
        order_id=receipt.order_id,
        payment_id=receipt.payment_id,
        amount_paid=amount,
        now=now,
    )


def _extract_payment_entity(payload: Dict[str, Any]) -> Dict[str, Any]:
    entity: Any = payload.get("payload")
    for key in ("payment", "entity"):
        entity = entity.get(key) if isinstance(entity, dict) else None
    if not isinstance(entity, dict) or not entity.get("order_id") or not entity.get("id"):
        raise PaymentError(ORDER_NOT_FOUND, "Webhook payload has no payment entity.")
    return entity


async def reconcile_webhook_event(
    body: bytes,
    signature: Optional[str],
    db: AsyncSession,
    *,
    webhook_secret: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[ReconcileResult]:
    """Gateway-triggered reconciliation. Returns None for events that are ignored."""
    secret = webhook_secret if webhook_secret is not None else settings.RAZORPAY_WEBHOOK_SECRET
    if not verify_webhook_signature(body, signature, secret):
        logger.warning("Rejected webhook with invalid or missing signature")
        raise PaymentError(INVALID_SIGNATURE, "Invalid webhook signature.")

    try:
        payload = json.loads(body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PaymentError(ORDER_NOT_FOUND, "Webhook payload is not valid JSON.") from exc
    if not isinstance(payload, dict):
        raise PaymentError(ORDER_NOT_FOUND, "Webhook payload is not a JSON object.")

    event = str(payload.get("event", "")).strip()
    if event not in RECONCILABLE_WEBHOOK_EVENTS:
        logger.info("Ignoring webhook event %r", event)
        return None

    entity = _extract_payment_entity(payload)
    order_id = str(entity["order_id"])
    payment_id = str(entity["id"])

    order = await get_payment_order(order_id, db)
    if order is None:
        logger.error("Webhook for unknown order %s", order_id)
        raise PaymentError(ORDER_NOT_FOUND, "Order not found.")

    amount = entity.get("amount")
    if amount is not None and (not isinstance(amount, int) or int(amount) != int(order.amount)):
        logger.error("Webhook amount %s does not match order %s amount %s", amount, order_id, order.amount)
        raise PaymentError(AMOUNT_MISMATCH, "Paid amount does not match the order.")

    return await activate_plan(
        db,
        user_id=order.user_id,
        plan_type=order.plan_type,
        order_id=order_id,
        payment_id=payment_id,
        amount_paid=int(order.amount),
        now=now,
    )
