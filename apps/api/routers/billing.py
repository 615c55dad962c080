"""Plan purchase router: order creation, verification and gateway webhook."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import STORE_ERRORS, get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.payments import (
    AMOUNT_MISMATCH,
    GATEWAY_UNAVAILABLE,
    INVALID_PLAN_TYPE,
    INVALID_SIGNATURE,
    ORDER_NOT_FOUND,
    STORE_UNAVAILABLE,
    PaymentError,
    PaymentReceipt,
    create_payment_order,
    reconcile_payment,
    reconcile_webhook_event,
)
from services.plans import get_plan_catalog, plan_to_dict
from services.razorpay import RazorpayClient, get_gateway

router = APIRouter()
logger = logging.getLogger(__name__)


PAYMENT_ERROR_STATUS = {
    INVALID_PLAN_TYPE: 400,
    INVALID_SIGNATURE: 400,
    AMOUNT_MISMATCH: 400,
    ORDER_NOT_FOUND: 404,
    GATEWAY_UNAVAILABLE: 503,
    STORE_UNAVAILABLE: 503,
}


class CreatePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_type: str = Field(alias="planType")


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1)
    payment_id: str = Field(alias="paymentId", min_length=1)
    signature: str = Field(min_length=1)
    plan_type: Optional[str] = Field(default=None, alias="planType")
    user_id: Optional[str] = Field(default=None, alias="userId")


def _payment_error_response(exc: PaymentError) -> JSONResponse:
    return JSONResponse(
        status_code=PAYMENT_ERROR_STATUS.get(exc.code, 400),
        content={"error": exc.code, "message": exc.message, "retryable": exc.retryable},
    )


def _pending_activation_response(reason: str) -> dict:
    # The webhook completes activation; the client only needs to keep waiting.
    return {
        "success": True,
        "pending": True,
        "message": "Payment received. Plan activation is in progress.",
        "error": reason,
    }


@router.get("/plans")
async def list_plans():
    return {"plans": get_plan_catalog()}


@router.post("/create-payment")
async def create_payment(
    request: CreatePaymentRequest,
    _rate_limit: None = Depends(rate_limit("create_payment", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
):
    try:
        order = await create_payment_order(auth.user_id, request.plan_type, db, gateway)
    except PaymentError as exc:
        logger.warning("Create payment failed for user %s: %s", auth.user_id, exc.message)
        return _payment_error_response(exc)

    return {
        "orderId": order["order_id"],
        "amount": order["amount"],
        "currency": order["currency"],
        "keyId": order["key_id"],
    }


@router.post("/verify-payment")
async def verify_payment(
    request: VerifyPaymentRequest,
    _rate_limit: None = Depends(rate_limit("verify_payment", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Client-side reconciliation right after checkout completes."""
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    receipt = PaymentReceipt(
        order_id=request.order_id,
        payment_id=request.payment_id,
        signature=request.signature,
        plan_type=request.plan_type,
        user_id=scoped_user_id,
    )

    try:
        result = await reconcile_payment(receipt, db)
    except PaymentError as exc:
        if exc.retryable:
            logger.warning("Verification for order %s deferred to webhook: %s", request.order_id, exc.message)
            return _pending_activation_response(exc.code)
        logger.warning("Verification for order %s rejected: %s", request.order_id, exc.code)
        return _payment_error_response(exc)
    except STORE_ERRORS as exc:
        logger.error("Store error verifying order %s: %s", request.order_id, exc)
        return _pending_activation_response(STORE_UNAVAILABLE)

    return {
        "success": True,
        "message": "Plan activated successfully" if result.created else "Plan already active",
        "data": plan_to_dict(result.plan),
    }


@router.post("/razorpay-webhook")
async def razorpay_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Authoritative server-to-server payment notification."""
    body = await request.body()
    signature = request.headers.get("x-razorpay-signature")

    try:
        result = await reconcile_webhook_event(body, signature, db)
    except PaymentError as exc:
        logger.warning("Webhook rejected: %s (%s)", exc.code, exc.message)
        return JSONResponse(status_code=400, content={"error": exc.message})
    except STORE_ERRORS as exc:
        # Non-2xx makes the gateway redeliver.
        logger.error("Store error handling webhook: %s", exc)
        return JSONResponse(status_code=503, content={"error": "Entitlement store unavailable."})

    if result is None:
        return {"success": True, "ignored": True}
    return {"success": True}
