"""Async Python client for the Serona AI HTTP API.

Covers the checkout flow end to end: creating an order, verifying the
checkout receipt and, when the webhook has not landed yet, polling the
entitlement status through :class:`services.verification.VerificationSupervisor`.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional

import httpx

from services.verification import Sleep, VerificationOutcome, VerificationSupervisor

logger = logging.getLogger(__name__)


class SeronaAPIError(Exception):
    """Non-success response from the API."""

    def __init__(self, status_code: int, payload: Any):
        self.status_code = status_code
        self.payload = payload
        super().__init__(f"Serona API error {status_code}: {payload}")


class PaymentVerificationError(SeronaAPIError):
    """The checkout signature was rejected. Retrying will not help."""


@dataclass
class CheckoutReceipt:
    order_id: str
    payment_id: str
    signature: str
    plan_type: Optional[str] = None


@dataclass
class CheckoutOutcome:
    order_id: str
    confirmed: bool
    plan: Optional[Dict[str, Any]] = None
    notice: Optional[str] = None
    attempts: int = 0


class SeronaClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Sleep] = None,
        max_attempts: Optional[int] = None,
        interval_seconds: Optional[float] = None,
    ):
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )
        self.supervisor = VerificationSupervisor(
            self._plan_is_active,
            max_attempts=max_attempts,
            interval_seconds=interval_seconds,
            lookup_timeout=timeout,
            sleep=sleep,
        )

    async def __aenter__(self) -> "SeronaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.supervisor.cancel_all()
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = await self._http.request(method, path, **kwargs)
        try:
            payload = response.json()
        except ValueError:
            payload = {"error": response.text[:200]}
        if response.status_code >= 400:
            raise SeronaAPIError(response.status_code, payload)
        return payload

    async def check_plan_limits(self, input_tokens: int, output_tokens: int) -> Dict[str, Any]:
        """Return the quota decision payload; denials come back as data, not errors."""
        response = await self._http.post(
            "/check-plan-limits",
            json={"input_tokens": input_tokens, "output_tokens": output_tokens},
        )
        if response.status_code in (200, 429, 503):
            payload = response.json()
            if "allowed" in payload:
                return payload
        raise SeronaAPIError(response.status_code, response.text[:200])

    async def create_payment(self, plan_type: str) -> Dict[str, Any]:
        return await self._request("POST", "/create-payment", json={"planType": plan_type})

    async def verify_payment(self, receipt: CheckoutReceipt) -> Dict[str, Any]:
        body = {
            "orderId": receipt.order_id,
            "paymentId": receipt.payment_id,
            "signature": receipt.signature,
        }
        if receipt.plan_type:
            body["planType"] = receipt.plan_type
        try:
            return await self._request("POST", "/verify-payment", json=body)
        except SeronaAPIError as exc:
            if isinstance(exc.payload, dict) and exc.payload.get("error") == "InvalidSignature":
                raise PaymentVerificationError(exc.status_code, exc.payload) from exc
            raise

    async def get_plan_status(self) -> Dict[str, Any]:
        return await self._request("GET", "/plan-status")

    async def has_active_plan(self) -> bool:
        status = await self.get_plan_status()
        return bool(status.get("has_active_plan"))

    async def _plan_is_active(self, _user_id: str) -> bool:
        # The bearer token already scopes the lookup to the signed-in user.
        return await self.has_active_plan()

    async def complete_checkout(self, receipt: CheckoutReceipt, user_id: str = "") -> CheckoutOutcome:
        """Verify a finished checkout and wait (bounded) for the plan to activate."""
        try:
            result = await self.verify_payment(receipt)
            if result.get("success") and not result.get("pending") and result.get("data"):
                return CheckoutOutcome(receipt.order_id, confirmed=True, plan=result["data"], attempts=0)
        except PaymentVerificationError:
            raise
        except SeronaAPIError as exc:
            if exc.status_code < 500:
                raise
            logger.warning("Verification for order %s failed (%s); polling plan status", receipt.order_id, exc.status_code)
        except httpx.HTTPError as exc:
            logger.warning("Verification request for order %s failed: %s; polling plan status", receipt.order_id, exc)

        outcome: VerificationOutcome = await self.supervisor.confirm(receipt.order_id, user_id)
        if not outcome.confirmed:
            return CheckoutOutcome(receipt.order_id, confirmed=False, notice=outcome.notice, attempts=outcome.attempts)

        status = await self.get_plan_status()
        return CheckoutOutcome(
            receipt.order_id,
            confirmed=True,
            plan=status.get("plan"),
            attempts=outcome.attempts,
        )
