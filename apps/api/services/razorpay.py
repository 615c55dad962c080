"""Razorpay gateway client and signature helpers.

Orders API: https://razorpay.com/docs/api/orders/
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Raised when the gateway cannot be reached or rejects a request."""


def _digests_match(expected: str, supplied: str) -> bool:
    # compare_digest rejects non-ASCII str, so compare bytes.
    return hmac.compare_digest(expected.encode(), supplied.encode("utf-8", "surrogateescape"))


def compute_payment_signature(order_id: str, payment_id: str, secret: str) -> str:
    """HMAC-SHA256 hex digest over ``order_id|payment_id``, as signed by checkout."""
    message = f"{order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    if not secret or not signature:
        return False
    expected = compute_payment_signature(order_id, payment_id, secret)
    return _digests_match(expected, str(signature))


def compute_webhook_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check the ``X-Razorpay-Signature`` header against the raw request body."""
    if not secret or not signature:
        return False
    expected = compute_webhook_signature(body, secret)
    return _digests_match(expected, signature)


class RazorpayClient:
    """Minimal async client for the Razorpay Orders API."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = (key_id if key_id is not None else settings.RAZORPAY_KEY_ID or "").strip()
        self.key_secret = (key_secret if key_secret is not None else settings.RAZORPAY_KEY_SECRET or "").strip()
        self.api_base = (api_base or settings.RAZORPAY_API_BASE).rstrip("/")
        self.timeout = float(timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS)
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: Optional[str] = None,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a gateway order.

        Args:
            amount: Amount in minor currency units
            currency: ISO currency code
            receipt: Merchant-side reference stored on the order
            notes: Free-form key/value metadata

        Returns:
            The gateway order object; ``id`` is the order id.
        """
        if not self.configured:
            raise GatewayError("Razorpay is not configured.")

        payload: Dict[str, Any] = {"amount": int(amount), "currency": currency}
        if receipt:
            payload["receipt"] = receipt[:40]
        if notes:
            payload["notes"] = notes

        try:
            async with httpx.AsyncClient(
                base_url=self.api_base,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post("/orders", json=payload)
        except httpx.HTTPError as exc:
            logger.error("Razorpay order request failed: %s", exc)
            raise GatewayError(f"Razorpay request failed: {exc}") from exc

        if response.status_code >= 400:
            description = ""
            try:
                description = (response.json().get("error") or {}).get("description", "")
            except ValueError:
                description = response.text[:200]
            logger.error("Razorpay API error: %s - %s", response.status_code, description)
            raise GatewayError(f"Razorpay API error: {response.status_code} - {description or 'Unknown error'}")

        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError("Invalid response format from Razorpay") from exc

        if not isinstance(data, dict) or not isinstance(data.get("id"), str) or not data["id"]:
            logger.error("Missing or invalid order id from Razorpay: %s", data)
            raise GatewayError("Failed to create payment order: invalid order id")

        return data


def get_gateway() -> RazorpayClient:
    """FastAPI dependency returning the configured gateway client."""
    return RazorpayClient()
