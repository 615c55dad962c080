import asyncio
import json

import pytest
from sqlalchemy.exc import OperationalError

from config import settings
from routers import billing
from services.payments import GATEWAY_UNAVAILABLE, PaymentError
from services.razorpay import compute_payment_signature, compute_webhook_signature
from services.session_token import create_session_token


TEST_USER_ID = "billing-user"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_USER_ID)['token']}"}


async def _create_order(client, plan_type="hourly"):
    response = await client.post("/create-payment", json={"planType": plan_type}, headers=TEST_AUTH_HEADER)
    assert response.status_code == 200
    return response.json()


def _verify_body(order_id, payment_id="pay_1", signature=None):
    return {
        "orderId": order_id,
        "paymentId": payment_id,
        "signature": signature or compute_payment_signature(order_id, payment_id, settings.RAZORPAY_KEY_SECRET),
        "planType": "hourly",
        "userId": TEST_USER_ID,
    }


def _webhook_request(order_id, payment_id="pay_1", amount=2500):
    body = json.dumps(
        {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": payment_id, "order_id": order_id, "amount": amount}}},
        }
    ).encode()
    return body, compute_webhook_signature(body, settings.RAZORPAY_WEBHOOK_SECRET)


@pytest.mark.asyncio
async def test_plan_catalog(integration_client):
    response = await integration_client.get("/plans")

    assert response.status_code == 200
    plans = {item["plan_type"]: item for item in response.json()["plans"]}
    assert plans["hourly"]["amount"] == 2500
    assert plans["daily"]["output_tokens"] == 108000
    assert plans["monthly"]["duration_seconds"] == 30 * 24 * 3600


@pytest.mark.asyncio
async def test_create_payment_requires_authentication(integration_client, fake_gateway):
    response = await integration_client.post("/create-payment", json={"planType": "hourly"})

    assert response.status_code == 401
    assert fake_gateway.calls == []


@pytest.mark.asyncio
async def test_create_payment_returns_checkout_details(integration_client, fake_gateway):
    order = await _create_order(integration_client)

    assert order == {"orderId": "order_test_1", "amount": 2500, "currency": "INR", "keyId": "rzp_test_key"}


@pytest.mark.asyncio
async def test_create_payment_invalid_plan(integration_client, fake_gateway):
    response = await integration_client.post("/create-payment", json={"planType": "yearly"}, headers=TEST_AUTH_HEADER)

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidPlanType"


@pytest.mark.asyncio
async def test_create_payment_gateway_unavailable(integration_client, fake_gateway):
    fake_gateway.fail = True

    response = await integration_client.post("/create-payment", json={"planType": "hourly"}, headers=TEST_AUTH_HEADER)

    assert response.status_code == 503
    assert response.json()["error"] == "GatewayUnavailable"
    assert response.json()["retryable"] is True


@pytest.mark.asyncio
async def test_verify_payment_activates_plan_once(integration_client, fake_gateway):
    order = await _create_order(integration_client)

    first = await integration_client.post("/verify-payment", json=_verify_body(order["orderId"]), headers=TEST_AUTH_HEADER)
    assert first.status_code == 200
    first_payload = first.json()
    assert first_payload["success"] is True
    assert first_payload["data"]["remaining_output_tokens"] == 9000
    assert first_payload["data"]["remaining_input_tokens"] == 5000

    replay = await integration_client.post("/verify-payment", json=_verify_body(order["orderId"]), headers=TEST_AUTH_HEADER)
    assert replay.status_code == 200
    assert replay.json()["data"]["id"] == first_payload["data"]["id"]
    assert replay.json()["message"] == "Plan already active"

    status = await integration_client.get("/plan-status", headers=TEST_AUTH_HEADER)
    assert status.json()["has_active_plan"] is True
    assert status.json()["plan"]["order_id"] == order["orderId"]


@pytest.mark.asyncio
async def test_verify_payment_invalid_signature(integration_client, fake_gateway):
    order = await _create_order(integration_client)

    response = await integration_client.post(
        "/verify-payment",
        json=_verify_body(order["orderId"], signature="0" * 64),
        headers=TEST_AUTH_HEADER,
    )

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidSignature"
    status = await integration_client.get("/plan-status", headers=TEST_AUTH_HEADER)
    assert status.json()["has_active_plan"] is False


@pytest.mark.asyncio
async def test_verify_payment_rejects_cross_user_receipt(integration_client, fake_gateway):
    order = await _create_order(integration_client)
    body = _verify_body(order["orderId"])
    body["userId"] = "someone-else"

    response = await integration_client.post("/verify-payment", json=body, headers=TEST_AUTH_HEADER)

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_verify_payment_store_failure_is_soft_success(integration_client, fake_gateway, monkeypatch):
    order = await _create_order(integration_client)

    async def store_down(receipt, db):
        raise OperationalError("UPDATE user_plans", {}, Exception("database is locked"))

    monkeypatch.setattr(billing, "reconcile_payment", store_down)

    response = await integration_client.post("/verify-payment", json=_verify_body(order["orderId"]), headers=TEST_AUTH_HEADER)

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["pending"] is True
    assert payload["error"] == "StoreUnavailable"


@pytest.mark.asyncio
async def test_verify_payment_retryable_error_is_soft_success(integration_client, fake_gateway, monkeypatch):
    async def gateway_down(receipt, db):
        raise PaymentError(GATEWAY_UNAVAILABLE, "timeout", retryable=True)

    monkeypatch.setattr(billing, "reconcile_payment", gateway_down)

    response = await integration_client.post("/verify-payment", json=_verify_body("order_x"), headers=TEST_AUTH_HEADER)

    assert response.status_code == 200
    assert response.json()["pending"] is True


@pytest.mark.asyncio
async def test_webhook_activates_plan_and_client_replay_is_noop(integration_client, fake_gateway):
    order = await _create_order(integration_client)
    body, signature = _webhook_request(order["orderId"])

    webhook = await integration_client.post(
        "/razorpay-webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": signature},
    )
    assert webhook.status_code == 200
    assert webhook.json() == {"success": True}

    verify = await integration_client.post("/verify-payment", json=_verify_body(order["orderId"]), headers=TEST_AUTH_HEADER)
    assert verify.status_code == 200
    assert verify.json()["message"] == "Plan already active"


@pytest.mark.asyncio
async def test_webhook_rejects_invalid_signature(integration_client, fake_gateway):
    order = await _create_order(integration_client)
    body, _ = _webhook_request(order["orderId"])

    response = await integration_client.post(
        "/razorpay-webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": "bogus"},
    )

    assert response.status_code == 400
    assert "error" in response.json()


@pytest.mark.asyncio
async def test_webhook_unknown_order(integration_client):
    body, signature = _webhook_request("order_unknown")

    response = await integration_client.post(
        "/razorpay-webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": signature},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Order not found."}


@pytest.mark.asyncio
async def test_webhook_ignores_other_events(integration_client):
    body = json.dumps({"event": "refund.created", "payload": {}}).encode()
    signature = compute_webhook_signature(body, settings.RAZORPAY_WEBHOOK_SECRET)

    response = await integration_client.post(
        "/razorpay-webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": signature},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "ignored": True}


@pytest.mark.asyncio
async def test_verify_payment_non_ascii_signature_is_invalid(integration_client, fake_gateway):
    order = await _create_order(integration_client)

    response = await integration_client.post(
        "/verify-payment",
        json=_verify_body(order["orderId"], signature="é" * 64),
        headers=TEST_AUTH_HEADER,
    )

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidSignature"


@pytest.mark.asyncio
async def test_webhook_non_ascii_signature_header_is_rejected(integration_client, fake_gateway):
    order = await _create_order(integration_client)
    body, _ = _webhook_request(order["orderId"])

    response = await integration_client.post(
        "/razorpay-webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": ("é" * 64).encode()},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid webhook signature."}
    status = await integration_client.get("/plan-status", headers=TEST_AUTH_HEADER)
    assert status.json()["has_active_plan"] is False


@pytest.mark.asyncio
async def test_webhook_signed_array_body_is_rejected(integration_client):
    body = b"[]"
    signature = compute_webhook_signature(body, settings.RAZORPAY_WEBHOOK_SECRET)

    response = await integration_client.post(
        "/razorpay-webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": signature},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Webhook payload is not a JSON object."}


@pytest.mark.asyncio
async def test_verify_payment_store_timeout_is_soft_success(integration_client, fake_gateway, monkeypatch):
    order = await _create_order(integration_client)

    async def store_timeout(receipt, db):
        raise asyncio.TimeoutError()

    monkeypatch.setattr(billing, "reconcile_payment", store_timeout)

    response = await integration_client.post("/verify-payment", json=_verify_body(order["orderId"]), headers=TEST_AUTH_HEADER)

    assert response.status_code == 200
    assert response.json()["pending"] is True
    assert response.json()["error"] == "StoreUnavailable"


@pytest.mark.asyncio
async def test_webhook_store_timeout_asks_for_redelivery(integration_client, fake_gateway, monkeypatch):
    order = await _create_order(integration_client)
    body, signature = _webhook_request(order["orderId"])

    async def store_timeout(body, signature, db):
        raise asyncio.TimeoutError()

    monkeypatch.setattr(billing, "reconcile_webhook_event", store_timeout)

    response = await integration_client.post(
        "/razorpay-webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": signature},
    )

    assert response.status_code == 503
