import pytest
from sqlalchemy.exc import SQLAlchemyError

from services import quota
from services.session_token import create_session_token


TEST_USER_ID = "quota-router-user"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_USER_ID)['token']}"}


@pytest.mark.asyncio
async def test_check_plan_limits_requires_bearer_token(integration_client):
    response = await integration_client.post("/check-plan-limits", json={"input_tokens": 10, "output_tokens": 100})

    assert response.status_code == 401
    assert response.json()["detail"] == "Authentication required."


@pytest.mark.asyncio
async def test_check_plan_limits_rejects_invalid_token(integration_client):
    response = await integration_client.post(
        "/check-plan-limits",
        json={"input_tokens": 10, "output_tokens": 100},
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_free_tier_allowed_then_token_limit(integration_client):
    allowed = await integration_client.post(
        "/check-plan-limits",
        json={"input_tokens": 40, "output_tokens": 500},
        headers=TEST_AUTH_HEADER,
    )
    assert allowed.status_code == 200
    assert allowed.json() == {
        "allowed": True,
        "tier": "free",
        "remaining_output_tokens": 300,
        "remaining_responses": 6,
        "warning": "extended-limit-used",
    }

    denied = await integration_client.post(
        "/check-plan-limits",
        json={"input_tokens": 40, "output_tokens": 400},
        headers=TEST_AUTH_HEADER,
    )
    assert denied.status_code == 429
    payload = denied.json()
    assert payload["allowed"] is False
    assert payload["error"] == "DailyTokenLimitExceeded"
    assert payload["usageStats"]["output_tokens_used"] == 500
    assert payload["usageStats"]["responses_count"] == 1


@pytest.mark.asyncio
async def test_negative_token_counts_are_rejected(integration_client):
    response = await integration_client.post(
        "/check-plan-limits",
        json={"input_tokens": -1, "output_tokens": 100},
        headers=TEST_AUTH_HEADER,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_store_outage_returns_503(integration_client, monkeypatch):
    async def broken_lookup(user_id, db):
        raise SQLAlchemyError("connection reset")

    monkeypatch.setattr(quota, "get_active_plan", broken_lookup)

    response = await integration_client.post(
        "/check-plan-limits",
        json={"input_tokens": 10, "output_tokens": 100},
        headers=TEST_AUTH_HEADER,
    )

    assert response.status_code == 503
    assert response.json()["error"] == "StoreUnavailable"


@pytest.mark.asyncio
async def test_plan_status_for_new_user(integration_client):
    response = await integration_client.get("/plan-status", headers=TEST_AUTH_HEADER)

    assert response.status_code == 200
    payload = response.json()
    assert payload["user_id"] == TEST_USER_ID
    assert payload["has_active_plan"] is False
    assert payload["plan"] is None
    assert payload["daily_usage"]["responses_count"] == 0
    assert payload["daily_usage"]["max_output_tokens"] == 800
    assert 0 <= payload["reset_in_minutes"] <= 24 * 60
