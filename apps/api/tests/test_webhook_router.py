import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text

from config import settings
from main import app
from services.accounts import get_or_create_user
from services.credits import get_credit_balance


@pytest.mark.asyncio
async def test_trial_start_webhook_grants_trial_credits(api_client, ledger_store):
    response = await api_client.post(
        "/webhooks/subscription",
        json={
            "event": "subscription-trial-start",
            "buyer_email": "trial@example.com",
            "product_id": "90211",
            "trial_transaction": 1,
        },
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["processed"] is True
    assert payload["user"]["credits"] == settings.TRIAL_CREDITS
    assert payload["user"]["subscription_tier"] is None
    assert await get_credit_balance(ledger_store, "trial@example.com") == settings.TRIAL_CREDITS


@pytest.mark.asyncio
async def test_paid_webhook_sets_tier_and_period(api_client, ledger_store):
    response = await api_client.post(
        "/webhooks/subscription",
        json={
            "event": "subscription-payment",
            "buyer_email": "paid@example.com",
            "product_id": "90143",
            "subscription_type": "Yearly",
            "amount": "239.40",
        },
    )

    assert response.status_code == 200
    user = response.json()["user"]
    assert user["credits"] == 60
    assert user["subscription_tier"] == "basic"
    assert user["subscription_period"] == "yearly"


@pytest.mark.asyncio
async def test_zero_amount_payment_is_acknowledged_but_ignored(api_client, ledger_store):
    response = await api_client.post(
        "/webhooks/subscription",
        json={"event": "subscription-payment", "buyer_email": "zero@example.com", "amount": "0.00"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["processed"] is False
    assert await get_credit_balance(ledger_store, "zero@example.com") == 0


@pytest.mark.asyncio
async def test_double_trial_delivery_grants_twice(api_client, ledger_store):
    body = {"event": "subscription-trial-start", "buyer_email": "twice@example.com"}
    await api_client.post("/webhooks/subscription", json=body)
    await api_client.post("/webhooks/subscription", json=body)

    assert await get_credit_balance(ledger_store, "twice@example.com") == 2 * settings.TRIAL_CREDITS


@pytest.mark.asyncio
async def test_invalid_payload_still_answers_success(api_client):
    missing_email = await api_client.post("/webhooks/subscription", json={"event": "subscription-trial-start"})
    assert missing_email.status_code == 200
    assert missing_email.json()["success"] is True
    assert missing_email.json()["processed"] is False
    assert "error" in missing_email.json()

    not_json = await api_client.post(
        "/webhooks/subscription",
        content=b"event=subscription-trial-start",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert not_json.status_code == 200
    assert not_json.json()["success"] is True


@pytest.mark.asyncio
async def test_store_outage_still_answers_success(outage_client):
    response = await outage_client.post(
        "/webhooks/subscription",
        json={"event": "subscription-trial-start", "buyer_email": "down@example.com"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["processed"] is False
    assert "unavailable" in payload["error"].lower()


@pytest.mark.asyncio
async def test_webhook_info_lists_supported_events(api_client):
    response = await api_client.get("/webhooks/subscription")

    assert response.status_code == 200
    payload = response.json()
    assert payload["supported_events"] == ["subscription-trial-start", "subscription-payment"]
    assert payload["product_mapping"]["90212"]["tier"] == "premium"


@pytest.mark.asyncio
async def test_unrecognised_stored_tier_still_answers_success(api_client, ledger_store):
    await get_or_create_user(ledger_store, "foreign@example.com")
    async with ledger_store.session() as db:
        await db.execute(
            text(
                "UPDATE accounts SET subscription_tier = 'Basic', subscription_period = 'monthly', "
                "subscription_expires_at = CURRENT_TIMESTAMP WHERE email = :email"
            ),
            {"email": "foreign@example.com"},
        )
        await db.commit()

    response = await api_client.post(
        "/webhooks/subscription",
        json={"event": "subscription-trial-start", "buyer_email": "foreign@example.com"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["processed"] is True
    assert payload["user"]["subscription_tier"] is None
    assert await get_credit_balance(ledger_store, "foreign@example.com") == settings.TRIAL_CREDITS


@pytest.mark.asyncio
async def test_uninitialised_store_still_answers_success(monkeypatch):
    app.dependency_overrides.clear()
    monkeypatch.setattr(app.state, "store", None, raising=False)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/webhooks/subscription",
            json={"event": "subscription-trial-start", "buyer_email": "early@example.com"},
        )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["processed"] is False
    assert "not been initialised" in payload["error"]
