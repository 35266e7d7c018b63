import pytest

from config import settings
from services.accounts import get_or_create_user
from services.credits import add_credits, get_credit_balance
from services.session_token import create_session_token


ADMIN_KEY = "test-admin-key"


def _auth_header(email: str) -> dict:
    return {"Authorization": f"Bearer {create_session_token('acct-' + email, email)['token']}"}


@pytest.fixture
def admin_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.mark.asyncio
async def test_credit_summary_creates_account_and_lists_entries(api_client, ledger_store):
    response = await api_client.get("/billing/credits", headers=_auth_header("summary@example.com"))
    assert response.status_code == 200
    payload = response.json()
    assert payload["balance"] == 0
    assert payload["recent_entries"] == []
    assert payload["account"]["subscription"] is None
    assert payload["costs"] == {"single_portrait": 1, "multi_portrait": 2}

    await add_credits(ledger_store, "summary@example.com", 5, "monthly", tier="premium")
    response = await api_client.get("/billing/credits", headers=_auth_header("summary@example.com"))
    payload = response.json()
    assert payload["balance"] == 5
    assert payload["account"]["subscription"]["tier"] == "premium"
    assert payload["recent_entries"][0]["kind"] == "purchase"
    assert payload["recent_entries"][0]["amount"] == 5


@pytest.mark.asyncio
async def test_balance_endpoint_reads_current_balance(api_client, ledger_store):
    await get_or_create_user(ledger_store, "balance@example.com")
    await add_credits(ledger_store, "balance@example.com", 4)

    known = await api_client.get("/billing/balance", headers=_auth_header("balance@example.com"))
    assert known.json() == {"credits": 4}

    unknown = await api_client.get("/billing/balance", headers=_auth_header("nobody@example.com"))
    assert unknown.status_code == 200
    assert unknown.json() == {"credits": 0}


@pytest.mark.asyncio
async def test_balance_endpoint_never_fails_during_outage(outage_client):
    degraded = await outage_client.get("/billing/balance", headers=_auth_header("nobody@example.com"))
    assert degraded.status_code == 200
    assert degraded.json() == {"credits": 0}


@pytest.mark.asyncio
async def test_credit_summary_surfaces_store_outage(outage_client):
    response = await outage_client.get("/billing/credits", headers=_auth_header("down@example.com"))
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "STORE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_access_endpoint_returns_structured_decision(api_client, ledger_store):
    await get_or_create_user(ledger_store, "gate@example.com")
    await add_credits(ledger_store, "gate@example.com", 5, "monthly", tier="basic")

    response = await api_client.get(
        "/billing/access?credits=2&tier=standard",
        headers=_auth_header("gate@example.com"),
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["allowed"] is False
    assert payload["reason"] == "tier_restricted"
    assert payload["manage_subscription_url"] == settings.SUBSCRIPTION_MANAGEMENT_URL


@pytest.mark.asyncio
async def test_topup_requires_admin_key(api_client, admin_key):
    response = await api_client.post(
        "/billing/topup",
        json={"email": "x@example.com", "pack": "trial"},
        headers={"X-Admin-Key": "wrong"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_topup_disabled_without_admin_key(api_client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
    response = await api_client.post("/billing/topup", json={"email": "x@example.com"})
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_topup_packs(api_client, ledger_store, admin_key):
    trial = await api_client.post(
        "/billing/topup",
        json={"email": "packs@example.com", "pack": "trial", "external_id": "idp-packs"},
        headers=admin_key,
    )
    assert trial.status_code == 200
    assert trial.json()["credits_added"] == settings.TRIAL_CREDITS
    assert trial.json()["account"]["id"] == "idp-packs"

    yearly = await api_client.post(
        "/billing/topup",
        json={"email": "packs@example.com", "pack": "yearly", "tier": "premium"},
        headers=admin_key,
    )
    assert yearly.status_code == 200
    body = yearly.json()
    assert body["credits_added"] == settings.YEARLY_CREDITS
    assert body["balance_after"] == settings.TRIAL_CREDITS + settings.YEARLY_CREDITS
    assert body["account"]["subscription"]["period"] == "yearly"
    assert body["account"]["subscription"]["tier"] == "premium"


@pytest.mark.asyncio
async def test_custom_topup_requires_credits(api_client, admin_key):
    response = await api_client.post(
        "/billing/topup",
        json={"email": "custom@example.com", "pack": "custom"},
        headers=admin_key,
    )
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_refund_unknown_account_returns_404(api_client, admin_key):
    response = await api_client.post(
        "/billing/refund",
        json={"email": "ghost@example.com", "credits": 1},
        headers=admin_key,
    )
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "USER_NOT_FOUND"


@pytest.mark.asyncio
async def test_refund_restores_credits(api_client, ledger_store, admin_key):
    await get_or_create_user(ledger_store, "refund@example.com")
    await add_credits(ledger_store, "refund@example.com", 1)

    response = await api_client.post(
        "/billing/refund",
        json={"email": "refund@example.com", "credits": 2, "reason": "Image never delivered"},
        headers=admin_key,
    )

    assert response.status_code == 200
    assert response.json()["balance_after"] == 3
    assert await get_credit_balance(ledger_store, "refund@example.com") == 3
