import pytest

from config import settings
from services.session_token import create_session_token, decode_session_token


SYNC_SECRET = "identity-sync-secret-for-tests"


@pytest.fixture
def sync_header(monkeypatch):
    monkeypatch.setattr(settings, "IDENTITY_SYNC_SECRET", SYNC_SECRET)
    return {"X-Identity-Sync-Secret": SYNC_SECRET}


@pytest.mark.asyncio
async def test_identity_sync_creates_account_with_external_id(api_client, sync_header):
    response = await api_client.post(
        "/auth/sync",
        json={"email": "signup@example.com", "external_id": "idp-777"},
        headers=sync_header,
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["account_id"] == "idp-777"
    assert payload["credits"] == 0
    claims = decode_session_token(payload["session_token"])
    assert claims["email"] == "signup@example.com"
    assert claims["sub"] == "idp-777"

    me = await api_client.get("/auth/me", headers={"Authorization": f"Bearer {payload['session_token']}"})
    assert me.status_code == 200
    assert me.json()["id"] == "idp-777"


@pytest.mark.asyncio
async def test_identity_sync_rejects_bad_secret(api_client, sync_header):
    response = await api_client.post(
        "/auth/sync",
        json={"email": "signup@example.com"},
        headers={"X-Identity-Sync-Secret": "nope"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_identity_sync_surfaces_store_outage(outage_client, sync_header):
    response = await outage_client.post(
        "/auth/sync",
        json={"email": "signup@example.com"},
        headers=sync_header,
    )
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "STORE_UNAVAILABLE"


def test_session_token_requires_email():
    token = create_session_token("acct-1", "someone@example.com")["token"]
    assert decode_session_token(token)["email"] == "someone@example.com"

    with pytest.raises(ValueError):
        decode_session_token("not-a-token")


@pytest.mark.asyncio
async def test_health_reports_database_up(api_client):
    healthy = await api_client.get("/health")
    assert healthy.status_code == 200
    assert healthy.json()["database"] == "up"


@pytest.mark.asyncio
async def test_health_reports_database_down(outage_client):
    degraded = await outage_client.get("/health")
    assert degraded.status_code == 200
    assert degraded.json()["status"] == "degraded"
    assert degraded.json()["database"].startswith("down")


@pytest.mark.asyncio
async def test_liveness(api_client):
    response = await api_client.get("/health/live")
    assert response.json() == {"alive": True}
