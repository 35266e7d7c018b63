import pytest

from models.account import SubscriptionTier
from services.access_gate import (
    REASON_INSUFFICIENT_CREDITS,
    REASON_OK,
    REASON_TIER_RESTRICTED,
    authorize,
)
from services.accounts import get_or_create_user
from services.credits import add_credits


@pytest.mark.asyncio
async def test_authorize_reports_insufficient_credits_before_tier(ledger_store):
    await get_or_create_user(ledger_store, "poor-basic@example.com")
    await add_credits(ledger_store, "poor-basic@example.com", 1, "monthly", tier="basic")

    decision = await authorize(ledger_store, "poor-basic@example.com", 2, SubscriptionTier.STANDARD)

    assert decision.allowed is False
    assert decision.reason == REASON_INSUFFICIENT_CREDITS
    assert decision.to_detail()["required_credits"] == 2
    assert decision.to_detail()["manage_subscription_url"]


@pytest.mark.asyncio
async def test_authorize_reports_tier_restriction(ledger_store):
    await get_or_create_user(ledger_store, "basic@example.com")
    await add_credits(ledger_store, "basic@example.com", 5, "monthly", tier="basic")

    decision = await authorize(ledger_store, "basic@example.com", 2, SubscriptionTier.STANDARD)

    assert decision.allowed is False
    assert decision.reason == REASON_TIER_RESTRICTED
    assert decision.details["required_tier"] == "standard"
    assert "Upgrade" in decision.message


@pytest.mark.asyncio
async def test_authorize_allows_without_tier_requirement(ledger_store):
    await get_or_create_user(ledger_store, "basic-single@example.com")
    await add_credits(ledger_store, "basic-single@example.com", 5, "monthly", tier="basic")

    decision = await authorize(ledger_store, "basic-single@example.com", 1)

    assert decision.allowed is True
    assert decision.reason == REASON_OK


@pytest.mark.asyncio
async def test_authorize_allows_legacy_account_without_subscription(ledger_store):
    await get_or_create_user(ledger_store, "legacy@example.com")
    await add_credits(ledger_store, "legacy@example.com", 3)

    decision = await authorize(ledger_store, "legacy@example.com", 2, SubscriptionTier.STANDARD)

    assert decision.allowed is True


@pytest.mark.asyncio
async def test_authorize_denies_unknown_account(ledger_store):
    decision = await authorize(ledger_store, "ghost@x.com", 1)

    assert decision.allowed is False
    assert decision.reason == REASON_INSUFFICIENT_CREDITS


@pytest.mark.asyncio
async def test_authorize_fails_open_during_outage(outage_store):
    decision = await authorize(outage_store, "ghost@x.com", 2, SubscriptionTier.PREMIUM)

    assert decision.allowed is True
    assert decision.reason == REASON_OK
