"""Translate subscription-platform webhook events into credit grants.

Only two event shapes mutate the ledger: a trial start and a paid recurring
payment. Everything else is acknowledged and ignored so the sender does not
retry it. The allow-list does not deduplicate replays of the same delivery;
``WEBHOOK_DEDUP_ENABLED`` turns on event-id claiming for senders that supply a
stable ``event_id``.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from config import settings
from database import LedgerStore
from models.account import Account, SubscriptionPeriod, SubscriptionTier
from models.webhook_event import ProcessedWebhookEvent
from services.accounts import get_or_create_user
from services.credits import add_credits

logger = logging.getLogger(__name__)

EVENT_TRIAL_START = "subscription-trial-start"
EVENT_PAYMENT = "subscription-payment"
SUPPORTED_EVENTS = (EVENT_TRIAL_START, EVENT_PAYMENT)


class SubscriptionWebhookPayload(BaseModel):
    """Inbound webhook body; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    event: str = Field(min_length=1)
    buyer_email: str = Field(min_length=3)
    amount: Optional[Union[float, str]] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    subscription_type: Optional[str] = None
    event_id: Optional[str] = None

    @field_validator("event", "buyer_email", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("product_id", "event_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        return str(value).strip()


@dataclass(frozen=True)
class CreditGrant:
    credits: int
    description: str
    period: Optional[SubscriptionPeriod] = None
    tier: Optional[SubscriptionTier] = None


@dataclass
class WebhookOutcome:
    processed: bool
    message: str
    account: Optional[Account] = None
    grant: Optional[CreditGrant] = None
    duplicate: bool = False

    def to_response(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "success": True,
            "processed": self.processed,
            "message": self.message,
        }
        if self.duplicate:
            response["duplicate"] = True
        if self.account is not None:
            response["user"] = {
                "email": self.account.email,
                "credits": int(self.account.credits or 0),
                "subscription_tier": self.account.tier.value if self.account.tier else None,
                "subscription_period": self.grant.period.value if self.grant and self.grant.period else None,
            }
        return response


def parse_amount(value: Any) -> float:
    """Parse a payment amount; unparseable values count as zero."""
    if value is None:
        return 0.0
    try:
        amount = float(str(value).strip() or 0)
    except ValueError:
        return 0.0
    return amount if amount == amount else 0.0


def _is_yearly(subscription_type: Optional[str]) -> bool:
    return (subscription_type or "").strip().lower() in {"yearly", "annual", "annually", "year"}


def _product_config(product_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not product_id:
        return None
    return settings.PRODUCT_TIER_MAPPING.get(product_id)


def translate_event(payload: SubscriptionWebhookPayload) -> Optional[CreditGrant]:
    """Map an event to the grant it entitles, or ``None`` when it is ignored."""
    event = payload.event.lower()

    if event == EVENT_TRIAL_START:
        return CreditGrant(
            credits=int(settings.TRIAL_CREDITS),
            description="trial credit grant",
        )

    if event == EVENT_PAYMENT and parse_amount(payload.amount) > 0:
        period = SubscriptionPeriod.YEARLY if _is_yearly(payload.subscription_type) else SubscriptionPeriod.MONTHLY
        product = _product_config(payload.product_id)
        if product:
            tier = SubscriptionTier(product["tier"])
            credits = int(product["yearly_credits"] if period == SubscriptionPeriod.YEARLY else product["monthly_credits"])
        else:
            tier = SubscriptionTier(settings.DEFAULT_SUBSCRIPTION_TIER)
            credits = int(settings.YEARLY_CREDITS if period == SubscriptionPeriod.YEARLY else settings.MONTHLY_CREDITS)
        return CreditGrant(
            credits=credits,
            description=f"{period.value} subscription payment ({tier.value})",
            period=period,
            tier=tier,
        )

    return None


async def claim_webhook_event(store: LedgerStore, event_id: str, event_type: str, email: Optional[str]) -> bool:
    """Record ``event_id``; return False when it was already claimed."""
    async with store.session() as db:
        db.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type, email=email))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return False
    return True


async def release_webhook_event(store: LedgerStore, event_id: str) -> None:
    try:
        async with store.session() as db:
            await db.execute(delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id == event_id))
            await db.commit()
    except Exception as exc:
        logger.error("Failed to release webhook event claim %s: %s", event_id, exc)


async def apply_subscription_event(store: LedgerStore, payload: SubscriptionWebhookPayload) -> WebhookOutcome:
    grant = translate_event(payload)
    if grant is None:
        logger.info(
            "Subscription event ignored event=%s email=%s amount=%s",
            payload.event,
            payload.buyer_email,
            payload.amount,
        )
        return WebhookOutcome(
            processed=False,
            message=f"Event '{payload.event}' acknowledged but not processed",
        )

    claimed = False
    if settings.WEBHOOK_DEDUP_ENABLED and payload.event_id:
        if not await claim_webhook_event(store, payload.event_id, payload.event, payload.buyer_email):
            logger.info("Duplicate subscription event %s for %s skipped", payload.event_id, payload.buyer_email)
            return WebhookOutcome(
                processed=False,
                message=f"Event '{payload.event_id}' already processed",
                duplicate=True,
            )
        claimed = True

    try:
        await get_or_create_user(store, payload.buyer_email)
        account = await add_credits(
            store,
            payload.buyer_email,
            grant.credits,
            grant.period,
            tier=grant.tier,
            description=grant.description,
        )
    except Exception:
        if claimed:
            await release_webhook_event(store, payload.event_id)
        raise

    logger.info(
        "Subscription event processed event=%s email=%s credits=%s tier=%s",
        payload.event,
        payload.buyer_email,
        grant.credits,
        grant.tier.value if grant.tier else None,
    )
    return WebhookOutcome(
        processed=True,
        message=f"{payload.event}: {grant.credits} credits added",
        account=account,
        grant=grant,
    )
