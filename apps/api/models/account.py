"""Account model: one credit balance and subscription state per email."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
import logging
import uuid

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base

logger = logging.getLogger(__name__)


class SubscriptionTier(str, Enum):
    NONE = "none"
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        return _TIER_RANKS[self]


_TIER_RANKS = {
    SubscriptionTier.NONE: 0,
    SubscriptionTier.BASIC: 1,
    SubscriptionTier.STANDARD: 2,
    SubscriptionTier.PREMIUM: 3,
}


class SubscriptionPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class Subscription:
    """An active subscription; accounts without one carry ``None``."""

    tier: SubscriptionTier
    period: SubscriptionPeriod
    expires_at: datetime


class Account(Base):
    """Ledger account keyed by identity-provider email."""

    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    credits = Column(Integer, nullable=False, default=0, server_default="0")
    subscription_tier = Column(String, nullable=True)
    subscription_period = Column(String, nullable=True)
    subscription_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    transactions = relationship(
        "CreditTransaction",
        back_populates="account",
        order_by="CreditTransaction.created_at",
    )

    @property
    def subscription(self) -> Optional[Subscription]:
        # Rows written outside this service may be partially filled; treat those as unsubscribed.
        if not (self.subscription_tier and self.subscription_period and self.subscription_expires_at):
            return None
        try:
            tier = SubscriptionTier(self.subscription_tier)
            period = SubscriptionPeriod(self.subscription_period)
        except ValueError:
            logger.warning(
                "Account %s has unrecognised subscription tier=%r period=%r; treating as unsubscribed",
                self.id,
                self.subscription_tier,
                self.subscription_period,
            )
            return None
        return Subscription(tier=tier, period=period, expires_at=self.subscription_expires_at)

    @property
    def tier(self) -> Optional[SubscriptionTier]:
        subscription = self.subscription
        return subscription.tier if subscription else None

    def to_dict(self) -> dict:
        subscription = self.subscription
        return {
            "id": self.id,
            "email": self.email,
            "credits": int(self.credits or 0),
            "subscription": (
                {
                    "tier": subscription.tier.value,
                    "period": subscription.period.value,
                    "expires_at": subscription.expires_at.isoformat(),
                }
                if subscription
                else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
