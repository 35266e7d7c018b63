"""Authorization decisions for billed actions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from config import settings
from database import LedgerStore
from models.account import SubscriptionTier
from services.credits import can_access_tier_feature, has_enough_credits


REASON_OK = "ok"
REASON_INSUFFICIENT_CREDITS = "insufficient_credits"
REASON_TIER_RESTRICTED = "tier_restricted"


@dataclass
class AccessDecision:
    allowed: bool
    reason: str
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_detail(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "message": self.message,
            "manage_subscription_url": settings.SUBSCRIPTION_MANAGEMENT_URL,
            **self.details,
        }


async def authorize(
    store: LedgerStore,
    email: str,
    required_credits: int,
    required_tier: Optional[SubscriptionTier] = None,
) -> AccessDecision:
    """Combine the balance check and the optional tier check.

    Both checks are fail-open, so a store outage yields an allowed decision.
    """
    if not await has_enough_credits(store, email, required_credits):
        return AccessDecision(
            allowed=False,
            reason=REASON_INSUFFICIENT_CREDITS,
            message=(
                f"This action requires {required_credits} credit(s). "
                "Purchase more credits to continue."
            ),
            details={"required_credits": required_credits},
        )

    if required_tier is not None and not await can_access_tier_feature(store, email, required_tier):
        return AccessDecision(
            allowed=False,
            reason=REASON_TIER_RESTRICTED,
            message=(
                f"This feature is available on the {required_tier.value.title()} plan and above. "
                "Upgrade your subscription to continue."
            ),
            details={"required_tier": required_tier.value},
        )

    return AccessDecision(allowed=True, reason=REASON_OK)
