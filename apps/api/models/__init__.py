"""Models package."""

from .account import Account, Subscription, SubscriptionPeriod, SubscriptionTier
from .credit_transaction import CreditTransaction, TransactionKind
from .webhook_event import ProcessedWebhookEvent
