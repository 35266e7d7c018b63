"""Credit ledger operations: balance queries, debits, grants and refunds.

Read-only checks never raise; they degrade to a safe default and log.
Balance mutations always raise. Transaction-log appends run after the balance
write has committed and their failures are logged, never propagated.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
import logging

from sqlalchemy import update
from sqlalchemy.future import select

from config import settings
from database import LedgerStore
from models.account import Account, SubscriptionPeriod, SubscriptionTier
from models.credit_transaction import CreditTransaction, TransactionKind
from services.accounts import create_or_find_account, find_account_by_email
from services.credit_errors import (
    InsufficientCredits,
    TransactionLogFailure,
    UserNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Tiers that fail a multi-subject feature check. Accounts without a subscription
# (trial and legacy users) pass.
DEFAULT_FEATURE_TIER = SubscriptionTier.STANDARD


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def subscription_expiry(period: SubscriptionPeriod, now: Optional[datetime] = None) -> datetime:
    """Return ``now`` plus one calendar month or year, clamped to month end."""
    current = now or _utcnow()
    if period == SubscriptionPeriod.YEARLY:
        return _add_months(current, 12)
    return _add_months(current, 1)


def _require_positive_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"amount must be a positive integer, got {amount!r}")
    return amount


def _coerce_period(value: Union[str, SubscriptionPeriod, None]) -> Optional[SubscriptionPeriod]:
    if value is None:
        return None
    try:
        return SubscriptionPeriod(str(getattr(value, "value", value)).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown subscription period: {value!r}") from exc


def _coerce_tier(value: Union[str, SubscriptionTier, None]) -> Optional[SubscriptionTier]:
    if value is None:
        return None
    try:
        return SubscriptionTier(str(getattr(value, "value", value)).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown subscription tier: {value!r}") from exc


async def _log_transaction(
    store: LedgerStore,
    account_id: str,
    amount: int,
    kind: TransactionKind,
    description: str,
) -> bool:
    try:
        async with store.session() as db:
            db.add(
                CreditTransaction(
                    account_id=account_id,
                    amount=int(amount),
                    kind=kind.value,
                    description=description,
                )
            )
            await db.commit()
        return True
    except Exception as exc:
        failure = TransactionLogFailure(f"Failed to log credit transaction: {exc}")
        logger.error(
            "%s account=%s amount=%s kind=%s code=%s",
            failure.message,
            account_id,
            amount,
            kind.value,
            failure.code,
        )
        return False


async def get_credit_balance(store: LedgerStore, email: str) -> int:
    """Return the stored balance, or 0 for unknown emails and store errors."""
    try:
        async with store.session() as db:
            account = await find_account_by_email(db, email)
    except Exception as exc:
        logger.warning("Error getting credit balance for %s, defaulting to 0: %s", email, exc)
        return 0
    return int(account.credits or 0) if account else 0


async def has_enough_credits(store: LedgerStore, email: str, required: int = 1) -> bool:
    """Return whether ``email`` can afford ``required`` credits.

    Store errors allow the action: a billing-check outage must not block
    generation for every user. A malformed ``required`` fails the check.
    """
    try:
        needed = int(required)
    except (TypeError, ValueError):
        logger.warning("Invalid credit requirement %r for %s; denying", required, email)
        return False
    try:
        async with store.session() as db:
            account = await find_account_by_email(db, email)
    except Exception as exc:
        logger.warning("Error checking credits for %s, defaulting to allow: %s", email, exc)
        return True
    if account is None:
        return False
    return int(account.credits or 0) >= needed


async def can_access_tier_feature(
    store: LedgerStore,
    email: str,
    required_tier: SubscriptionTier = DEFAULT_FEATURE_TIER,
) -> bool:
    """Return whether the account's subscription tier unlocks a gated feature."""
    try:
        async with store.session() as db:
            account = await find_account_by_email(db, email)
            tier = account.tier if account is not None else None
    except Exception as exc:
        logger.warning("Error checking subscription tier for %s, defaulting to allow: %s", email, exc)
        return True
    if account is None:
        return False
    if tier is None:
        return True
    return tier.rank >= required_tier.rank


async def use_credits(
    store: LedgerStore,
    email: str,
    amount: int = 1,
    *,
    description: str = "Image generation",
) -> Account:
    """Debit ``amount`` credits and append a usage transaction."""
    debit = _require_positive_amount(amount)

    async with store.session() as db:
        account = await find_account_by_email(db, email)
        if account is None:
            raise UserNotFound(f"No account for {email}")

        result = await db.execute(
            update(Account)
            .where(Account.id == account.id, Account.credits >= debit)
            .values(credits=Account.credits - debit, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            await db.rollback()
            await db.refresh(account)
            raise InsufficientCredits(required=debit, available=int(account.credits or 0))

        await db.commit()
        await db.refresh(account)

    await _log_transaction(store, account.id, -debit, TransactionKind.USAGE, description)
    logger.info("credits_used email=%s amount=%s balance_after=%s", email, debit, account.credits)
    return account


async def add_credits(
    store: LedgerStore,
    email: str,
    amount: int,
    subscription_period: Union[str, SubscriptionPeriod, None] = None,
    external_id: Optional[str] = None,
    *,
    tier: Union[str, SubscriptionTier, None] = None,
    description: Optional[str] = None,
) -> Account:
    """Grant ``amount`` credits, optionally (re)starting a subscription period.

    Not idempotent: every call grants. Replayed events must be filtered before
    they reach this function.
    """
    grant = _require_positive_amount(amount)
    period = _coerce_period(subscription_period)
    resolved_tier = _coerce_tier(tier)
    if resolved_tier is not None and period is None:
        raise ValidationError("A subscription tier requires a subscription period.")
    if period is not None and resolved_tier is None:
        resolved_tier = _coerce_tier(settings.DEFAULT_SUBSCRIPTION_TIER)

    now = _utcnow()
    values: Dict[str, Any] = {"credits": Account.credits + grant, "updated_at": now}
    if period is not None:
        values.update(
            subscription_tier=resolved_tier.value,
            subscription_period=period.value,
            subscription_expires_at=subscription_expiry(period, now),
        )

    async with store.session() as db:
        account = await find_account_by_email(db, email)
        if account is None:
            if not external_id:
                raise UserNotFound(f"No account for {email} and no identity id to create one")
            account = await create_or_find_account(db, email, external_id)

        result = await db.execute(
            update(Account)
            .where(Account.id == account.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            await db.rollback()
            raise UserNotFound(f"Account for {email} disappeared during credit grant")

        await db.commit()
        await db.refresh(account)

    label = period.value if period is not None else "manual"
    await _log_transaction(
        store,
        account.id,
        grant,
        TransactionKind.PURCHASE,
        description or f"{label} credit purchase",
    )
    logger.info(
        "credits_added email=%s amount=%s period=%s balance_after=%s",
        email,
        grant,
        label,
        account.credits,
    )
    return account


async def refund_credits(store: LedgerStore, email: str, amount: int, *, reason: str) -> Account:
    """Return credits for a debit whose output never reached the user."""
    refund = _require_positive_amount(amount)

    async with store.session() as db:
        account = await find_account_by_email(db, email)
        if account is None:
            raise UserNotFound(f"No account for {email}")
        await db.execute(
            update(Account)
            .where(Account.id == account.id)
            .values(credits=Account.credits + refund, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(account)

    await _log_transaction(store, account.id, refund, TransactionKind.REFUND, reason)
    logger.info("credits_refunded email=%s amount=%s reason=%s", email, refund, reason)
    return account


async def list_transactions(store: LedgerStore, email: str, limit: int = 30) -> List[CreditTransaction]:
    async with store.session() as db:
        account = await find_account_by_email(db, email)
        if account is None:
            raise UserNotFound(f"No account for {email}")
        result = await db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.account_id == account.id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(max(int(limit), 1))
        )
        return list(result.scalars().all())


async def get_credit_summary(store: LedgerStore, email: str) -> Dict[str, Any]:
    async with store.session() as db:
        account = await find_account_by_email(db, email)
    if account is None:
        raise UserNotFound(f"No account for {email}")
    entries = await list_transactions(store, email)
    return {
        "account": account.to_dict(),
        "balance": int(account.credits or 0),
        "costs": {
            "single_portrait": max(int(settings.CREDIT_COST_SINGLE_PORTRAIT), 0),
            "multi_portrait": max(int(settings.CREDIT_COST_MULTI_PORTRAIT), 0),
        },
        "manage_subscription_url": settings.SUBSCRIPTION_MANAGEMENT_URL,
        "recent_entries": [
            {
                "id": entry.id,
                "kind": entry.kind,
                "amount": entry.amount,
                "description": entry.description,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
