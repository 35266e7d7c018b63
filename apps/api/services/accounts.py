"""Resolve identity-provider emails to ledger accounts."""

from __future__ import annotations

import logging
from typing import Optional
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import LedgerStore
from models.account import Account

logger = logging.getLogger(__name__)


async def find_account_by_email(db: AsyncSession, email: str) -> Optional[Account]:
    """Return the account stored under ``email`` (exact match) or ``None``.

    Duplicate rows are a data-integrity anomaly; the oldest one wins and the
    duplicates are left in place.
    """
    result = await db.execute(
        select(Account).where(Account.email == email).order_by(Account.created_at.asc(), Account.id.asc())
    )
    accounts = result.scalars().all()
    if not accounts:
        return None
    if len(accounts) > 1:
        logger.warning(
            "Multiple accounts found for email %s (%d rows); using account %s",
            email,
            len(accounts),
            accounts[0].id,
        )
    return accounts[0]


async def create_account(db: AsyncSession, email: str, account_id: Optional[str] = None) -> Account:
    account = Account(
        id=account_id or str(uuid.uuid4()),
        email=email,
        credits=0,
        subscription_tier=None,
        subscription_period=None,
        subscription_expires_at=None,
    )
    db.add(account)
    await db.commit()
    await db.refresh(account)
    logger.info("account_created id=%s email=%s", account.id, email)
    return account


async def get_or_create_user(
    store: LedgerStore,
    email: str,
    external_id: Optional[str] = None,
) -> Account:
    """Look up the account for ``email``, creating an empty one if absent.

    ``external_id`` keys a newly created account; an existing account keeps its
    own id even when it differs from ``external_id``.
    """
    async with store.session() as db:
        account = await find_account_by_email(db, email)
        if account is not None:
            if external_id and account.id != external_id:
                logger.warning(
                    "Account %s for %s does not match identity-provider id %s; ids are not reconciled",
                    account.id,
                    email,
                    external_id,
                )
            return account

        return await create_or_find_account(db, email, external_id)


async def create_or_find_account(db: AsyncSession, email: str, account_id: Optional[str] = None) -> Account:
    """Create the account, falling back to the row a concurrent writer inserted."""
    try:
        return await create_account(db, email, account_id)
    except IntegrityError:
        # A concurrent request created the row first.
        await db.rollback()
        account = await find_account_by_email(db, email)
        if account is None:
            raise
        return account
