"""Subscription platform webhook receiver.

Every POST is answered with HTTP 200 and ``success: true``, including invalid
payloads and internal errors; the sender retries anything else and a retry
storm would amplify an outage. Failures are visible only in server logs.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError as PayloadValidationError

from config import settings
from database import LedgerStore, get_optional_store
from services.credit_errors import CreditError, StoreUnavailable, ValidationError
from services.subscription_events import (
    SUPPORTED_EVENTS,
    SubscriptionWebhookPayload,
    apply_subscription_event,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _acknowledge_error(message: str, error: str) -> dict:
    return {
        "success": True,
        "processed": False,
        "message": message,
        "error": error,
    }


@router.post("/subscription")
async def subscription_webhook(
    request: Request,
    store: Optional[LedgerStore] = Depends(get_optional_store),
):
    try:
        body = await request.json()
    except ValueError as exc:
        logger.error("Subscription webhook body is not JSON: %s", exc)
        return _acknowledge_error("Webhook received (invalid payload)", "Body is not valid JSON")

    logger.info(
        "Subscription webhook received event=%s email=%s product=%s amount=%s",
        body.get("event") if isinstance(body, dict) else None,
        body.get("buyer_email") if isinstance(body, dict) else None,
        body.get("product_id") if isinstance(body, dict) else None,
        body.get("amount") if isinstance(body, dict) else None,
    )

    try:
        payload = SubscriptionWebhookPayload.model_validate(body)
    except PayloadValidationError as exc:
        failure = ValidationError(f"Missing or invalid webhook fields: {exc.error_count()} error(s)")
        logger.error("Subscription webhook rejected: %s %s", failure.message, exc.errors())
        return _acknowledge_error("Webhook received (invalid payload)", failure.message)

    try:
        if store is None:
            raise StoreUnavailable("Ledger store has not been initialised.")
        outcome = await apply_subscription_event(store, payload)
        return outcome.to_response()
    except CreditError as exc:
        logger.error("Subscription webhook processing failed code=%s: %s", exc.code, exc.message)
        return _acknowledge_error("Webhook received (error in processing)", exc.message)
    except Exception as exc:
        logger.exception("Subscription webhook processing failed: %s", exc)
        return _acknowledge_error("Webhook received (error in processing)", "Internal server error")


@router.get("/subscription")
async def subscription_webhook_info():
    return {
        "message": "Subscription Webhook Endpoint",
        "status": "active",
        "supported_events": list(SUPPORTED_EVENTS),
        "product_mapping": settings.PRODUCT_TIER_MAPPING,
        "deduplication": settings.WEBHOOK_DEDUP_ENABLED,
    }
