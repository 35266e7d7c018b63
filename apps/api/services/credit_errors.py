"""Error taxonomy for the credit ledger."""

from __future__ import annotations

from typing import Any, Dict, Optional


class CreditError(Exception):
    """Base ledger error carrying a stable machine-readable code."""

    code = "CREDIT_ERROR"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class StoreUnavailable(CreditError):
    """The persistence layer could not be reached."""

    code = "STORE_UNAVAILABLE"
    status_code = 503


class UserNotFound(CreditError):
    code = "USER_NOT_FOUND"
    status_code = 404


class InsufficientCredits(CreditError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}. "
            "Top up credits to continue."
        )
        self.required = required
        self.available = available

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update({"required": self.required, "available": self.available})
        return detail


class ValidationError(CreditError):
    """Malformed ledger, webhook or API input."""

    code = "VALIDATION_ERROR"
    status_code = 422


class TransactionLogFailure(CreditError):
    """Appending a transaction row failed after the balance was already written.

    Never propagated to callers of the balance operations.
    """

    code = "TRANSACTION_LOG_FAILURE"
