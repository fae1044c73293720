"""
errors.py — AppError base class and error code registry.

Every error returned by the ledger API uses a code defined here.
Do not raise strings or generic exceptions from service or route code.

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - The reconciliation engine never surfaces errors to whoever wrote the
    expense; it logs them and leaves the group marked for the next sweep.
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"AppError(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


class MalformedExpenseError(AppError):
    """
    An expense record cannot be turned into balance deltas (missing currency,
    non-positive amount, empty split entries where the split type needs them).

    Raised by the split resolver. Recompute folds catch it, log it and skip
    that one expense's contribution instead of failing the whole group.
    """

    def __init__(self, expense_id, reason: str) -> None:
        super().__init__(
            ErrorCode.MALFORMED_EXPENSE,
            f"Expense {expense_id} is malformed: {reason}",
            422,
        )
        self.expense_id = expense_id
        self.reason     = reason


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
#
# IMPORTANT: these are the string values sent in the API response.
# Do not rename them without a major version bump.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD                 = "MISSING_FIELD"
    INVALID_FIELD                 = "INVALID_FIELD"
    INVALID_AMOUNT_PRECISION      = "INVALID_AMOUNT_PRECISION"
    INVALID_SPLIT_TYPE            = "INVALID_SPLIT_TYPE"
    INVALID_CURRENCY              = "INVALID_CURRENCY"
    CUSTOM_SPLITS_SENT_FOR_EQUAL  = "CUSTOM_SPLITS_SENT_FOR_EQUAL"
    CUSTOM_SPLITS_REQUIRED        = "CUSTOM_SPLITS_REQUIRED"
    DUPLICATE_SPLIT_USER          = "DUPLICATE_SPLIT_USER"
    DUPLICATE_PARTICIPANT         = "DUPLICATE_PARTICIPANT"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    GROUP_NOT_FOUND               = "GROUP_NOT_FOUND"
    EXPENSE_NOT_FOUND             = "EXPENSE_NOT_FOUND"

    # ── Business Rule Violations (422) ────────────────────────────────────
    EXPENSE_DELETED               = "EXPENSE_DELETED"
    MALFORMED_EXPENSE             = "MALFORMED_EXPENSE"

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    LEDGER_LOCKED                 = "LEDGER_LOCKED"

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR                = "INTERNAL_ERROR"


# ── Warning Code Registry ──────────────────────────────────────────────────
#
# Warnings are returned alongside a 2xx response in the `warnings` array.
# They do not block the request.
# ──────────────────────────────────────────────────────────────────────────

class WarningCode:

    # Percent split entries do not add up to 100. Accepted as entered; the
    # split resolver trusts the caller's percentages.
    PERCENT_SUM_NOT_100 = "PERCENT_SUM_NOT_100"

    # Custom split amounts do not add up to the expense amount.
    CUSTOM_SUM_MISMATCH = "CUSTOM_SUM_MISMATCH"

    # Payer amounts do not add up to the expense amount. Each payer is still
    # credited with exactly what they entered.
    PAYER_SUM_MISMATCH  = "PAYER_SUM_MISMATCH"
