"""
schemas/expense_schema.py — Marshmallow schemas for expense endpoints.

Validation responsibility:
  - This file (request shape, 400):
      - Field types, lengths, enum values, decimal precision
      - currency normalised to upper case, 3–10 letters
      - CUSTOM_SPLITS_SENT_FOR_EQUAL — custom_splits with split_type='equal'
      - CUSTOM_SPLITS_REQUIRED       — empty custom_splits list for
                                       percent/custom (an absent list is fine:
                                       the split falls back to equal)
      - DUPLICATE_SPLIT_USER         — same user twice in custom_splits
      - DUPLICATE_PARTICIPANT        — same user twice in participant_ids
  - services/expense_service.py (needs the group, 404 / warnings):
      - GROUP_NOT_FOUND, EXPENSE_NOT_FOUND, EXPENSE_DELETED
      - PERCENT_SUM_NOT_100, CUSTOM_SUM_MISMATCH, PAYER_SUM_MISMATCH warnings

Payers and participants are NOT checked against the group's participant
list: the ledger silently leaves non-participants out of the balances.

IMPORTANT: Inherits from marshmallow.Schema directly — see extensions.py.
"""

from __future__ import annotations

from datetime import timezone
from decimal import Decimal

from marshmallow import (
    Schema,
    ValidationError,
    fields,
    post_load,
    validate,
    validates_schema,
)

from ledger_service.app.errors import ErrorCode
from ledger_service.app.models.expense import SplitType


# ── Shared validators ──────────────────────────────────────────────────────

# Largest value a Numeric(12, 2) column holds.
MAX_AMOUNT = Decimal("9999999999.99")


def _validate_monetary_amount(value: Decimal) -> None:
    """
    Strictly positive, at most MAX_AMOUNT, at most 2 decimal places.
    Input with more decimals is REJECTED, never rounded.
    """
    if value <= Decimal("0"):
        raise ValidationError("Amount must be greater than zero.")
    if value > MAX_AMOUNT:
        raise ValidationError(f"Amount must not exceed {MAX_AMOUNT}.")

    # Decimal("10.123").as_tuple().exponent == -3 → 3 dp → reject
    if value.as_tuple().exponent < -2:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


def _validate_split_value(value: Decimal) -> None:
    """Weights, percentages and custom amounts: non-negative, bounded, max 4 dp."""
    if value < Decimal("0"):
        raise ValidationError("Split values must not be negative.")
    if value > MAX_AMOUNT:
        raise ValidationError(f"Split values must not exceed {MAX_AMOUNT}.")
    if value.as_tuple().exponent < -4:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


def _validate_user_id(value: str) -> None:
    if not value.strip():
        raise ValidationError("user_id must not be blank.")


_currency_field_validate = validate.Regexp(
    r"^\s*[A-Za-z]{3,10}\s*$",
    error=ErrorCode.INVALID_CURRENCY,
)


def _check_unique(user_ids: list[str], code: str, field_name: str) -> None:
    if len(user_ids) != len(set(user_ids)):
        raise ValidationError({field_name: [code]})


# ── Sub-schemas ────────────────────────────────────────────────────────────

class PayerInputSchema(Schema):
    """One entry of the `payers` array."""

    user_id = fields.Str(
        required=True,
        validate=[validate.Length(min=1, max=128), _validate_user_id],
    )

    amount = fields.Decimal(
        required=True,
        validate=_validate_monetary_amount,
    )


class SplitEntrySchema(Schema):
    """
    One entry of the `custom_splits` array. `value` means:
      shares  → weight
      percent → percentage of the amount
      custom  → literal amount owed
    """

    user_id = fields.Str(
        required=True,
        validate=[validate.Length(min=1, max=128), _validate_user_id],
    )

    value = fields.Decimal(
        required=True,
        validate=_validate_split_value,
    )


def _check_custom_splits(split_type: SplitType, custom_splits: list | None) -> None:
    """Request-shape rules shared by create and patch."""
    if custom_splits is None:
        return

    if split_type == SplitType.EQUAL:
        raise ValidationError({"custom_splits": [ErrorCode.CUSTOM_SPLITS_SENT_FOR_EQUAL]})

    if not custom_splits and split_type in (SplitType.PERCENT, SplitType.CUSTOM):
        raise ValidationError({"custom_splits": [ErrorCode.CUSTOM_SPLITS_REQUIRED]})

    _check_unique(
        [s["user_id"] for s in custom_splits],
        ErrorCode.DUPLICATE_SPLIT_USER,
        "custom_splits",
    )


# ── Create expense ─────────────────────────────────────────────────────────

class CreateExpenseSchema(Schema):
    """POST /groups/:id/expenses"""

    description = fields.Str(
        load_default="",
        validate=validate.Length(max=255),
    )

    amount = fields.Decimal(
        required=True,
        validate=_validate_monetary_amount,
    )

    currency = fields.Str(
        required=True,
        validate=_currency_field_validate,
    )

    payers = fields.List(
        fields.Nested(PayerInputSchema),
        required=True,
        validate=validate.Length(min=1, error="At least one payer is required."),
    )

    participant_ids = fields.List(
        fields.Str(validate=[validate.Length(min=1, max=128), _validate_user_id]),
        required=True,
        validate=validate.Length(min=1, error="At least one participant is required."),
    )

    split_type = fields.Enum(
        SplitType,
        load_default=SplitType.EQUAL,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_SPLIT_TYPE},
    )

    custom_splits = fields.List(
        fields.Nested(SplitEntrySchema),
        load_default=None,
    )

    # Business date; defaults to "now" in the service when omitted.
    date = fields.AwareDateTime(
        load_default=None,
        default_timezone=timezone.utc,
    )

    @validates_schema
    def validate_split_coherence(self, data: dict, **kwargs) -> None:
        _check_unique(
            data.get("participant_ids") or [],
            ErrorCode.DUPLICATE_PARTICIPANT,
            "participant_ids",
        )
        _check_custom_splits(
            data.get("split_type", SplitType.EQUAL),
            data.get("custom_splits"),
        )

    @post_load
    def normalize(self, data: dict, **kwargs) -> dict:
        data["currency"] = data["currency"].strip().upper()
        return data


# ── Patch expense ──────────────────────────────────────────────────────────

class PatchExpenseSchema(Schema):
    """
    PATCH /expenses/:id — every field optional, only provided fields change.

    Split rules:
      - split_type → 'equal': custom_splits must be absent; stored entries
        are dropped by the service.
      - split_type → percent/custom without custom_splits: the stored
        entries are kept if the type is unchanged, otherwise the split
        falls back to equal.
    """

    description = fields.Str(validate=validate.Length(max=255))

    amount = fields.Decimal(validate=_validate_monetary_amount)

    currency = fields.Str(validate=_currency_field_validate)

    payers = fields.List(
        fields.Nested(PayerInputSchema),
        validate=validate.Length(min=1, error="At least one payer is required."),
    )

    participant_ids = fields.List(
        fields.Str(validate=[validate.Length(min=1, max=128), _validate_user_id]),
        validate=validate.Length(min=1, error="At least one participant is required."),
    )

    split_type = fields.Enum(
        SplitType,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_SPLIT_TYPE},
    )

    custom_splits = fields.List(
        fields.Nested(SplitEntrySchema),
        allow_none=True,
    )

    date = fields.AwareDateTime(default_timezone=timezone.utc)

    @validates_schema
    def validate_patch_coherence(self, data: dict, **kwargs) -> None:
        if "participant_ids" in data:
            _check_unique(
                data["participant_ids"],
                ErrorCode.DUPLICATE_PARTICIPANT,
                "participant_ids",
            )

        split_type = data.get("split_type")
        custom_splits = data.get("custom_splits")

        if split_type is None:
            # Type unchanged: only shape rules that do not depend on it.
            if custom_splits is not None:
                _check_unique(
                    [s["user_id"] for s in custom_splits],
                    ErrorCode.DUPLICATE_SPLIT_USER,
                    "custom_splits",
                )
            return

        _check_custom_splits(split_type, custom_splits)

    @post_load
    def normalize(self, data: dict, **kwargs) -> dict:
        if "currency" in data:
            data["currency"] = data["currency"].strip().upper()
        return data
