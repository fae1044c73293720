"""
tests/unit/test_expense_schemas.py — Unit tests for the marshmallow request schemas.

What this file proves:
  - Valid payloads load, with Decimal amounts and an upper-cased currency
  - Amount precision, currency format and split type are checked
  - custom_splits rules: forbidden for equal, non-empty for percent/custom,
    optional for shares, unique users
  - participant_ids must be unique
  - PATCH accepts partial payloads and only type-independent checks run
    when split_type is absent
  - Group schemas: trimmed names, unique participant ids, empty list allowed

No Flask app. The schemas inherit from marshmallow.Schema directly.
"""

from __future__ import annotations

from datetime import timezone
from decimal import Decimal

import pytest
from marshmallow import ValidationError

from ledger_service.app.errors import ErrorCode
from ledger_service.app.models.expense import SplitType
from ledger_service.app.schemas.expense_schema import CreateExpenseSchema, PatchExpenseSchema
from ledger_service.app.schemas.group_schema import CreateGroupSchema, SetParticipantsSchema


def _payload(**overrides) -> dict:
    payload = {
        "description": "Dinner",
        "amount": "100.00",
        "currency": "usd",
        "payers": [{"user_id": "A", "amount": "100.00"}],
        "participant_ids": ["A", "B"],
    }
    payload.update(overrides)
    return payload


def _errors(schema, payload) -> dict:
    with pytest.raises(ValidationError) as exc_info:
        schema.load(payload)
    return exc_info.value.messages


# ── Create: happy paths ────────────────────────────────────────────────────

def test_create_minimal_payload_defaults_to_equal():
    data = CreateExpenseSchema().load(_payload())

    assert data["amount"] == Decimal("100.00")
    assert data["currency"] == "USD"
    assert data["split_type"] == SplitType.EQUAL
    assert data["custom_splits"] is None
    assert data["date"] is None
    assert data["payers"] == [{"user_id": "A", "amount": Decimal("100.00")}]


def test_create_percent_with_entries():
    data = CreateExpenseSchema().load(_payload(
        split_type="percent",
        custom_splits=[{"user_id": "A", "value": "30"}, {"user_id": "B", "value": "70"}],
    ))

    assert data["split_type"] == SplitType.PERCENT
    assert data["custom_splits"][1] == {"user_id": "B", "value": Decimal("70")}


def test_create_percent_without_entries_is_allowed():
    data = CreateExpenseSchema().load(_payload(split_type="percent"))

    assert data["custom_splits"] is None


def test_create_shares_with_empty_entries_is_allowed():
    data = CreateExpenseSchema().load(_payload(split_type="shares", custom_splits=[]))

    assert data["custom_splits"] == []


def test_create_naive_date_is_read_as_utc():
    data = CreateExpenseSchema().load(_payload(date="2026-04-01T10:00:00"))

    assert data["date"].tzinfo == timezone.utc


def test_create_allows_payers_outside_participants():
    data = CreateExpenseSchema().load(_payload(
        payers=[{"user_id": "Z", "amount": "100"}],
    ))

    assert data["payers"][0]["user_id"] == "Z"


# ── Create: rejections ─────────────────────────────────────────────────────

def test_amount_with_three_decimals_rejected():
    errors = _errors(CreateExpenseSchema(), _payload(amount="10.123"))

    assert errors["amount"] == [ErrorCode.INVALID_AMOUNT_PRECISION]


@pytest.mark.parametrize("amount", ["0", "-5"])
def test_non_positive_amount_rejected(amount):
    errors = _errors(CreateExpenseSchema(), _payload(amount=amount))

    assert "amount" in errors


@pytest.mark.parametrize("currency", ["US", "U$D", "", "DOLLARSDOLLARS"])
def test_bad_currency_rejected(currency):
    errors = _errors(CreateExpenseSchema(), _payload(currency=currency))

    assert errors["currency"] == [ErrorCode.INVALID_CURRENCY]


def test_unknown_split_type_rejected():
    errors = _errors(CreateExpenseSchema(), _payload(split_type="thirds"))

    assert errors["split_type"] == [ErrorCode.INVALID_SPLIT_TYPE]


def test_custom_splits_for_equal_rejected():
    errors = _errors(CreateExpenseSchema(), _payload(
        split_type="equal",
        custom_splits=[{"user_id": "A", "value": "1"}],
    ))

    assert errors["custom_splits"] == [ErrorCode.CUSTOM_SPLITS_SENT_FOR_EQUAL]


@pytest.mark.parametrize("split_type", ["percent", "custom"])
def test_empty_custom_splits_rejected(split_type):
    errors = _errors(CreateExpenseSchema(), _payload(split_type=split_type, custom_splits=[]))

    assert errors["custom_splits"] == [ErrorCode.CUSTOM_SPLITS_REQUIRED]


def test_duplicate_split_user_rejected():
    errors = _errors(CreateExpenseSchema(), _payload(
        split_type="custom",
        custom_splits=[{"user_id": "A", "value": "50"}, {"user_id": "A", "value": "50"}],
    ))

    assert errors["custom_splits"] == [ErrorCode.DUPLICATE_SPLIT_USER]


def test_duplicate_participant_rejected():
    errors = _errors(CreateExpenseSchema(), _payload(participant_ids=["A", "A"]))

    assert errors["participant_ids"] == [ErrorCode.DUPLICATE_PARTICIPANT]


def test_negative_split_value_rejected():
    errors = _errors(CreateExpenseSchema(), _payload(
        split_type="shares",
        custom_splits=[{"user_id": "A", "value": "-1"}],
    ))

    assert "custom_splits" in errors


def test_amount_above_column_capacity_rejected():
    errors = _errors(CreateExpenseSchema(), _payload(amount="10000000000.00"))

    assert errors["amount"] == ["Amount must not exceed 9999999999.99."]


def test_amount_at_column_capacity_accepted():
    data = CreateExpenseSchema().load(_payload(
        amount="9999999999.99",
        payers=[{"user_id": "A", "amount": "9999999999.99"}],
    ))

    assert data["amount"] == Decimal("9999999999.99")


@pytest.mark.parametrize("value", ["1E+30", "10000000000"])
def test_oversized_split_value_rejected(value):
    errors = _errors(CreateExpenseSchema(), _payload(
        split_type="custom",
        custom_splits=[{"user_id": "A", "value": value}],
    ))

    assert errors["custom_splits"] == {0: {"value": ["Split values must not exceed 9999999999.99."]}}


def test_split_value_allows_four_decimals():
    data = CreateExpenseSchema().load(_payload(
        split_type="percent",
        custom_splits=[{"user_id": "A", "value": "33.3333"}],
    ))

    assert data["custom_splits"][0]["value"] == Decimal("33.3333")


@pytest.mark.parametrize("field", ["amount", "currency", "payers", "participant_ids"])
def test_required_fields(field):
    payload = _payload()
    del payload[field]

    errors = _errors(CreateExpenseSchema(), payload)

    assert errors[field] == ["Missing data for required field."]


def test_empty_payers_rejected():
    errors = _errors(CreateExpenseSchema(), _payload(payers=[]))

    assert "payers" in errors


# ── Patch ──────────────────────────────────────────────────────────────────

def test_patch_empty_payload_is_valid():
    assert PatchExpenseSchema().load({}) == {}


def test_patch_normalises_currency():
    assert PatchExpenseSchema().load({"currency": " eur "}) == {"currency": "EUR"}


def test_patch_custom_splits_none_means_clear():
    data = PatchExpenseSchema().load({"custom_splits": None})

    assert data == {"custom_splits": None}


def test_patch_without_type_only_checks_duplicates():
    # An empty list is judged against the stored type by the service.
    assert PatchExpenseSchema().load({"custom_splits": []}) == {"custom_splits": []}

    errors = _errors(PatchExpenseSchema(), {
        "custom_splits": [{"user_id": "A", "value": "1"}, {"user_id": "A", "value": "2"}],
    })
    assert errors["custom_splits"] == [ErrorCode.DUPLICATE_SPLIT_USER]


def test_patch_with_type_applies_split_rules():
    errors = _errors(PatchExpenseSchema(), {
        "split_type": "equal",
        "custom_splits": [{"user_id": "A", "value": "1"}],
    })

    assert errors["custom_splits"] == [ErrorCode.CUSTOM_SPLITS_SENT_FOR_EQUAL]


def test_patch_rejects_bad_precision():
    errors = _errors(PatchExpenseSchema(), {"amount": "1.001"})

    assert errors["amount"] == [ErrorCode.INVALID_AMOUNT_PRECISION]


# ── Group schemas ──────────────────────────────────────────────────────────

def test_create_group_defaults_to_no_participants():
    assert CreateGroupSchema().load({"name": "Trip"}) == {"name": "Trip", "participant_ids": []}


def test_create_group_rejects_blank_name():
    errors = _errors(CreateGroupSchema(), {"name": "   "})

    assert "name" in errors


def test_create_group_rejects_duplicate_participants():
    errors = _errors(CreateGroupSchema(), {"name": "Trip", "participant_ids": ["A", "A"]})

    assert errors["participant_ids"] == [ErrorCode.DUPLICATE_PARTICIPANT]


def test_set_participants_allows_empty_list():
    assert SetParticipantsSchema().load({"participant_ids": []}) == {"participant_ids": []}


def test_set_participants_requires_list():
    errors = _errors(SetParticipantsSchema(), {})

    assert errors["participant_ids"] == ["Missing data for required field."]
