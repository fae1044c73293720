"""
services/records.py — Immutable value types used by the ledger engine.

The split resolver and the ledger aggregator never touch ORM objects. They
work on the frozen records defined here, which are built from Expense rows
by record_from_expense() (or directly, in tests).

Split rules are a tagged variant: each split type carries the entry type it
needs, instead of one `custom_splits` list whose meaning changes with the
split type.
  EqualSplit    — no entries
  SharesSplit   — weights (default weight 1 for participants without one)
  PercentSplit  — percentages; None means "absent" → equal fallback
  CustomSplit   — literal amounts; None means "absent" → equal fallback

Monetary values are Decimal everywhere. No float.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import ClassVar, Iterable, Union

from ledger_service.app.errors import MalformedExpenseError
from ledger_service.app.models.expense import SplitType


ZERO = Decimal("0")

# {user_id: {currency: signed amount}}
Balances = dict[str, dict[str, Decimal]]


# ── Normalisation helpers ──────────────────────────────────────────────────

def normalize_currency(code: str | None) -> str:
    """'usd ' → 'USD'. Empty or missing codes normalise to ''."""
    if code is None:
        return ""
    return str(code).strip().upper()


def as_utc(value: datetime) -> datetime:
    """
    Returns `value` as a timezone-aware UTC datetime.
    Naive datetimes (SQLite returns these) are taken to already be UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_decimal(value, expense_id=None, what: str = "amount") -> Decimal:
    """Converts ints, strings and Decimals to Decimal. Floats go through str()."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise MalformedExpenseError(expense_id, f"{what} {value!r} is not a number")


# ── Entry types ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PayerShare:
    user_id: str
    amount: Decimal


@dataclass(frozen=True)
class SplitShare:
    user_id: str
    value: Decimal


# ── Split variants ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EqualSplit:
    split_type: ClassVar[SplitType] = SplitType.EQUAL


@dataclass(frozen=True)
class SharesSplit:
    weights: tuple[SplitShare, ...] = ()
    split_type: ClassVar[SplitType] = SplitType.SHARES

    def weight_for(self, user_id: str) -> Decimal:
        """First matching weight, or 1 when the user has no entry."""
        for share in self.weights:
            if share.user_id == user_id:
                return share.value
        return Decimal("1")


@dataclass(frozen=True)
class PercentSplit:
    percentages: tuple[SplitShare, ...] | None = None
    split_type: ClassVar[SplitType] = SplitType.PERCENT


@dataclass(frozen=True)
class CustomSplit:
    amounts: tuple[SplitShare, ...] | None = None
    split_type: ClassVar[SplitType] = SplitType.CUSTOM


SplitRule = Union[EqualSplit, SharesSplit, PercentSplit, CustomSplit]


def _split_share(entry, expense_id) -> SplitShare:
    if isinstance(entry, SplitShare):
        return entry
    try:
        user_id = entry["user_id"]
        raw_value = entry["value"]
    except (KeyError, TypeError):
        raise MalformedExpenseError(expense_id, f"split entry {entry!r} needs user_id and value")
    return SplitShare(
        user_id=str(user_id),
        value=to_decimal(raw_value, expense_id, what="split value"),
    )


def build_split(
        split_type: SplitType | str,
        entries: Iterable | None,
        expense_id=None,
) -> SplitRule:
    """
    Builds the split variant for `split_type` from raw entries.

    `entries` is None when the expense carries no custom splits at all; an
    empty list is kept as an empty tuple so the resolver can reject it.
    """
    try:
        split_type = SplitType(split_type)
    except ValueError:
        raise MalformedExpenseError(expense_id, f"unknown split type {split_type!r}")

    shares = None
    if entries is not None:
        shares = tuple(_split_share(e, expense_id) for e in entries)

    if split_type == SplitType.EQUAL:
        return EqualSplit()
    if split_type == SplitType.SHARES:
        return SharesSplit(weights=shares or ())
    if split_type == SplitType.PERCENT:
        return PercentSplit(percentages=shares)
    return CustomSplit(amounts=shares)


# ── Records ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExpenseRecord:
    """Snapshot of one expense at a point in time."""

    expense_id: int | str | None
    amount: Decimal
    currency: str
    payers: tuple[PayerShare, ...]
    participant_ids: frozenset[str]
    split: SplitRule
    date: datetime

    @property
    def split_type(self) -> SplitType:
        return self.split.split_type

    @classmethod
    def create(
            cls,
            *,
            expense_id=None,
            amount,
            currency: str,
            payers: Iterable,
            participant_ids: Iterable[str],
            split_type: SplitType | str = SplitType.EQUAL,
            custom_splits: Iterable | None = None,
            date: datetime | None = None,
    ) -> "ExpenseRecord":
        """
        Builds a record from loosely typed values.

        payers: PayerShare objects, {"user_id", "amount"} dicts or
                (user_id, amount) pairs.
        custom_splits: SplitShare objects or {"user_id", "value"} dicts.
        """
        payer_shares = []
        for payer in payers:
            if isinstance(payer, PayerShare):
                payer_shares.append(payer)
                continue
            if isinstance(payer, dict):
                user_id, raw_amount = payer.get("user_id"), payer.get("amount")
            else:
                user_id, raw_amount = payer
            payer_shares.append(PayerShare(
                user_id=str(user_id),
                amount=to_decimal(raw_amount, expense_id, what="payer amount"),
            ))

        return cls(
            expense_id=expense_id,
            amount=to_decimal(amount, expense_id),
            currency=normalize_currency(currency),
            payers=tuple(payer_shares),
            participant_ids=frozenset(str(uid) for uid in participant_ids),
            split=build_split(split_type, custom_splits, expense_id),
            date=as_utc(date) if date is not None else datetime.now(timezone.utc),
        )


@dataclass(frozen=True)
class BalanceDelta:
    """A signed amount to add to one user's balance in one currency."""
    user_id: str
    currency: str
    amount: Decimal


@dataclass(frozen=True)
class LastExpense:
    """Reference to the most recent expense of a group, by business date."""
    expense_id: int | str
    date: datetime

    @classmethod
    def of(cls, record: ExpenseRecord) -> "LastExpense":
        return cls(expense_id=record.expense_id, date=record.date)


@dataclass(frozen=True)
class LedgerSnapshot:
    """The materialised balance view of one group plus its running aggregates."""

    balances: Balances = field(default_factory=dict)
    last_expense: LastExpense | None = None
    total_expenses: Decimal = Decimal("0.00")
    expenses_count: int = 0


@dataclass(frozen=True)
class GroupLedger:
    """What the store knows about one group: participants and current snapshot."""

    group_id: int
    participant_ids: tuple[str, ...]
    snapshot: LedgerSnapshot


# ── ORM adapters ───────────────────────────────────────────────────────────

def record_from_expense(expense) -> ExpenseRecord:
    """
    Builds an ExpenseRecord from an Expense ORM row (or anything with the
    same attributes). Raises MalformedExpenseError when stored values cannot
    be parsed.
    """
    return ExpenseRecord.create(
        expense_id=expense.id,
        amount=expense.amount,
        currency=expense.currency,
        payers=[(p.user_id, p.amount) for p in expense.payers],
        participant_ids=expense.participant_ids or (),
        split_type=expense.split_type,
        custom_splits=expense.custom_splits,
        date=expense.expense_date,
    )
