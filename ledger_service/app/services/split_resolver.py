"""
services/split_resolver.py — Turns one expense into signed balance deltas.

Pure functions. No database, no Flask, no logging, no state.

Sign convention:
  +amount → the group owes the user (they paid)
  -amount → the user owes the group (their share of the cost)

Participant filtering:
  - Credits go to every payer who is a participant of the GROUP, even if
    they do not share this expense's cost.
  - Debits go only to valid participants: expense.participant_ids that are
    also group participants. Anyone else is silently left out.
  - No valid participants → no deltas at all (credits included).

Rounding:
  None. Values are exact Decimal quotients here; the aggregator rounds once,
  when a value is written into the snapshot.

Percentages are NOT required to sum to 100 and custom amounts are NOT
required to sum to the expense amount. The resolver trusts the data it is
given; the API flags such input with warnings at write time.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal

from ledger_service.app.errors import MalformedExpenseError
from ledger_service.app.services.records import (
    ZERO,
    BalanceDelta,
    CustomSplit,
    EqualSplit,
    ExpenseRecord,
    PercentSplit,
    SharesSplit,
)


_HUNDRED = Decimal("100")


def valid_participants(
        expense: ExpenseRecord,
        group_participant_ids: Iterable[str],
) -> list[str]:
    """Expense participants that are also group participants, sorted."""
    return sorted(expense.participant_ids.intersection(group_participant_ids))


def _check_well_formed(expense: ExpenseRecord) -> None:
    """Raises MalformedExpenseError if the record cannot be split."""
    if not expense.currency:
        raise MalformedExpenseError(expense.expense_id, "currency is missing")
    if expense.amount <= ZERO:
        raise MalformedExpenseError(expense.expense_id, "amount must be greater than zero")

    split = expense.split
    if isinstance(split, PercentSplit) and split.percentages == ():
        raise MalformedExpenseError(expense.expense_id, "percent split has no entries")
    if isinstance(split, CustomSplit) and split.amounts == ():
        raise MalformedExpenseError(expense.expense_id, "custom split has no entries")


def _equal_debits(amount: Decimal, participants: list[str]) -> list[tuple[str, Decimal]]:
    share = amount / Decimal(len(participants))
    return [(user_id, share) for user_id in participants]


def _shares_debits(
        amount: Decimal,
        split: SharesSplit,
        participants: list[str],
) -> list[tuple[str, Decimal]]:
    weights = [(user_id, split.weight_for(user_id)) for user_id in participants]
    total_weight = sum((w for _, w in weights), ZERO)
    if total_weight == ZERO:
        # Every valid participant has weight 0: nothing to divide.
        return []
    return [(user_id, amount * w / total_weight) for user_id, w in weights]


def _debits(expense: ExpenseRecord, participants: list[str]) -> list[tuple[str, Decimal]]:
    """Returns (user_id, owed) pairs; owed is positive."""
    split = expense.split
    valid = set(participants)

    if isinstance(split, EqualSplit):
        return _equal_debits(expense.amount, participants)

    if isinstance(split, SharesSplit):
        return _shares_debits(expense.amount, split, participants)

    if isinstance(split, PercentSplit):
        if split.percentages is None:
            return _equal_debits(expense.amount, participants)
        return [
            (share.user_id, expense.amount * share.value / _HUNDRED)
            for share in split.percentages
            if share.user_id in valid
        ]

    if isinstance(split, CustomSplit):
        if split.amounts is None:
            return _equal_debits(expense.amount, participants)
        return [
            (share.user_id, share.value)
            for share in split.amounts
            if share.user_id in valid
        ]

    raise MalformedExpenseError(expense.expense_id, f"unsupported split {split!r}")


def resolve(
        expense: ExpenseRecord,
        group_participant_ids: Iterable[str],
) -> list[BalanceDelta]:
    """
    Computes the signed per-user deltas of one expense, in its currency.

    Args:
        expense:               The expense snapshot to split.
        group_participant_ids: The group's CURRENT participant ids.

    Returns:
        A list of BalanceDelta. A user may appear twice (credit and debit);
        the order of the list is not significant.

    Raises:
        MalformedExpenseError — the record cannot be split (see
        _check_well_formed). Callers folding many expenses skip it.
    """
    group_participants = frozenset(group_participant_ids)
    participants = valid_participants(expense, group_participants)
    if not participants:
        return []

    _check_well_formed(expense)

    deltas = [
        BalanceDelta(payer.user_id, expense.currency, payer.amount)
        for payer in expense.payers
        if payer.user_id in group_participants
    ]
    deltas.extend(
        BalanceDelta(user_id, expense.currency, -owed)
        for user_id, owed in _debits(expense, participants)
    )
    return deltas
