"""
services/ledger_aggregator.py — Folds expenses into balance snapshots.

Two ways to produce a snapshot, both pure (no database, no Flask):

  full_recompute()  — derive balances from the complete expense log.
                      Ignores any existing snapshot, so it is safe to run
                      at any time from any prior state. The sweep and the
                      repair endpoint use it (through rebuild_snapshot()).

  apply_delta()     — adjust an existing snapshot by one (before, after)
                      mutation: reverse `before`, apply `after`. The only
                      collaborator read is `find_latest`, used when the
                      group's most recent expense was the one removed.

Rounding and pruning (applies to every value written into a snapshot):
  - Values are rounded to 2 decimal places (ROUND_HALF_UP) at write time,
    never inside the split arithmetic.
  - An entry whose absolute value is below EPSILON (0.005) is removed.
  - A user left with no currencies is removed.

apply_delta() is consistent with full_recompute() over the updated log up
to one rounding step per applied expense; it is not bit-identical after
many operations.

total_expenses is a currency-unaware sum of amounts. For groups mixing
currencies it is an approximation and is reported as such.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from decimal import ROUND_HALF_UP, Decimal

from ledger_service.app.errors import MalformedExpenseError
from ledger_service.app.services.records import (
    ZERO,
    BalanceDelta,
    Balances,
    ExpenseRecord,
    LastExpense,
    LedgerSnapshot,
)
from ledger_service.app.services.split_resolver import resolve

logger = logging.getLogger(__name__)

EPSILON = Decimal("0.005")
CENT = Decimal("0.01")


# ── Helpers ────────────────────────────────────────────────────────────────

def round_amount(value: Decimal) -> Decimal:
    """Rounds to minor-unit precision (2 dp)."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _unique(participant_ids: Iterable[str]) -> list[str]:
    """De-duplicates while keeping the caller's order."""
    return list(dict.fromkeys(str(uid) for uid in participant_ids))


def _resolve_or_skip(expense: ExpenseRecord, participants: list[str]) -> list[BalanceDelta]:
    """Resolves one expense; a malformed one contributes nothing and is logged."""
    try:
        return resolve(expense, participants)
    except MalformedExpenseError as exc:
        logger.warning(
            "Skipping malformed expense %s: %s", exc.expense_id, exc.reason
        )
        return []


def _write(balances: Balances, user_id: str, currency: str, delta: Decimal) -> None:
    """balances[user_id][currency] += delta, rounded and pruned in place."""
    currencies = balances.get(user_id, {})
    value = round_amount(currencies.get(currency, ZERO) + delta)

    if abs(value) < EPSILON:
        currencies.pop(currency, None)
    else:
        currencies[currency] = value

    if currencies:
        balances[user_id] = currencies
    else:
        balances.pop(user_id, None)


def _recency_key(record: ExpenseRecord | LastExpense) -> tuple:
    # Same date: the higher id is the more recent one.
    return (record.date, str(record.expense_id).zfill(20))


# ── Full recompute ─────────────────────────────────────────────────────────

def full_recompute(
        expenses: Iterable[ExpenseRecord],
        participant_ids: Iterable[str],
) -> Balances:
    """
    Derives a group's balances from its complete expense log.

    Algorithm:
      1. Partition expenses by currency.
      2. Per currency, start every participant at zero and fold each expense
         through the split resolver, summing deltas.
      3. Round each final value, drop near-zero entries and empty users.

    Malformed expenses are skipped (logged), never aborting the group.
    An empty participant list yields empty balances.
    """
    participants = _unique(participant_ids)
    if not participants:
        return {}

    by_currency: dict[str, list[ExpenseRecord]] = defaultdict(list)
    for expense in expenses:
        by_currency[expense.currency].append(expense)

    balances: Balances = {}
    for currency in sorted(by_currency):
        running = {user_id: ZERO for user_id in participants}

        for expense in by_currency[currency]:
            for delta in _resolve_or_skip(expense, participants):
                running[delta.user_id] += delta.amount

        for user_id, value in running.items():
            rounded = round_amount(value)
            if abs(rounded) >= EPSILON:
                balances.setdefault(user_id, {})[currency] = rounded

    return balances


def rebuild_snapshot(
        expenses: Iterable[ExpenseRecord],
        participant_ids: Iterable[str],
) -> LedgerSnapshot:
    """full_recompute() plus the running aggregates, from the same log."""
    expenses = list(expenses)
    latest = max(expenses, key=_recency_key, default=None)

    return LedgerSnapshot(
        balances=full_recompute(expenses, participant_ids),
        last_expense=LastExpense.of(latest) if latest is not None else None,
        total_expenses=sum((e.amount for e in expenses), Decimal("0.00")),
        expenses_count=len(expenses),
    )


# ── Incremental update ─────────────────────────────────────────────────────

def _next_last_expense(
        current: LastExpense | None,
        before: ExpenseRecord | None,
        after: ExpenseRecord | None,
        find_latest: Callable[[], LastExpense | None] | None,
) -> LastExpense | None:
    removed_current = (
        before is not None
        and current is not None
        and current.expense_id == before.expense_id
    )

    def _lookup(fallback: LastExpense | None) -> LastExpense | None:
        if find_latest is None:
            return fallback
        return find_latest()

    if after is not None:
        candidate = LastExpense.of(after)
        if removed_current:
            if _recency_key(after) >= _recency_key(before):
                return candidate
            # The latest expense moved back in time; another may now be newer.
            return _lookup(candidate)
        if current is None or _recency_key(after) >= _recency_key(current):
            return candidate
        return current

    if removed_current:
        return _lookup(None)
    return current


def apply_delta(
        snapshot: LedgerSnapshot,
        before: ExpenseRecord | None,
        after: ExpenseRecord | None,
        participant_ids: Iterable[str],
        find_latest: Callable[[], LastExpense | None] | None = None,
) -> LedgerSnapshot:
    """
    Applies one expense mutation to `snapshot` and returns the new snapshot.

    Args:
        before:      Expense state before the mutation (None on create).
        after:       Expense state after the mutation (None on delete).
        find_latest: Returns the group's current latest expense. Called only
                     when the expense being removed (or moved back in time)
                     was the snapshot's last_expense.

    The input snapshot is not modified.
    """
    participants = _unique(participant_ids)

    if participants:
        balances: Balances = {
            user_id: dict(currencies)
            for user_id, currencies in snapshot.balances.items()
        }

        # Reverse `before` and apply `after`, netted per (user, currency) so
        # each entry is rounded once per mutation.
        net: dict[tuple[str, str], Decimal] = defaultdict(lambda: ZERO)
        if before is not None:
            for delta in _resolve_or_skip(before, participants):
                net[(delta.user_id, delta.currency)] -= delta.amount
        if after is not None:
            for delta in _resolve_or_skip(after, participants):
                net[(delta.user_id, delta.currency)] += delta.amount

        for (user_id, currency), amount in net.items():
            if amount != ZERO:
                _write(balances, user_id, currency, amount)
    else:
        balances = {}

    expenses_count = snapshot.expenses_count
    if before is None and after is not None:
        expenses_count += 1
    elif before is not None and after is None:
        expenses_count = max(expenses_count - 1, 0)

    total_expenses = snapshot.total_expenses
    if before is not None:
        total_expenses -= before.amount
    if after is not None:
        total_expenses += after.amount

    return LedgerSnapshot(
        balances=balances,
        last_expense=_next_last_expense(snapshot.last_expense, before, after, find_latest),
        total_expenses=total_expenses,
        expenses_count=expenses_count,
    )


# ── Persisted representation ───────────────────────────────────────────────
#
# Balances are stored (and returned by the API) as a mapping keyed by user
# id, with amounts as strings:
#     {"alice": {"USD": "50.00"}, "bob": {"USD": "-50.00"}}
# ──────────────────────────────────────────────────────────────────────────

def balances_to_document(balances: Balances) -> dict[str, dict[str, str]]:
    """Balances → JSON-safe mapping, amounts as 2 dp strings, zeros dropped."""
    document: dict[str, dict[str, str]] = {}
    for user_id in sorted(balances):
        currencies = {
            currency: str(round_amount(value))
            for currency, value in sorted(balances[user_id].items())
            if abs(round_amount(value)) >= EPSILON
        }
        if currencies:
            document[user_id] = currencies
    return document


def balances_from_document(document: dict | None) -> Balances:
    """Persisted mapping → Balances. Near-zero entries are dropped on read."""
    balances: Balances = {}
    for user_id, currencies in (document or {}).items():
        for currency, raw in (currencies or {}).items():
            value = Decimal(str(raw))
            if abs(value) >= EPSILON:
                balances.setdefault(str(user_id), {})[currency] = value
    return balances
