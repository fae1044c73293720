"""
services/expense_service.py — Expense business logic.

Every mutation (create, edit, soft delete) is reported to the
ReconciliationCoordinator as one (before, after) event, in the same
transaction as the expense write:
  create  → (None,   after)
  edit    → (before, after)
  delete  → (before, None)
`before` is captured as an ExpenseRecord before any field is touched.

Rules enforced here (the schema cannot see stored state):
  EXPENSE_DELETED (422)              — cannot edit a soft-deleted expense
  CUSTOM_SPLITS_SENT_FOR_EQUAL (400) — PATCH sends entries for a stored
                                       'equal' expense without changing type
  CUSTOM_SPLITS_REQUIRED (400)       — PATCH sends [] for a stored
                                       percent/custom expense

Non-blocking warnings (returned with the 2xx response):
  PAYER_SUM_MISMATCH, PERCENT_SUM_NOT_100, CUSTOM_SUM_MISMATCH

Layer rules:
  - No Flask imports. Receives a session and the coordinator from the route.
  - Commits are the route's responsibility — only flush here.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ledger_service.app.errors import AppError, ErrorCode, WarningCode
from ledger_service.app.models.expense import Expense, SplitType
from ledger_service.app.models.expense_payer import ExpensePayer
from ledger_service.app.models.group import Group
from ledger_service.app.services.reconciliation import ReconciliationCoordinator
from ledger_service.app.services.records import (
    CustomSplit,
    ExpenseRecord,
    PercentSplit,
    record_from_expense,
)


_HUNDRED = Decimal("100")


# ── Private helpers ────────────────────────────────────────────────────────

def _get_group_or_404(group_id: int, session: Session) -> Group:
    """Returns the Group or raises GROUP_NOT_FOUND (404)."""
    group = session.get(Group, group_id)
    if group is None:
        raise AppError(
            ErrorCode.GROUP_NOT_FOUND,
            f"Group {group_id} does not exist.",
            404,
        )
    return group


def _get_expense_or_404(expense_id: int, session: Session) -> Expense:
    """Returns the Expense (active or deleted) or raises EXPENSE_NOT_FOUND (404)."""
    expense = session.get(Expense, expense_id)
    if expense is None:
        raise AppError(
            ErrorCode.EXPENSE_NOT_FOUND,
            f"Expense {expense_id} does not exist.",
            404,
        )
    return expense


def _entries_document(entries: list[dict] | None) -> list[dict] | None:
    """Split entries → JSON column value. Decimals are stored as strings."""
    if entries is None:
        return None
    return [
        {"user_id": e["user_id"], "value": str(e["value"])}
        for e in entries
    ]


def _replace_payers(expense: Expense, payers: list[dict], session: Session) -> None:
    """
    Swaps the payer rows. Old rows are flushed away first so the new ones
    can reuse their (expense_id, position) slots.
    """
    if expense.payers:
        expense.payers.clear()
        session.flush()

    for position, payer in enumerate(payers):
        expense.payers.append(ExpensePayer(
            position=position,
            user_id=payer["user_id"],
            amount=payer["amount"],
        ))


def collect_expense_warnings(record: ExpenseRecord) -> list[dict]:
    """
    Non-blocking checks on an accepted expense. The ledger applies the
    expense exactly as entered either way.
    """
    warnings: list[dict] = []

    paid = sum((p.amount for p in record.payers), Decimal("0"))
    if paid != record.amount:
        warnings.append({
            "code": WarningCode.PAYER_SUM_MISMATCH,
            "message": (
                f"Payers paid {paid} in total but the expense amount is "
                f"{record.amount}. Each payer is credited what they entered."
            ),
        })

    split = record.split
    if isinstance(split, PercentSplit) and split.percentages:
        total = sum((s.value for s in split.percentages), Decimal("0"))
        if total != _HUNDRED:
            warnings.append({
                "code": WarningCode.PERCENT_SUM_NOT_100,
                "message": f"Percentages add up to {total}, not 100.",
            })

    if isinstance(split, CustomSplit) and split.amounts:
        total = sum((s.value for s in split.amounts), Decimal("0"))
        if total != record.amount:
            warnings.append({
                "code": WarningCode.CUSTOM_SUM_MISMATCH,
                "message": (
                    f"Custom split amounts add up to {total} but the expense "
                    f"amount is {record.amount}."
                ),
            })

    return warnings


# ── Public service functions ───────────────────────────────────────────────

def create_expense(
        group_id: int,
        data: dict,
        session: Session,
        coordinator: ReconciliationCoordinator,
) -> tuple[Expense, list[dict]]:
    """
    Records a new expense for a group.

    Payers and participants are stored as entered, even if they are not
    participants of the group; the ledger leaves them out of the balances.

    Args:
        group_id: The group this expense belongs to.
        data:     Validated dict from CreateExpenseSchema.

    Returns:
        (expense, warnings)
    """
    _get_group_or_404(group_id, session)

    split_type: SplitType = data.get("split_type", SplitType.EQUAL)
    custom_splits = data.get("custom_splits")
    if split_type == SplitType.EQUAL:
        custom_splits = None

    expense = Expense(
        group_id=group_id,
        description=data.get("description", ""),
        amount=data["amount"],
        currency=data["currency"],
        split_type=split_type,
        participant_ids=list(data["participant_ids"]),
        custom_splits=_entries_document(custom_splits),
        expense_date=data.get("date") or datetime.now(timezone.utc),
    )
    session.add(expense)
    _replace_payers(expense, data["payers"], session)
    session.flush()  # populate expense.id

    after = record_from_expense(expense)
    coordinator.on_expense_mutation(group_id, expense.id, None, after)

    return expense, collect_expense_warnings(after)


def list_expenses(group_id: int, session: Session) -> list[Expense]:
    """
    Returns all active (non-deleted) expenses for a group, most recent
    business date first.
    """
    _get_group_or_404(group_id, session)

    stmt = (
        select(Expense)
        .where(
            Expense.group_id == group_id,
            Expense.deleted_at.is_(None),
        )
        .options(selectinload(Expense.payers))
        .order_by(Expense.expense_date.desc(), Expense.id.desc())
    )
    return list(session.execute(stmt).scalars().all())


def get_expense(expense_id: int, session: Session) -> Expense:
    """
    Returns a single expense, even if soft-deleted. The deleted_at field in
    the response shows the deletion state.
    """
    return _get_expense_or_404(expense_id, session)


def edit_expense(
        expense_id: int,
        data: dict,
        session: Session,
        coordinator: ReconciliationCoordinator,
) -> tuple[Expense, list[dict]]:
    """
    Partially updates an expense. Only fields present in `data` change.

    Split rules:
      - Effective type 'equal': stored entries are dropped.
      - Type changed without new entries: stored entries are dropped (shares
        fall back to weight 1, percent/custom to an equal split).
      - Type unchanged, entries sent: they replace the stored ones.

    Raises:
        AppError(EXPENSE_NOT_FOUND, 404)
        AppError(EXPENSE_DELETED, 422)
        AppError(CUSTOM_SPLITS_SENT_FOR_EQUAL / CUSTOM_SPLITS_REQUIRED, 400)
    """
    expense = _get_expense_or_404(expense_id, session)

    if expense.is_deleted:
        raise AppError(
            ErrorCode.EXPENSE_DELETED,
            f"Expense {expense_id} has been deleted and cannot be edited.",
            422,
        )

    before = record_from_expense(expense)

    # ── Split type and entries ─────────────────────────────────────────────

    new_split_type = data.get("split_type")
    effective_type = new_split_type if new_split_type is not None else expense.split_type

    if "custom_splits" in data:
        entries = data["custom_splits"]
        if entries is not None and effective_type == SplitType.EQUAL:
            raise AppError(
                ErrorCode.CUSTOM_SPLITS_SENT_FOR_EQUAL,
                "Do not send custom_splits for an 'equal' expense.",
                400,
                field="custom_splits",
            )
        if entries == [] and effective_type in (SplitType.PERCENT, SplitType.CUSTOM):
            raise AppError(
                ErrorCode.CUSTOM_SPLITS_REQUIRED,
                f"custom_splits must not be empty for split_type '{effective_type.value}'.",
                400,
                field="custom_splits",
            )
        expense.custom_splits = _entries_document(entries)
    elif new_split_type is not None and new_split_type != expense.split_type:
        expense.custom_splits = None

    if effective_type == SplitType.EQUAL:
        expense.custom_splits = None
    expense.split_type = effective_type

    # ── Plain fields ───────────────────────────────────────────────────────

    if "description" in data:
        expense.description = data["description"]

    if "amount" in data:
        expense.amount = data["amount"]

    if "currency" in data:
        expense.currency = data["currency"]

    if "participant_ids" in data:
        expense.participant_ids = list(data["participant_ids"])

    if data.get("date") is not None:
        expense.expense_date = data["date"]

    if "payers" in data:
        _replace_payers(expense, data["payers"], session)

    expense.updated_at = datetime.now(timezone.utc)
    session.flush()

    after = record_from_expense(expense)
    coordinator.on_expense_mutation(expense.group_id, expense.id, before, after)

    return expense, collect_expense_warnings(after)


def delete_expense(
        expense_id: int,
        session: Session,
        coordinator: ReconciliationCoordinator,
) -> None:
    """
    Soft-deletes an expense by setting deleted_at = NOW(). The row and its
    payers stay in the database; balances stop counting it.

    Idempotent: deleting an already deleted expense changes nothing and
    emits no event.

    Raises:
        AppError(EXPENSE_NOT_FOUND, 404)
    """
    expense = _get_expense_or_404(expense_id, session)
    if expense.is_deleted:
        return

    before = record_from_expense(expense)
    expense.deleted_at = datetime.now(timezone.utc)
    session.flush()

    coordinator.on_expense_mutation(expense.group_id, expense.id, before, None)
