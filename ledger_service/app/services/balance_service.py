"""
services/balance_service.py — Read side of the balance ledger.

Balances are NEVER computed on read. GET returns the materialised snapshot
stored on the group row, together with a `pending` flag that tells the
client a recompute is queued (deferred policy) or an update is in flight
(immediate policy). The only way to force a fresh computation is the
explicit repair operation, recompute_balances().

Response shape:
  {
    "group_id":       1,
    "balances":       {"alice": {"USD": "50.00"}, "bob": {"USD": "-50.00"}},
    "last_expense":   {"expense_id": 7, "date": "..."} | null,
    "total_expenses": "100.00",   # currency-unaware sum, approximate
    "expenses_count": 1,
    "updated_at":     "..." | null,
    "state":          "idle" | "locked" | "pending_recompute",
    "pending":        false
  }

Layer rules:
  - No Flask imports. Receives the session and the coordinator.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from ledger_service.app.errors import AppError, ErrorCode
from ledger_service.app.models.group import Group
from ledger_service.app.services.ledger_aggregator import balances_to_document
from ledger_service.app.services.reconciliation import (
    LedgerState,
    ReconciliationCoordinator,
)
from ledger_service.app.services.records import as_utc


def _build_balance_dict(
        group_id: int,
        session: Session,
        coordinator: ReconciliationCoordinator,
) -> dict:
    ledger = coordinator.store.get_group(group_id)
    if ledger is None:
        raise AppError(
            ErrorCode.GROUP_NOT_FOUND,
            f"Group {group_id} does not exist.",
            404,
        )

    snapshot = ledger.snapshot
    last = snapshot.last_expense
    updated_at = session.get(Group, group_id).balances_updated_at
    state = coordinator.group_state(group_id)

    return {
        "group_id": group_id,
        "balances": balances_to_document(snapshot.balances),
        "last_expense": (
            {"expense_id": last.expense_id, "date": last.date.isoformat()}
            if last is not None else None
        ),
        "total_expenses": snapshot.total_expenses,
        "expenses_count": snapshot.expenses_count,
        "updated_at": as_utc(updated_at).isoformat() if updated_at else None,
        "state": state.value,
        "pending": state != LedgerState.IDLE,
    }


def get_balance_response(
        group_id: int,
        session: Session,
        coordinator: ReconciliationCoordinator,
) -> dict:
    """Returns the stored balance snapshot of a group. Never recomputes."""
    return _build_balance_dict(group_id, session, coordinator)


def recompute_balances(
        group_id: int,
        session: Session,
        coordinator: ReconciliationCoordinator,
) -> dict:
    """
    Synchronous repair: rebuilds the group's snapshot from its full expense
    log and clears its pending mark. The route commits.

    Raises:
        AppError(GROUP_NOT_FOUND, 404)
        AppError(LEDGER_LOCKED, 409)
    """
    coordinator.reconcile_group(group_id)
    session.flush()
    return _build_balance_dict(group_id, session, coordinator)
