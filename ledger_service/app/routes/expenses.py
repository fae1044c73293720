"""
routes/expenses.py — Expense route handlers.

Registered at url_prefix=/api/v1 (not /api/v1/expenses) because this blueprint
owns BOTH the group-scoped paths (/groups/:id/expenses) and the
expense-ID paths (/expenses/:id). Registering at /api/v1/expenses would
make the group-scoped paths unreachable.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries. No bare SQL.
  - _serialize_expense() is a pure data-shape helper — not business logic.

Endpoints:
  POST   /groups/:id/expenses   → 201  create expense
  GET    /groups/:id/expenses   → 200  list active expenses
  GET    /expenses/:id          → 200  get expense + payers
  PATCH  /expenses/:id          → 200  partial update
  DELETE /expenses/:id          → 200  soft-delete
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from ledger_service.app.extensions import db, get_coordinator
from ledger_service.app.models.expense import Expense
from ledger_service.app.schemas.expense_schema import CreateExpenseSchema, PatchExpenseSchema
from ledger_service.app.services import expense_service
from ledger_service.app.services.records import as_utc

expenses_bp = Blueprint("expenses", __name__)


# ── Serialization helper ───────────────────────────────────────────────────
# Pure data-shaping with no DB access. Amounts as strings.

def _iso(value):
    return as_utc(value).isoformat() if value is not None else None


def _serialize_expense(expense: Expense) -> dict:
    """Converts an Expense ORM object to a plain dict for JSON output."""
    return {
        "id": expense.id,
        "group_id": expense.group_id,
        "description": expense.description,
        "amount": str(expense.amount),                  # Decimal → string
        "currency": expense.currency,
        "split_type": expense.split_type.value,
        "participant_ids": list(expense.participant_ids or []),
        "custom_splits": expense.custom_splits,
        "payers": [
            {
                "user_id": p.user_id,
                "amount": str(p.amount),                # Decimal → string
            }
            for p in expense.payers
        ],
        "date": _iso(expense.expense_date),
        "created_at": _iso(expense.created_at),
        "updated_at": _iso(expense.updated_at),
        "deleted_at": _iso(expense.deleted_at),
    }


# ── Group-scoped expense routes ────────────────────────────────────────────

@expenses_bp.route("/groups/<int:group_id>/expenses", methods=["POST"])
def create_expense(group_id: int):
    """POST /groups/:id/expenses — Record a new expense."""
    data = CreateExpenseSchema().load(request.get_json(force=True) or {})
    expense, warnings = expense_service.create_expense(
        group_id=group_id,
        data=data,
        session=db.session,
        coordinator=get_coordinator(),
    )
    db.session.commit()
    return jsonify({"data": _serialize_expense(expense), "warnings": warnings}), 201


@expenses_bp.route("/groups/<int:group_id>/expenses", methods=["GET"])
def list_expenses(group_id: int):
    """GET /groups/:id/expenses — List active (non-deleted) expenses for a group."""
    expenses = expense_service.list_expenses(
        group_id=group_id,
        session=db.session,
    )
    return jsonify({
        "data": [_serialize_expense(e) for e in expenses],
        "warnings": [],
    }), 200


# ── Expense-ID routes ──────────────────────────────────────────────────────

@expenses_bp.route("/expenses/<int:expense_id>", methods=["GET"])
def get_expense(expense_id: int):
    """GET /expenses/:id — Get expense detail including payers."""
    expense = expense_service.get_expense(
        expense_id=expense_id,
        session=db.session,
    )
    return jsonify({"data": _serialize_expense(expense), "warnings": []}), 200


@expenses_bp.route("/expenses/<int:expense_id>", methods=["PATCH"])
def edit_expense(expense_id: int):
    """PATCH /expenses/:id — Partial update; the ledger sees it as one (before, after) event."""
    data = PatchExpenseSchema().load(request.get_json(force=True) or {})
    expense, warnings = expense_service.edit_expense(
        expense_id=expense_id,
        data=data,
        session=db.session,
        coordinator=get_coordinator(),
    )
    db.session.commit()
    return jsonify({"data": _serialize_expense(expense), "warnings": warnings}), 200


@expenses_bp.route("/expenses/<int:expense_id>", methods=["DELETE"])
def delete_expense(expense_id: int):
    """
    DELETE /expenses/:id — Soft-delete (sets deleted_at = NOW()).
    Row stays in DB. Payers remain for audit. Balances stop counting it.
    """
    expense_service.delete_expense(
        expense_id=expense_id,
        session=db.session,
        coordinator=get_coordinator(),
    )
    db.session.commit()
    return jsonify({
        "data": {
            "deleted": True,
            "expense_id": expense_id,
        },
        "warnings": [],
    }), 200
