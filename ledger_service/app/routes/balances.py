"""
routes/balances.py — Balance route handlers.

Layer rules:
  - Call ONE service, commit where it writes, return envelope.
  - No business logic. No DB queries. No bare SQL.
  - GET never recomputes. A client that sees "pending": true may wait for
    the sweep or call the recompute endpoint.

Endpoints (base url_prefix=/api/v1/groups):
  GET  /groups/:id/balances             → 200  stored snapshot + pending flag
  POST /groups/:id/balances/recompute   → 200  synchronous full recompute
"""

from __future__ import annotations

from flask import Blueprint, jsonify

from ledger_service.app.extensions import db, get_coordinator
from ledger_service.app.services import balance_service

balances_bp = Blueprint("balances", __name__)


@balances_bp.route("/<int:group_id>/balances", methods=["GET"])
def get_balances(group_id: int):
    """GET /groups/:id/balances"""
    result = balance_service.get_balance_response(
        group_id=group_id,
        session=db.session,
        coordinator=get_coordinator(),
    )
    return jsonify({"data": result, "warnings": []}), 200


@balances_bp.route("/<int:group_id>/balances/recompute", methods=["POST"])
def recompute_balances(group_id: int):
    """
    POST /groups/:id/balances/recompute — Repair operation.
    Rebuilds the snapshot from the full expense log and clears the pending mark.
    """
    result = balance_service.recompute_balances(
        group_id=group_id,
        session=db.session,
        coordinator=get_coordinator(),
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200
