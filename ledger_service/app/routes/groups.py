"""
routes/groups.py — Group and participant route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries. No bare SQL.

Endpoints (base url_prefix=/api/v1/groups):
  POST   /groups                        → 201  create group
  GET    /groups/:id                    → 200  get group + participants
  PUT    /groups/:id/participants       → 200  replace participant list
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from ledger_service.app.extensions import db, get_coordinator
from ledger_service.app.schemas.group_schema import CreateGroupSchema, SetParticipantsSchema
from ledger_service.app.services import group_service

groups_bp = Blueprint("groups", __name__)


@groups_bp.route("/", methods=["POST"])
def create_group():
    """POST /groups — Create a new group with its initial participants."""
    data = CreateGroupSchema().load(request.get_json(force=True) or {})
    result = group_service.create_group(
        name=data["name"],
        participant_ids=data["participant_ids"],
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 201


@groups_bp.route("/<int:group_id>", methods=["GET"])
def get_group(group_id: int):
    """GET /groups/:id — Get group details with participant list."""
    result = group_service.get_group(
        group_id=group_id,
        session=db.session,
    )
    return jsonify({"data": result, "warnings": []}), 200


@groups_bp.route("/<int:group_id>/participants", methods=["PUT"])
def set_participants(group_id: int):
    """
    PUT /groups/:id/participants — Replace the participant list.
    Balances are recomputed by the next sweep; an empty list clears them at once.
    """
    data = SetParticipantsSchema().load(request.get_json(force=True) or {})
    result = group_service.set_participants(
        group_id=group_id,
        participant_ids=data["participant_ids"],
        session=db.session,
        coordinator=get_coordinator(),
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200
