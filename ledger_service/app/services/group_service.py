"""
services/group_service.py — Group and participant business logic.

A group's participant list decides whose balances the ledger tracks.
Replacing it cannot be applied incrementally, so the coordinator is told
and either clears the balances (empty list) or queues a full recompute.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility — only flush here.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from ledger_service.app.errors import AppError, ErrorCode
from ledger_service.app.models.group import Group
from ledger_service.app.models.membership import Membership
from ledger_service.app.services.reconciliation import ReconciliationCoordinator
from ledger_service.app.services.records import as_utc


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


def _build_group_dict(group: Group) -> dict:
    """Serialises a Group with its participant list to a plain dict."""
    return {
        "id": group.id,
        "name": group.name,
        "created_at": as_utc(group.created_at).isoformat() if group.created_at else None,
        "participant_ids": [m.user_id for m in group.memberships],
    }


# ── Public service functions ───────────────────────────────────────────────

def create_group(name: str, participant_ids: list[str], session: Session) -> dict:
    """
    Creates a new group with an initial participant list (possibly empty).
    A new group has no expenses, so its balance snapshot starts empty.
    """
    group = Group(name=name.strip(), participant_balances={})
    for user_id in participant_ids:
        group.memberships.append(Membership(user_id=user_id))

    session.add(group)
    session.flush()
    session.refresh(group)  # load server defaults (created_at)

    return _build_group_dict(group)


def get_group(group_id: int, session: Session) -> dict:
    """Returns group details including the participant list, in joining order."""
    group = _get_group_or_404(group_id, session)
    return _build_group_dict(group)


def set_participants(
        group_id: int,
        participant_ids: list[str],
        session: Session,
        coordinator: ReconciliationCoordinator,
) -> dict:
    """
    Replaces the participant list of a group.

    Users already in the group keep their membership row (and joining
    order); removed users lose it; new users are appended in the order given.

    Returns: dict with the updated group and the resulting ledger state.
    """
    group = _get_group_or_404(group_id, session)

    wanted = list(dict.fromkeys(participant_ids))
    wanted_set = set(wanted)

    for membership in list(group.memberships):
        if membership.user_id not in wanted_set:
            group.memberships.remove(membership)

    # Removals first, so a re-added user never collides with their old row.
    session.flush()

    existing = {m.user_id for m in group.memberships}
    for user_id in wanted:
        if user_id not in existing:
            group.memberships.append(Membership(user_id=user_id))
    session.flush()

    state = coordinator.on_participants_changed(group_id, wanted)

    result = _build_group_dict(group)
    result["ledger_state"] = state.value
    return result
