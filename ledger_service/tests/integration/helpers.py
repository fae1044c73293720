"""
Shared helpers for the integration tests.

Plain functions, not fixtures, so they can be called with arbitrary
arguments from any test.
"""

from __future__ import annotations

from sqlalchemy import update

from ledger_service.app.extensions import db, get_coordinator
from ledger_service.app.models.group import Group


def make_group(client, name: str = "Trip", participant_ids=("A", "B", "C")) -> dict:
    """Creates a group and returns its data dict."""
    resp = client.post(
        "/api/v1/groups/",
        json={"name": name, "participant_ids": list(participant_ids)},
    )
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["data"]


def expense_payload(**overrides) -> dict:
    """A valid expense body: 90.00 USD paid by A, split equally by A, B, C."""
    payload = {
        "description": "Dinner",
        "amount": "90.00",
        "currency": "USD",
        "payers": [{"user_id": "A", "amount": "90.00"}],
        "participant_ids": ["A", "B", "C"],
        "split_type": "equal",
    }
    payload.update(overrides)
    return payload


def make_expense(client, group_id: int, **overrides):
    """Posts an expense and returns the raw HTTP response."""
    return client.post(
        f"/api/v1/groups/{group_id}/expenses",
        json=expense_payload(**overrides),
    )


def create_expense(client, group_id: int, **overrides) -> dict:
    """Posts an expense, asserts 201 and returns its data dict."""
    resp = make_expense(client, group_id, **overrides)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["data"]


def get_balances(client, group_id: int) -> dict:
    resp = client.get(f"/api/v1/groups/{group_id}/balances")
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()["data"]


def run_sweep(app):
    """One sweep pass in a fresh app context; returns the SweepReport."""
    with app.app_context():
        return get_coordinator().sweep()


def set_lock(app, group_id: int, until) -> None:
    """Writes groups.locked_until directly, as a concurrent writer would."""
    with app.app_context():
        db.session.execute(
            update(Group).where(Group.id == group_id).values(locked_until=until)
        )
        db.session.commit()
