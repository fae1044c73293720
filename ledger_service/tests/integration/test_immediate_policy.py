"""
tests/integration/test_immediate_policy.py — Incremental balance updates.

The session app runs the deferred policy; these tests swap in a
coordinator with the immediate policy over the same store.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ledger_service.app.extensions import COORDINATOR_KEY
from ledger_service.app.services.reconciliation import ReconciliationCoordinator
from ledger_service.tests.integration.helpers import (
    create_expense,
    get_balances,
    make_group,
    run_sweep,
    set_lock,
)


@pytest.fixture(autouse=True)
def immediate_policy(app, monkeypatch):
    deferred = app.extensions[COORDINATOR_KEY]
    monkeypatch.setitem(
        app.extensions,
        COORDINATOR_KEY,
        ReconciliationCoordinator(
            deferred.store,
            policy="immediate",
            lock_lease=timedelta(seconds=30),
        ),
    )


def test_create_updates_balances_at_once(client):
    group = make_group(client)
    expense = create_expense(client, group["id"])

    data = get_balances(client, group["id"])

    assert data["pending"] is False
    assert data["state"] == "idle"
    assert data["balances"] == {
        "A": {"USD": "60.00"},
        "B": {"USD": "-30.00"},
        "C": {"USD": "-30.00"},
    }
    assert data["last_expense"]["expense_id"] == expense["id"]
    assert data["expenses_count"] == 1


def test_edit_moves_balances_by_the_difference(client):
    group = make_group(client)
    expense = create_expense(client, group["id"])
    create_expense(client, group["id"], amount="30.00", payers=[{"user_id": "B", "amount": "30.00"}])

    client.patch(f"/api/v1/expenses/{expense['id']}", json={
        "participant_ids": ["A", "B"],
    })

    assert get_balances(client, group["id"])["balances"] == {
        "A": {"USD": "35.00"},
        "B": {"USD": "-25.00"},
        "C": {"USD": "-10.00"},
    }


def test_deleting_latest_expense_falls_back_to_previous(client):
    group = make_group(client)
    older = create_expense(client, group["id"], date="2026-01-01T00:00:00Z")
    newer = create_expense(client, group["id"], date="2026-02-01T00:00:00Z")
    assert get_balances(client, group["id"])["last_expense"]["expense_id"] == newer["id"]

    client.delete(f"/api/v1/expenses/{newer['id']}")

    data = get_balances(client, group["id"])
    assert data["last_expense"]["expense_id"] == older["id"]
    assert data["expenses_count"] == 1


def test_busy_lock_defers_to_sweep(app, client):
    group = make_group(client)
    set_lock(app, group["id"], datetime.now(timezone.utc) + timedelta(minutes=5))

    create_expense(client, group["id"])

    data = get_balances(client, group["id"])
    assert data["pending"] is True
    assert data["state"] == "locked"
    assert data["balances"] == {}

    # Still locked: the sweep leaves the group for later.
    assert run_sweep(app).deferred == [group["id"]]

    set_lock(app, group["id"], None)
    assert run_sweep(app).recomputed == [group["id"]]
    assert get_balances(client, group["id"])["balances"]["A"] == {"USD": "60.00"}


def test_expired_lease_is_taken_over(app, client):
    group = make_group(client)
    set_lock(app, group["id"], datetime.now(timezone.utc) - timedelta(seconds=1))

    create_expense(client, group["id"])

    data = get_balances(client, group["id"])
    assert data["pending"] is False
    assert data["balances"]["B"] == {"USD": "-30.00"}


def test_recompute_while_locked_is_409(app, client):
    group = make_group(client)
    set_lock(app, group["id"], datetime.now(timezone.utc) + timedelta(minutes=5))

    resp = client.post(f"/api/v1/groups/{group['id']}/balances/recompute")

    assert resp.status_code == 409
    assert resp.get_json()["error"]["code"] == "LEDGER_LOCKED"
