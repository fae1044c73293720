"""
Unit tests for LedgerStore branches that integration tests on SQLite do not reach.

These tests run DB-free with a mocked session. Statements are inspected
rather than executed.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

from sqlalchemy.dialects.postgresql import Insert as PgInsert
from sqlalchemy.dialects.sqlite import Insert as SqliteInsert
from sqlalchemy.sql.dml import Insert

from ledger_service.app.services.ledger_store import DirtyMark, LedgerStore
from ledger_service.app.services.records import LastExpense, LedgerSnapshot


def _session(dialect: str = "sqlite") -> MagicMock:
    session = MagicMock()
    session.get_bind.return_value.dialect.name = dialect
    return session


def _executed(session: MagicMock):
    return session.execute.call_args.args[0]


# ── Reads ──────────────────────────────────────────────────────────────────

def test_get_group_returns_none_for_missing_row():
    session = _session()
    session.get.return_value = None

    assert LedgerStore(session).get_group(9) is None


def test_get_group_builds_ledger_from_row():
    session = _session()
    session.get.return_value = SimpleNamespace(
        id=3,
        participant_balances={"A": {"USD": "5.00"}, "B": {"USD": "-5.00", "EUR": "0.00"}},
        last_expense_id=11,
        last_expense_at=datetime(2026, 2, 1, 9, 0),
        total_expenses=Decimal("10.00"),
        expenses_count=1,
    )
    session.execute.return_value.scalars.return_value.all.return_value = ["A", "B"]

    ledger = LedgerStore(session).get_group(3)

    assert ledger.participant_ids == ("A", "B")
    assert ledger.snapshot.balances == {
        "A": {"USD": Decimal("5.00")},
        "B": {"USD": Decimal("-5.00")},
    }
    assert ledger.snapshot.last_expense == LastExpense(
        expense_id=11, date=datetime(2026, 2, 1, 9, 0, tzinfo=timezone.utc),
    )
    assert session.get.call_args.kwargs == {"populate_existing": True}


def test_get_group_without_last_expense():
    session = _session()
    session.get.return_value = SimpleNamespace(
        id=3,
        participant_balances=None,
        last_expense_id=None,
        last_expense_at=None,
        total_expenses=Decimal("0.00"),
        expenses_count=0,
    )
    session.execute.return_value.scalars.return_value.all.return_value = []

    ledger = LedgerStore(session).get_group(3)

    assert ledger.snapshot.balances == {}
    assert ledger.snapshot.last_expense is None


def test_list_expenses_leaves_out_unreadable_rows(caplog):
    session = _session()
    good = SimpleNamespace(
        id=1, amount=Decimal("10.00"), currency="USD",
        payers=[SimpleNamespace(user_id="A", amount=Decimal("10.00"))],
        participant_ids=["A"], split_type="equal", custom_splits=None,
        expense_date=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    bad = SimpleNamespace(
        id=2, amount=Decimal("10.00"), currency="USD", payers=[],
        participant_ids=["A"], split_type="thirds", custom_splits=None,
        expense_date=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    session.execute.return_value.scalars.return_value.all.return_value = [good, bad]

    with caplog.at_level("WARNING"):
        records = LedgerStore(session).list_expenses(5)

    assert [r.expense_id for r in records] == [1]
    assert "unreadable expense 2" in caplog.text


def test_latest_expense_none_when_no_rows():
    session = _session()
    session.execute.return_value.first.return_value = None

    assert LedgerStore(session).latest_expense(1) is None


def test_latest_expense_reads_row():
    session = _session()
    session.execute.return_value.first.return_value = SimpleNamespace(
        id=4, expense_date=datetime(2026, 3, 3),
    )

    assert LedgerStore(session).latest_expense(1) == LastExpense(
        expense_id=4, date=datetime(2026, 3, 3, tzinfo=timezone.utc),
    )


# ── Snapshot write ─────────────────────────────────────────────────────────

def test_set_group_balances_writes_every_column_in_one_statement():
    session = _session()
    session.execute.return_value.rowcount = 1
    snapshot = LedgerSnapshot(
        balances={"A": {"USD": Decimal("12.345")}, "B": {"USD": Decimal("-12.345")}},
        last_expense=LastExpense(7, datetime(2026, 1, 1, tzinfo=timezone.utc)),
        total_expenses=Decimal("24.69"),
        expenses_count=2,
    )

    assert LedgerStore(session).set_group_balances(1, snapshot) is True

    session.execute.assert_called_once()
    params = _executed(session).compile().params
    assert params["participant_balances"] == {"A": {"USD": "12.35"}, "B": {"USD": "-12.35"}}
    assert params["last_expense_id"] == 7
    assert params["total_expenses"] == Decimal("24.69")
    assert params["expenses_count"] == 2
    assert params["balances_updated_at"].tzinfo is not None


def test_set_group_balances_false_when_group_gone():
    session = _session()
    session.execute.return_value.rowcount = 0

    assert LedgerStore(session).set_group_balances(1, LedgerSnapshot()) is False


# ── Dirty marks ────────────────────────────────────────────────────────────

def test_mark_group_dirty_uses_sqlite_upsert():
    session = _session("sqlite")

    LedgerStore(session).mark_group_dirty(4)

    assert isinstance(_executed(session), SqliteInsert)


def test_mark_group_dirty_uses_postgresql_upsert():
    session = _session("postgresql")

    LedgerStore(session).mark_group_dirty(4)

    assert isinstance(_executed(session), PgInsert)


def test_mark_group_dirty_other_dialect_inserts_when_missing():
    session = _session("mysql")
    session.get.return_value = None

    LedgerStore(session).mark_group_dirty(4)

    stmt = _executed(session)
    assert isinstance(stmt, Insert)
    assert not isinstance(stmt, (SqliteInsert, PgInsert))


def test_mark_group_dirty_other_dialect_bumps_existing_count():
    session = _session("mysql")
    existing = SimpleNamespace(group_id=4, mark_count=2, marked_at=None)
    session.get.return_value = existing

    LedgerStore(session).mark_group_dirty(4)

    assert existing.mark_count == 3
    assert existing.marked_at is not None
    session.flush.assert_called_once()
    session.execute.assert_not_called()


def test_list_dirty_groups_returns_marks():
    session = _session()
    session.execute.return_value.all.return_value = [
        SimpleNamespace(group_id=1, mark_count=1, marked_at=datetime(2026, 1, 1)),
        SimpleNamespace(group_id=2, mark_count=3, marked_at=datetime(2026, 1, 2)),
    ]

    marks = LedgerStore(session).list_dirty_groups()

    assert marks == [
        DirtyMark(1, 1, datetime(2026, 1, 1, tzinfo=timezone.utc)),
        DirtyMark(2, 3, datetime(2026, 1, 2, tzinfo=timezone.utc)),
    ]


def test_clear_group_dirty_reports_whether_a_row_was_deleted():
    session = _session()
    store = LedgerStore(session)

    session.execute.return_value.rowcount = 1
    assert store.clear_group_dirty(1, mark_count=2) is True

    session.execute.return_value.rowcount = 0
    assert store.clear_group_dirty(1, mark_count=2) is False


def test_clear_group_dirty_with_count_adds_condition():
    session = _session()
    session.execute.return_value.rowcount = 1

    LedgerStore(session).clear_group_dirty(1, mark_count=5)

    assert 5 in _executed(session).compile().params.values()


# ── Lock ───────────────────────────────────────────────────────────────────

def test_try_acquire_lock_true_when_row_updated():
    session = _session()
    session.execute.return_value.rowcount = 1

    assert LedgerStore(session).try_acquire_lock(1, timedelta(seconds=30)) is True


def test_try_acquire_lock_false_when_held():
    session = _session()
    session.execute.return_value.rowcount = 0

    assert LedgerStore(session).try_acquire_lock(1, timedelta(seconds=30)) is False


def test_lock_lease_is_relative_to_now():
    session = _session()
    session.execute.return_value.rowcount = 1
    store = LedgerStore(session)
    fixed = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
    store.now = lambda: fixed

    store.try_acquire_lock(1, timedelta(seconds=30))

    assert _executed(session).compile().params["locked_until"] == fixed + timedelta(seconds=30)


def test_locked_until_reads_as_utc():
    session = _session()
    session.execute.return_value.scalar_one_or_none.return_value = datetime(2026, 1, 1, 0, 0)

    assert LedgerStore(session).locked_until(1) == datetime(2026, 1, 1, tzinfo=timezone.utc)
