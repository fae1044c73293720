"""
services/ledger_store.py — SQLAlchemy-backed collaborator of the ledger engine.

LedgerStore is an explicitly constructed handle around a SQLAlchemy session
(the Flask-SQLAlchemy scoped session in the app, a plain Session or a mock
in tests). The app factory builds one at start-up and every request handler
and CLI command shares it.

Contract used by ReconciliationCoordinator:
  list_expenses(group_id)         active expenses as ExpenseRecords
  get_group(group_id)             GroupLedger or None
  set_group_balances(id, snap)    ONE UPDATE writing every snapshot column
  latest_expense(group_id)        LastExpense or None
  mark_group_dirty(group_id)      idempotent upsert into dirty_groups
  list_dirty_groups()             DirtyMark entries, oldest first
  clear_group_dirty(id, count)    delete the mark unless re-marked since
  try_acquire_lock(id, lease)     atomic compare-and-set on locked_until
  release_lock(group_id)
  now()                           timezone-aware UTC timestamp
  savepoint() / commit() / rollback()

Only active expenses (deleted_at IS NULL) are ever read for balance purposes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import selectinload

from ledger_service.app.errors import MalformedExpenseError
from ledger_service.app.models.dirty_group import DirtyGroup
from ledger_service.app.models.expense import Expense
from ledger_service.app.models.expense_payer import ExpensePayer  # noqa: F401  mapper of Expense.payers
from ledger_service.app.models.group import Group
from ledger_service.app.models.membership import Membership
from ledger_service.app.services.ledger_aggregator import (
    balances_from_document,
    balances_to_document,
)
from ledger_service.app.services.records import (
    ExpenseRecord,
    GroupLedger,
    LastExpense,
    LedgerSnapshot,
    as_utc,
    record_from_expense,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirtyMark:
    """One pending-recompute entry, as seen when the sweep listed it."""
    group_id: int
    mark_count: int
    marked_at: datetime


class LedgerStore:

    def __init__(self, session) -> None:
        self._session = session

    @property
    def session(self):
        return self._session

    # ── Clock & transactions ───────────────────────────────────────────────

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def savepoint(self):
        """Nested transaction; use as a context manager."""
        return self._session.begin_nested()

    def commit(self) -> None:
        self._session.commit()

    def rollback(self) -> None:
        self._session.rollback()

    # ── Reads ──────────────────────────────────────────────────────────────

    def get_participant_ids(self, group_id: int) -> list[str]:
        """Participant user ids of a group, in joining order."""
        stmt = (
            select(Membership.user_id)
            .where(Membership.group_id == group_id)
            .order_by(Membership.id)
        )
        return list(self._session.execute(stmt).scalars().all())

    def get_group(self, group_id: int) -> GroupLedger | None:
        """Participants and current snapshot of a group, or None if it is gone."""
        # populate_existing: a Group loaded earlier in this transaction may
        # predate the lock acquisition.
        group = self._session.get(Group, group_id, populate_existing=True)
        if group is None:
            return None

        last_expense = None
        if group.last_expense_id is not None and group.last_expense_at is not None:
            last_expense = LastExpense(
                expense_id=group.last_expense_id,
                date=as_utc(group.last_expense_at),
            )

        return GroupLedger(
            group_id=group.id,
            participant_ids=tuple(self.get_participant_ids(group_id)),
            snapshot=LedgerSnapshot(
                balances=balances_from_document(group.participant_balances),
                last_expense=last_expense,
                total_expenses=group.total_expenses,
                expenses_count=group.expenses_count,
            ),
        )

    def list_expenses(self, group_id: int) -> list[ExpenseRecord]:
        """
        Active expenses of a group as records.

        Rows whose stored values cannot be parsed are logged and left out;
        the resolver's own checks catch the rest during the fold.
        """
        stmt = (
            select(Expense)
            .where(
                Expense.group_id == group_id,
                Expense.deleted_at.is_(None),
            )
            .options(selectinload(Expense.payers))
            .order_by(Expense.id)
        )
        records = []
        for expense in self._session.execute(stmt).scalars().all():
            try:
                records.append(record_from_expense(expense))
            except MalformedExpenseError as exc:
                logger.warning(
                    "Group %s: unreadable expense %s left out: %s",
                    group_id, exc.expense_id, exc.reason,
                )
        return records

    def latest_expense(self, group_id: int) -> LastExpense | None:
        """The active expense with the latest business date (highest id on ties)."""
        stmt = (
            select(Expense.id, Expense.expense_date)
            .where(
                Expense.group_id == group_id,
                Expense.deleted_at.is_(None),
            )
            .order_by(Expense.expense_date.desc(), Expense.id.desc())
            .limit(1)
        )
        row = self._session.execute(stmt).first()
        if row is None:
            return None
        return LastExpense(expense_id=row.id, date=as_utc(row.expense_date))

    # ── Snapshot write ─────────────────────────────────────────────────────

    def set_group_balances(self, group_id: int, snapshot: LedgerSnapshot) -> bool:
        """
        Writes the whole snapshot in a single UPDATE statement, never field by
        field. Returns False if the group row no longer exists.
        """
        last = snapshot.last_expense
        stmt = (
            update(Group)
            .where(Group.id == group_id)
            .values(
                participant_balances=balances_to_document(snapshot.balances),
                last_expense_id=last.expense_id if last is not None else None,
                last_expense_at=last.date if last is not None else None,
                total_expenses=snapshot.total_expenses,
                expenses_count=snapshot.expenses_count,
                balances_updated_at=self.now(),
            )
            .execution_options(synchronize_session="fetch")
        )
        result = self._session.execute(stmt)
        return result.rowcount == 1

    # ── Pending-recompute queue ────────────────────────────────────────────

    def _dialect_name(self) -> str:
        return self._session.get_bind().dialect.name

    def mark_group_dirty(self, group_id: int) -> None:
        """
        Idempotent: inserts the mark, or bumps mark_count if one exists.
        Runs in the caller's transaction.
        """
        now = self.now()
        dialect = self._dialect_name()

        if dialect in ("postgresql", "sqlite"):
            dialect_insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = dialect_insert(DirtyGroup).values(
                group_id=group_id, marked_at=now, mark_count=1,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[DirtyGroup.group_id],
                set_={
                    "marked_at": now,
                    "mark_count": DirtyGroup.mark_count + 1,
                },
            )
            self._session.execute(stmt)
            return

        # Other dialects: read-then-write. Not atomic; a concurrent duplicate
        # insert fails on the primary key and the caller's transaction retries.
        existing = self._session.get(DirtyGroup, group_id)
        if existing is None:
            self._session.execute(
                insert(DirtyGroup).values(group_id=group_id, marked_at=now, mark_count=1)
            )
        else:
            existing.marked_at = now
            existing.mark_count = existing.mark_count + 1
            self._session.flush()

    def list_dirty_groups(self) -> list[DirtyMark]:
        stmt = (
            select(DirtyGroup.group_id, DirtyGroup.mark_count, DirtyGroup.marked_at)
            .order_by(DirtyGroup.marked_at, DirtyGroup.group_id)
        )
        return [
            DirtyMark(
                group_id=row.group_id,
                mark_count=row.mark_count,
                marked_at=as_utc(row.marked_at),
            )
            for row in self._session.execute(stmt).all()
        ]

    def get_dirty_mark(self, group_id: int) -> DirtyMark | None:
        stmt = (
            select(DirtyGroup.group_id, DirtyGroup.mark_count, DirtyGroup.marked_at)
            .where(DirtyGroup.group_id == group_id)
        )
        row = self._session.execute(stmt).first()
        if row is None:
            return None
        return DirtyMark(
            group_id=row.group_id,
            mark_count=row.mark_count,
            marked_at=as_utc(row.marked_at),
        )

    def locked_until(self, group_id: int) -> datetime | None:
        stmt = select(Group.locked_until).where(Group.id == group_id)
        value = self._session.execute(stmt).scalar_one_or_none()
        return as_utc(value) if value is not None else None

    def clear_group_dirty(self, group_id: int, mark_count: int | None = None) -> bool:
        """
        Removes the mark. With `mark_count`, only if nobody re-marked the group
        after it was listed. Returns True if a row was deleted.
        """
        stmt = DirtyGroup.__table__.delete().where(DirtyGroup.group_id == group_id)
        if mark_count is not None:
            stmt = stmt.where(DirtyGroup.mark_count == mark_count)
        result = self._session.execute(stmt)
        return result.rowcount == 1

    # ── Incremental-update lock ────────────────────────────────────────────

    def try_acquire_lock(self, group_id: int, lease: timedelta) -> bool:
        """
        Compare-and-set in one conditional UPDATE: succeeds only if the lock
        is free or its lease has expired. Returns True if this caller now
        holds the lock.
        """
        now = self.now()
        stmt = (
            update(Group)
            .where(
                Group.id == group_id,
                or_(Group.locked_until.is_(None), Group.locked_until < now),
            )
            .values(locked_until=now + lease)
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(stmt)
        return result.rowcount == 1

    def release_lock(self, group_id: int) -> None:
        stmt = (
            update(Group)
            .where(Group.id == group_id)
            .values(locked_until=None)
            .execution_options(synchronize_session=False)
        )
        self._session.execute(stmt)
