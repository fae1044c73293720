"""
services/reconciliation.py — Keeps group balance snapshots in step with expenses.

ReconciliationCoordinator receives one event per expense mutation
(group_id, expense_id, before, after) and decides how the group's snapshot
catches up. The policy is chosen once per deployment
(LEDGER_RECONCILE_POLICY) and applies to every event:

  deferred (default)
      The event only marks the group dirty, in the same transaction as the
      expense write, and returns. sweep() later rebuilds every dirty group
      from its full expense log. Marks are idempotent, so at-least-once
      triggering still yields one effective recompute.

  immediate
      The event takes the group's update lock (one conditional UPDATE with a
      lease, so a crashed holder cannot wedge the group), applies the
      incremental delta, writes the snapshot in one statement and releases
      the lock, all inside a savepoint. If the lock is busy or the update
      raises, the savepoint is rolled back and the group is marked
      dirty instead; the periodic sweep converges it.

Per-group states (LedgerState): IDLE, LOCKED, PENDING_RECOMPUTE.

Failure isolation:
  - One group's failure never aborts the sweep for the others.
  - A group that vanished between mark and sweep is dropped from the queue.
  - Any failure while recomputing a group (store error, unusable stored
    amounts) leaves the mark in place for the next sweep.
  - Expense writers never see reconciliation errors.

Layer rules:
  - No Flask imports. The store handle is passed in.
  - sweep() owns its transactions (commit per group). on_expense_mutation()
    and on_participants_changed() run in the caller's transaction; the route
    commits.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from ledger_service.app.errors import AppError, ErrorCode
from ledger_service.app.services.ledger_aggregator import apply_delta, rebuild_snapshot
from ledger_service.app.services.ledger_store import DirtyMark, LedgerStore
from ledger_service.app.services.records import ExpenseRecord, GroupLedger, LedgerSnapshot

logger = logging.getLogger(__name__)


class ReconcilePolicy(str, enum.Enum):
    DEFERRED  = "deferred"
    IMMEDIATE = "immediate"


class LedgerState(str, enum.Enum):
    IDLE              = "idle"
    LOCKED            = "locked"
    PENDING_RECOMPUTE = "pending_recompute"


@dataclass
class SweepReport:
    recomputed: list[int] = field(default_factory=list)
    dropped:    list[int] = field(default_factory=list)
    deferred:   list[int] = field(default_factory=list)  # lock busy, still dirty
    failed:     list[int] = field(default_factory=list)  # recompute raised, still dirty

    @property
    def processed(self) -> int:
        return len(self.recomputed) + len(self.dropped) + len(self.deferred) + len(self.failed)


class ReconciliationCoordinator:

    def __init__(
            self,
            store: LedgerStore,
            policy: ReconcilePolicy | str = ReconcilePolicy.DEFERRED,
            lock_lease: timedelta = timedelta(seconds=30),
    ) -> None:
        self._store = store
        self._policy = ReconcilePolicy(policy)
        self._lock_lease = lock_lease

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def policy(self) -> ReconcilePolicy:
        return self._policy

    # ── Event path ─────────────────────────────────────────────────────────

    def on_expense_mutation(
            self,
            group_id: int,
            expense_id,
            before: ExpenseRecord | None,
            after: ExpenseRecord | None,
    ) -> LedgerState:
        """
        Handles one expense transition. Absent `before` = create, absent
        `after` = delete, both present = update.

        Returns the group's state once the event has been handled.
        """
        if before is None and after is None:
            return LedgerState.IDLE

        if self._policy == ReconcilePolicy.DEFERRED:
            self._store.mark_group_dirty(group_id)
            logger.debug("Group %s marked dirty by expense %s", group_id, expense_id)
            return LedgerState.PENDING_RECOMPUTE

        return self._apply_immediately(group_id, expense_id, before, after)

    def _apply_immediately(
            self,
            group_id: int,
            expense_id,
            before: ExpenseRecord | None,
            after: ExpenseRecord | None,
    ) -> LedgerState:
        acquired = False
        try:
            with self._store.savepoint():
                acquired = self._store.try_acquire_lock(group_id, self._lock_lease)
                if acquired:
                    self._apply_locked(group_id, before, after)
        except Exception:
            logger.exception(
                "Incremental update of group %s for expense %s failed; "
                "deferring to the next sweep",
                group_id, expense_id,
            )
            self._store.mark_group_dirty(group_id)
            return LedgerState.PENDING_RECOMPUTE

        if not acquired:
            logger.info(
                "Group %s is locked; expense %s deferred to the next sweep",
                group_id, expense_id,
            )
            self._store.mark_group_dirty(group_id)
            return LedgerState.PENDING_RECOMPUTE

        return LedgerState.IDLE

    def _apply_locked(
            self,
            group_id: int,
            before: ExpenseRecord | None,
            after: ExpenseRecord | None,
    ) -> None:
        ledger = self._store.get_group(group_id)
        if ledger is None:
            # The lock UPDATE matched a row, so this only happens if the row
            # vanished in between. Nothing left to update.
            return

        snapshot = apply_delta(
            ledger.snapshot,
            before,
            after,
            ledger.participant_ids,
            find_latest=lambda: self._store.latest_expense(group_id),
        )
        self._store.set_group_balances(group_id, snapshot)
        self._store.release_lock(group_id)
        logger.debug("Group %s snapshot updated incrementally", group_id)

    def on_participants_changed(self, group_id: int, participant_ids) -> LedgerState:
        """
        Participant changes cannot be applied incrementally: every expense's
        valid-participant set may change. An empty list clears balances at
        once; anything else queues a full recompute.
        """
        if not list(participant_ids):
            ledger = self._store.get_group(group_id)
            if ledger is not None:
                self._store.set_group_balances(
                    group_id, replace(ledger.snapshot, balances={})
                )
            logger.info("Group %s has no participants; balances cleared", group_id)
            return LedgerState.IDLE

        self._store.mark_group_dirty(group_id)
        return LedgerState.PENDING_RECOMPUTE

    def group_state(self, group_id: int) -> LedgerState:
        locked_until = self._store.locked_until(group_id)
        if locked_until is not None and locked_until > self._store.now():
            return LedgerState.LOCKED
        if self._store.get_dirty_mark(group_id) is not None:
            return LedgerState.PENDING_RECOMPUTE
        return LedgerState.IDLE

    # ── Full recompute path ────────────────────────────────────────────────

    def _rebuild(self, ledger: GroupLedger) -> LedgerSnapshot:
        expenses = self._store.list_expenses(ledger.group_id)
        return rebuild_snapshot(expenses, ledger.participant_ids)

    def reconcile_group(self, group_id: int) -> LedgerSnapshot:
        """
        Synchronous full recompute of one group, in the caller's transaction.
        Clears the group's dirty mark unless it was re-marked meanwhile.

        Raises:
            AppError(GROUP_NOT_FOUND, 404)
            AppError(LEDGER_LOCKED, 409) — immediate policy, lock held.
        """
        ledger = self._store.get_group(group_id)
        if ledger is None:
            raise AppError(
                ErrorCode.GROUP_NOT_FOUND,
                f"Group {group_id} does not exist.",
                404,
            )

        mark = self._store.get_dirty_mark(group_id)
        snapshot = self._recompute_locked(ledger)
        if snapshot is None:
            raise AppError(
                ErrorCode.LEDGER_LOCKED,
                f"Group {group_id} is being updated. Try again shortly.",
                409,
            )
        if mark is not None:
            self._store.clear_group_dirty(group_id, mark.mark_count)
        return snapshot

    def _recompute_locked(self, ledger: GroupLedger) -> LedgerSnapshot | None:
        """
        Rebuilds and persists one group's snapshot. Under the immediate policy
        the update lock is held for the duration; returns None if it is busy.
        """
        group_id = ledger.group_id
        locked = False
        if self._policy == ReconcilePolicy.IMMEDIATE:
            if not self._store.try_acquire_lock(group_id, self._lock_lease):
                return None
            locked = True

        snapshot = self._rebuild(ledger)
        self._store.set_group_balances(group_id, snapshot)

        if locked:
            self._store.release_lock(group_id)
        return snapshot

    def _sweep_one(self, mark: DirtyMark) -> str:
        """Handles one dirty group; returns the SweepReport bucket it belongs in."""
        group_id = mark.group_id
        ledger = self._store.get_group(group_id)
        if ledger is None:
            self._store.clear_group_dirty(group_id)
            logger.warning("Group %s no longer exists; dropping its pending recompute", group_id)
            return "dropped"

        if self._recompute_locked(ledger) is None:
            logger.info("Group %s is locked; leaving it for the next sweep", group_id)
            return "deferred"

        if not self._store.clear_group_dirty(group_id, mark.mark_count):
            logger.debug("Group %s was re-marked during the sweep; keeping the mark", group_id)
        return "recomputed"

    def sweep(self) -> SweepReport:
        """
        One pass over every dirty group. Commits after each group; a failing
        group is rolled back and stays dirty, and the pass moves on.
        """
        report = SweepReport()
        try:
            marks = self._store.list_dirty_groups()
        except SQLAlchemyError:
            logger.exception("Could not list dirty groups; skipping this sweep")
            self._store.rollback()
            return report

        for mark in marks:
            try:
                outcome = self._sweep_one(mark)
                self._store.commit()
            except Exception:
                self._store.rollback()
                logger.exception(
                    "Recompute of group %s failed; it stays marked for retry",
                    mark.group_id,
                )
                report.failed.append(mark.group_id)
                continue
            getattr(report, outcome).append(mark.group_id)

        if marks:
            logger.info(
                "Sweep done: %d recomputed, %d dropped, %d deferred, %d failed",
                len(report.recomputed), len(report.dropped),
                len(report.deferred), len(report.failed),
            )
        return report
