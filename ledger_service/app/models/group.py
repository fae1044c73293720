"""
models/group.py — Group table definition (ledger aggregate root).

No business logic. No imports from services or routes.

The balance snapshot columns are written together, in one UPDATE, by
LedgerStore.set_group_balances():
  participant_balances, last_expense_id, last_expense_at,
  total_expenses, expenses_count.

participant_balances shape (persisted representation, mapping keyed by
user id, amounts as strings):
    {"alice": {"USD": "50.00", "EUR": "-12.10"}, "bob": {"USD": "-50.00"}}
Zero entries are never stored.

last_expense_id is a plain integer, not a foreign key: groups and expenses
would otherwise reference each other and need a deferred constraint.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, CheckConstraint, DateTime, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_service.app.extensions import db


class Group(db.Model):
    __tablename__ = "groups"

    __table_args__ = (
        CheckConstraint(
            "LENGTH(TRIM(name)) > 0",
            name="ck_groups_name_nonempty",
        ),
        CheckConstraint(
            "expenses_count >= 0",
            name="ck_groups_expenses_count_nonnegative",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    # ── Balance snapshot ───────────────────────────────────────────────────

    participant_balances: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    last_expense_id: Mapped[int | None] = mapped_column(nullable=True)

    last_expense_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Currency-unaware sum of active expense amounts.
    total_expenses: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        nullable=False,
        default=Decimal("0.00"),
        server_default="0",
    )

    expenses_count: Mapped[int] = mapped_column(
        nullable=False,
        default=0,
        server_default="0",
    )

    balances_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Lease of the incremental-update lock (immediate policy). NULL or a
    # timestamp in the past means the lock is free.
    locked_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    memberships: Mapped[list["Membership"]] = relationship(  # noqa: F821
        "Membership",
        back_populates="group",
        cascade="all, delete-orphan",
        order_by="Membership.id",
    )

    expenses: Mapped[list["Expense"]] = relationship(  # noqa: F821
        "Expense",
        back_populates="group",
        foreign_keys="Expense.group_id",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Group id={self.id} name={self.name!r}>"
