"""
models/expense_payer.py — ExpensePayer table definition.

One row per (expense, payer). Payer amounts are credited independently;
their sum is not required to equal the expense amount.

  - `amount` uses Numeric(12, 2) — never Float.
  - expense_id is ON DELETE CASCADE — payer rows are owned by their expense.
  - `position` keeps the payer order as entered.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_service.app.extensions import db


class ExpensePayer(db.Model):
    __tablename__ = "expense_payers"

    __table_args__ = (
        UniqueConstraint("expense_id", "position", name="uq_expense_payers_position"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    expense_id: Mapped[int] = mapped_column(
        ForeignKey("expenses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    position: Mapped[int] = mapped_column(nullable=False)

    user_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )

    expense: Mapped["Expense"] = relationship(  # noqa: F821
        "Expense",
        back_populates="payers",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<ExpensePayer expense_id={self.expense_id} "
            f"user_id={self.user_id!r} "
            f"amount={self.amount}>"
        )
