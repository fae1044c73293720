"""
models/expense.py — Expense table definition.

No business logic. No imports from services or routes.

Key design points:
  - `deleted_at` is NULL for active expenses, non-null for soft-deleted ones.
    Every balance computation reads active expenses only.
  - `amount` uses Numeric(12, 2) — never Float.
  - `participant_ids` and `custom_splits` are JSON columns. `custom_splits`
    distinguishes "absent" (NULL, equal fallback) from "empty" ([],
    malformed), which a child table cannot.
    custom_splits shape: [{"user_id": "<id>", "value": "<decimal string>"}]
  - Payers live in expense_payers (one row per payer, ordered by position).
  - SplitType is a Python enum so it can be imported by schemas and services
    without repeating string literals.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_service.app.extensions import db


# ── Enum Definitions ───────────────────────────────────────────────────────

class SplitType(str, enum.Enum):
    """How an expense's cost is distributed across its participants."""
    EQUAL   = "equal"
    SHARES  = "shares"
    PERCENT = "percent"
    CUSTOM  = "custom"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Ensure SQLAlchemy stores enum values (e.g., 'custom'), not names ('CUSTOM')."""
    return [member.value for member in enum_cls]


# ── Model ──────────────────────────────────────────────────────────────────

class Expense(db.Model):
    __tablename__ = "expenses"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_expenses_amount_positive"),

        # Active-only expense lookups per group (full recompute, latest expense).
        Index("idx_expenses_group_date", "group_id", "expense_date"),
        Index(
            "idx_expenses_active",
            "group_id",
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    description: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
        server_default="",
    )

    # NUMERIC(12, 2). Never Float.
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )

    # Upper-cased ISO-like code, e.g. "USD".
    currency: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
    )

    split_type: Mapped[SplitType] = mapped_column(
        Enum(
            SplitType,
            name="split_type_enum",
            native_enum=False,
            length=16,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=SplitType.EQUAL,
        server_default=SplitType.EQUAL.value,
    )

    participant_ids: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    # NULL = absent. Weights, percentages or literal amounts by split_type.
    custom_splits: Mapped[list | None] = mapped_column(
        JSON,
        nullable=True,
    )

    # Business date of the expense; orders "most recent expense".
    expense_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # NULL = active; NOT NULL = soft-deleted. Never hard-delete via the API.
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # ── Relationships ──────────────────────────────────────────────────────

    group: Mapped["Group"] = relationship(  # noqa: F821
        "Group",
        back_populates="expenses",
        foreign_keys=[group_id],
    )

    payers: Mapped[list["ExpensePayer"]] = relationship(  # noqa: F821
        "ExpensePayer",
        back_populates="expense",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ExpensePayer.position",
    )

    @property
    def is_deleted(self) -> bool:
        """True if this expense has been soft-deleted."""
        return self.deleted_at is not None

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Expense id={self.id} "
            f"group_id={self.group_id} "
            f"amount={self.amount} {self.currency} "
            f"deleted={self.is_deleted}>"
        )
