"""Initial schema — groups, participants, expenses, payers, pending-recompute queue.

Revision: 001_initial_schema
Created:  2026-10-18

Append-only:
  This file must NEVER be edited after it has been applied to any database.
  If a schema change is required, create a NEW migration file.

Creation order (FK dependencies):
  groups → memberships, expenses → expense_payers, dirty_groups

ON DELETE policies:
  memberships.group_id     → CASCADE   (participants owned by group)
  expenses.group_id        → RESTRICT  (cannot delete a group with expenses)
  expense_payers.expense_id→ CASCADE   (payers owned by expense)
  dirty_groups.group_id    → CASCADE   (a deleted group needs no recompute)

Portable types only (JSON, VARCHAR-backed split_type) so the same schema
runs on PostgreSQL and SQLite.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_initial_schema"
down_revision: str | None = None      # first migration
branch_labels: tuple | None = None
depends_on: tuple | None = None


def upgrade() -> None:

    # ── Step 1: groups (with the balance snapshot columns) ─────────────────

    op.create_table(
        "groups",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("participant_balances", sa.JSON(), nullable=False),
        sa.Column("last_expense_id", sa.Integer(), nullable=True),
        sa.Column("last_expense_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "total_expenses",
            sa.Numeric(14, 2),
            nullable=False,
            server_default="0",
        ),
        sa.Column(
            "expenses_count",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column("balances_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_groups"),
        sa.CheckConstraint(
            "LENGTH(TRIM(name)) > 0",
            name="ck_groups_name_nonempty",
        ),
        sa.CheckConstraint(
            "expenses_count >= 0",
            name="ck_groups_expenses_count_nonnegative",
        ),
    )

    # ── Step 2: memberships ────────────────────────────────────────────────
    # User ids are opaque strings. UNIQUE(group_id, user_id).

    op.create_table(
        "memberships",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("groups.id", ondelete="CASCADE", name="fk_memberships_group"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column(
            "joined_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_memberships"),
        sa.UniqueConstraint("group_id", "user_id", name="uq_memberships_group_user"),
    )

    # ── Step 3: expenses ───────────────────────────────────────────────────
    # deleted_at IS NULL = active; non-null = soft-deleted.
    # custom_splits NULL = absent (equal fallback); [] = malformed.

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("groups.id", ondelete="RESTRICT", name="fk_expenses_group"),
            nullable=False,
        ),
        sa.Column("description", sa.String(255), nullable=False, server_default=""),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column(
            "split_type",
            sa.Enum(
                "equal", "shares", "percent", "custom",
                name="split_type_enum",
                native_enum=False,
                length=16,
            ),
            nullable=False,
            server_default="equal",
        ),
        sa.Column("participant_ids", sa.JSON(), nullable=False),
        sa.Column("custom_splits", sa.JSON(), nullable=True),
        sa.Column("expense_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_expenses"),
        sa.CheckConstraint("amount > 0", name="ck_expenses_amount_positive"),
    )

    # ── Step 4: expense_payers ─────────────────────────────────────────────

    op.create_table(
        "expense_payers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "expense_id",
            sa.Integer(),
            sa.ForeignKey("expenses.id", ondelete="CASCADE", name="fk_expense_payers_expense"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_expense_payers"),
        sa.UniqueConstraint("expense_id", "position", name="uq_expense_payers_position"),
    )

    # ── Step 5: dirty_groups ───────────────────────────────────────────────
    # One row per group awaiting a full recompute. mark_count is bumped on
    # every re-mark; the sweep deletes the row only if it is unchanged.

    op.create_table(
        "dirty_groups",
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("groups.id", ondelete="CASCADE", name="fk_dirty_groups_group"),
            nullable=False,
        ),
        sa.Column("marked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("mark_count", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("group_id", name="pk_dirty_groups"),
    )

    # ── Step 6: Indexes ────────────────────────────────────────────────────

    op.create_index("ix_memberships_group_id", "memberships", ["group_id"])
    op.create_index("ix_expenses_group_id", "expenses", ["group_id"])
    op.create_index("idx_expenses_group_date", "expenses", ["group_id", "expense_date"])
    # Partial index: the ledger only ever reads active expenses.
    op.create_index(
        "idx_expenses_active",
        "expenses",
        ["group_id"],
        postgresql_where=sa.text("deleted_at IS NULL"),
    )
    op.create_index("ix_expense_payers_expense_id", "expense_payers", ["expense_id"])


def downgrade() -> None:
    """
    Drop all objects created in upgrade(), in reverse dependency order.
    For local development reset only; production prefers corrective migrations.
    """
    op.drop_index("ix_expense_payers_expense_id", table_name="expense_payers")
    op.drop_index("idx_expenses_active",          table_name="expenses")
    op.drop_index("idx_expenses_group_date",      table_name="expenses")
    op.drop_index("ix_expenses_group_id",         table_name="expenses")
    op.drop_index("ix_memberships_group_id",      table_name="memberships")

    op.drop_table("dirty_groups")
    op.drop_table("expense_payers")
    op.drop_table("expenses")
    op.drop_table("memberships")
    op.drop_table("groups")
