"""
models/dirty_group.py — Pending-recompute queue.

A row means "this group's balance snapshot must be recomputed by the next
sweep". Marking is an upsert: a second mark for the same group bumps
`mark_count` instead of inserting a duplicate, so any number of events
collapses into one sweep pass.

The sweep clears a row only when `mark_count` still equals the value it saw
when it started on that group. A mark that lands while the recompute is
running therefore survives and is picked up by the following sweep.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from ledger_service.app.extensions import db


class DirtyGroup(db.Model):
    __tablename__ = "dirty_groups"

    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"),
        primary_key=True,
    )

    marked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    mark_count: Mapped[int] = mapped_column(
        nullable=False,
        default=1,
        server_default="1",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<DirtyGroup group_id={self.group_id} "
            f"mark_count={self.mark_count}>"
        )
