"""
models/split_record.py — Split record table definition.

One row per live split, addressed by its PIN. The whole Split Document is
stored as JSON in `data` and overwritten wholesale on every write; the store
does no merging. No business logic. No imports from services or routes.

Key design points:
  - `pin` is unique; creating a second row with the same PIN is a collision.
  - `revision` is bumped on every overwrite. It is store bookkeeping only and
    is never part of the document clients see.
  - `last_writer_id` / `last_write_seq` record the origin of the latest write
    so change notifications can carry it for echo correlation.
  - SplitStatus is a Python enum so schemas and services can import it without
    repeating string literals.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, CheckConstraint, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from splitroom.app.extensions import db


# ── Enum Definitions ───────────────────────────────────────────────────────

class SplitStatus(str, enum.Enum):
    """Lifecycle of a split: waiting → active ⇄ locked → ended."""
    WAITING = "waiting"
    ACTIVE  = "active"
    LOCKED  = "locked"
    ENDED   = "ended"


# ── Model ──────────────────────────────────────────────────────────────────

class SplitRecord(db.Model):
    __tablename__ = "splits"

    __table_args__ = (
        CheckConstraint(
            "LENGTH(TRIM(pin)) > 0",
            name="ck_splits_pin_nonempty",
        ),
        CheckConstraint("revision >= 1", name="ck_splits_revision_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    pin: Mapped[str] = mapped_column(
        String(12),
        nullable=False,
        unique=True,
        index=True,
    )

    # Full Split Document in wire (camelCase) form.
    data: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )

    revision: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    last_writer_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    last_write_seq: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Set on every successful overwrite.
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<SplitRecord id={self.id} "
            f"pin={self.pin!r} "
            f"revision={self.revision}>"
        )
