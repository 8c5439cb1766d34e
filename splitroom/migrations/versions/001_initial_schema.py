"""Initial schema — the splits table.

Revision: 001_initial_schema
Created:  2026-10-19

One row per live split. The Split Document is stored whole in `data` as
JSON (JSONB on PostgreSQL via the generic JSON type) and overwritten on
every write.

Append-only:
  This file must NEVER be edited after it has been applied to any database.
  If a schema change is required, create a NEW migration file.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_initial_schema"
down_revision: str | None = None      # first migration — no parent
branch_labels: tuple | None = None
depends_on: tuple | None = None


def upgrade() -> None:
    op.create_table(
        "splits",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("pin", sa.String(12), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column(
            "revision",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
        ),
        sa.Column("last_writer_id", sa.String(64), nullable=True),
        sa.Column("last_write_seq", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_splits"),
        sa.UniqueConstraint("pin", name="uq_splits_pin"),
        sa.CheckConstraint(
            "LENGTH(TRIM(pin)) > 0",
            name="ck_splits_pin_nonempty",
        ),
        sa.CheckConstraint(
            "revision >= 1",
            name="ck_splits_revision_positive",
        ),
    )

    op.create_index("idx_splits_pin", "splits", ["pin"])


def downgrade() -> None:
    """Local development reset only; production uses corrective migrations."""
    op.drop_index("idx_splits_pin", table_name="splits")
    op.drop_table("splits")
