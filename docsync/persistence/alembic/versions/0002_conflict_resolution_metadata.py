"""conflict resolution bookkeeping and operation/blob metadata

Revision ID: 0002_conflict_resolution_metadata
Revises: 0001_sync_core
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_conflict_resolution_metadata"
down_revision = "0001_sync_core"
branch_labels = None
depends_on = None


_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")

# Additive only: each column is created when the live schema does not already carry it.
_COLUMNS: tuple[tuple[str, sa.Column], ...] = (
    ("sync_conflicts", sa.Column("resolution", sa.String(), nullable=True)),
    (
        "sync_conflicts",
        sa.Column("local_size_bytes", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
    ),
    ("sync_operations", sa.Column("metadata_json", _JSON, nullable=True)),
    ("sync_blobs", sa.Column("metadata_json", _JSON, nullable=True)),
    ("sync_conflict_blobs", sa.Column("metadata_json", _JSON, nullable=True)),
)


def _existing_columns(table: str) -> set[str]:
    inspector = sa.inspect(op.get_bind())
    return {column["name"] for column in inspector.get_columns(table)}


def upgrade() -> None:
    for table, column in _COLUMNS:
        if column.name not in _existing_columns(table):
            op.add_column(table, column)


def downgrade() -> None:
    for table, column in reversed(_COLUMNS):
        if column.name in _existing_columns(table):
            op.drop_column(table, column.name)
