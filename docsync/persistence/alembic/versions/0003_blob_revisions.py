"""per-write revision segment for local current blobs

Revision ID: 0003_blob_revisions
Revises: 0002_conflict_resolution_metadata
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0003_blob_revisions"
down_revision = "0002_conflict_resolution_metadata"
branch_labels = None
depends_on = None


_TABLE = "sync_blobs"
_PK_NAME = "sync_blobs_pkey"
_OLD_PK = ["document_id", "tenant_id", "role"]
_NEW_PK = ["document_id", "tenant_id", "revision", "role"]


def _rebuild_primary_key(columns: list[str]) -> None:
    bind = op.get_bind()
    current = sa.inspect(bind).get_pk_constraint(_TABLE)
    if list(current.get("constrained_columns") or []) == columns:
        return
    if bind.dialect.name == "sqlite":
        # SQLite cannot alter constraints in place; batch mode copies the table.
        with op.batch_alter_table(_TABLE, recreate="always") as batch:
            batch.create_primary_key(_PK_NAME, columns)
        return
    op.drop_constraint(current.get("name") or _PK_NAME, _TABLE, type_="primary")
    op.create_primary_key(_PK_NAME, _TABLE, columns)


def upgrade() -> None:
    existing = {column["name"] for column in sa.inspect(op.get_bind()).get_columns(_TABLE)}
    if "revision" not in existing:
        # Rows written before this revision keep the unsegmented key layout.
        op.add_column(
            _TABLE,
            sa.Column("revision", sa.String(), nullable=False, server_default=sa.text("''")),
        )
    _rebuild_primary_key(_NEW_PK)


def downgrade() -> None:
    existing = {column["name"] for column in sa.inspect(op.get_bind()).get_columns(_TABLE)}
    if "revision" not in existing:
        return
    # Segmented rows cannot be addressed by the old key layout.
    op.execute(sa.text("DELETE FROM sync_blobs WHERE revision <> ''"))
    _rebuild_primary_key(_OLD_PK)
    with op.batch_alter_table(_TABLE) as batch:
        batch.drop_column("revision")
