"""sync catalog, ledger, conflicts, operation log and local blobs

Revision ID: 0001_sync_core
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_sync_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sync_documents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("content_hash", sa.String(), nullable=False),
        sa.Column("sidecar_hash", sa.String(), nullable=False),
        sa.Column("content_key", sa.String(), nullable=False),
        sa.Column("sidecar_key", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_documents_tenant_id", "sync_documents", ["tenant_id"])
    # Canonical paths are unique per tenant among live rows only.
    op.create_index(
        "uq_sync_documents_live_path",
        "sync_documents",
        ["tenant_id", "path"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
        sqlite_where=sa.text("deleted_at IS NULL"),
    )
    op.create_index(
        "ix_sync_documents_tenant_updated", "sync_documents", ["tenant_id", "updated_at", "id"]
    )
    op.create_index("ix_sync_documents_deleted_at", "sync_documents", ["deleted_at"])

    op.create_table(
        "sync_usage",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("document_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_size_bytes", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "sync_conflicts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("document_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("local_version", sa.Integer(), nullable=False),
        sa.Column("remote_version", sa.Integer(), nullable=False),
        sa.Column("local_content_hash", sa.String(), nullable=False),
        sa.Column("local_sidecar_hash", sa.String(), nullable=False),
        sa.Column("remote_content_hash", sa.String(), nullable=False),
        sa.Column("local_blob_key", sa.String(), nullable=False),
        sa.Column("local_sidecar_key", sa.String(), nullable=False),
        sa.Column("remote_blob_key", sa.String(), nullable=False),
        sa.Column("remote_sidecar_key", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_conflicts_document_id", "sync_conflicts", ["document_id"])
    op.create_index("ix_sync_conflicts_tenant_id", "sync_conflicts", ["tenant_id"])
    op.create_index("ix_sync_conflicts_tenant_open", "sync_conflicts", ["tenant_id", "resolved_at"])

    # Append-only audit of sync calls; trimmed by the sweeper.
    op.create_table(
        "sync_operations",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("document_id", sa.String(), nullable=True),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("path", sa.Text(), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sync_operations_tenant_id", "sync_operations", ["tenant_id"])
    op.create_index("ix_sync_operations_operation", "sync_operations", ["operation"])
    op.create_index("ix_sync_operations_created_at", "sync_operations", ["created_at"])

    # Local blob variant: current and preserved bytes stored as rows.
    op.create_table(
        "sync_blobs",
        sa.Column("document_id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("role", sa.String(), primary_key=True),
        sa.Column("data", sa.LargeBinary(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "sync_conflict_blobs",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("document_id", sa.String(), primary_key=True),
        sa.Column("version", sa.Integer(), primary_key=True),
        sa.Column("role", sa.String(), primary_key=True),
        sa.Column("data", sa.LargeBinary(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("sync_conflict_blobs")
    op.drop_table("sync_blobs")
    op.drop_index("ix_sync_operations_created_at", table_name="sync_operations")
    op.drop_index("ix_sync_operations_operation", table_name="sync_operations")
    op.drop_index("ix_sync_operations_tenant_id", table_name="sync_operations")
    op.drop_table("sync_operations")
    op.drop_index("ix_sync_conflicts_tenant_open", table_name="sync_conflicts")
    op.drop_index("ix_sync_conflicts_tenant_id", table_name="sync_conflicts")
    op.drop_index("ix_sync_conflicts_document_id", table_name="sync_conflicts")
    op.drop_table("sync_conflicts")
    op.drop_table("sync_usage")
    op.drop_index("ix_sync_documents_deleted_at", table_name="sync_documents")
    op.drop_index("ix_sync_documents_tenant_updated", table_name="sync_documents")
    op.drop_index("uq_sync_documents_live_path", table_name="sync_documents")
    op.drop_index("ix_sync_documents_tenant_id", table_name="sync_documents")
    op.drop_table("sync_documents")
