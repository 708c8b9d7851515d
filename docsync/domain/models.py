from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    JSON,
    LargeBinary,
    String,
    Text,
    TypeDecorator,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL, plain JSON text on SQLite for local and test databases.
JsonType = JSONB().with_variant(JSON(), "sqlite")


class UtcDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every dialect.

    SQLite drops offsets on storage, so values are normalised to UTC on the way in
    and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class SyncDocument(Base):
    __tablename__ = "sync_documents"
    __table_args__ = (
        # Canonical paths are unique per tenant among live rows only.
        Index(
            "uq_sync_documents_live_path",
            "tenant_id",
            "path",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index("ix_sync_documents_tenant_updated", "tenant_id", "updated_at", "id"),
        Index("ix_sync_documents_deleted_at", "deleted_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    path: Mapped[str] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    content_hash: Mapped[str] = mapped_column(String)
    sidecar_hash: Mapped[str] = mapped_column(String)
    # Opaque blob locators; the blob store owns the bytes.
    content_key: Mapped[str] = mapped_column(String)
    sidecar_key: Mapped[str] = mapped_column(String)
    # Bytes charged to the tenant ledger when this row was written.
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    deleted_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class SyncUsage(Base):
    __tablename__ = "sync_usage"

    # One ledger row per tenant; counts mirror live sync_documents rows.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    document_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_size_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)


class SyncConflict(Base):
    __tablename__ = "sync_conflicts"
    __table_args__ = (
        Index("ix_sync_conflicts_tenant_open", "tenant_id", "resolved_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Weak reference; the document may be purged before the conflict is swept.
    document_id: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Path of the document when the conflict was captured, kept for purged documents.
    path: Mapped[str] = mapped_column(Text)
    local_version: Mapped[int] = mapped_column(Integer)
    remote_version: Mapped[int] = mapped_column(Integer)
    local_content_hash: Mapped[str] = mapped_column(String)
    local_sidecar_hash: Mapped[str] = mapped_column(String)
    remote_content_hash: Mapped[str] = mapped_column(String)
    local_blob_key: Mapped[str] = mapped_column(String)
    local_sidecar_key: Mapped[str] = mapped_column(String)
    remote_blob_key: Mapped[str] = mapped_column(String)
    remote_sidecar_key: Mapped[str] = mapped_column(String)
    local_size_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    resolved_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    resolution: Mapped[str | None] = mapped_column(String, nullable=True)


class SyncOperation(Base):
    __tablename__ = "sync_operations"

    # Append-only audit of sync calls; trimmed by the sweeper.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    document_id: Mapped[str | None] = mapped_column(String, nullable=True)
    operation: Mapped[str] = mapped_column(String, index=True)
    path: Mapped[str | None] = mapped_column(Text, nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Free-form context (error kind, conflict id, rename source) for investigations.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, index=True)


class SyncBlob(Base):
    __tablename__ = "sync_blobs"

    # Local blob variant: content/sidecar bytes per document write revision.
    document_id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    revision: Mapped[str] = mapped_column(String, primary_key=True, default="", server_default="")
    role: Mapped[str] = mapped_column(String, primary_key=True)
    data: Mapped[bytes] = mapped_column(LargeBinary)
    content_type: Mapped[str] = mapped_column(String)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)


class SyncConflictBlob(Base):
    __tablename__ = "sync_conflict_blobs"

    # Local blob variant: preserved revisions addressed by base version.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    document_id: Mapped[str] = mapped_column(String, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    role: Mapped[str] = mapped_column(String, primary_key=True)
    data: Mapped[bytes] = mapped_column(LargeBinary)
    content_type: Mapped[str] = mapped_column(String)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
