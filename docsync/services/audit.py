from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.domain.models import SyncOperation, utc_now
from docsync.persistence.db import SessionFactory


logger = logging.getLogger(__name__)

OP_UPLOAD = "upload"
OP_CONFLICT = "conflict"
OP_DOWNLOAD = "download"
OP_RENAME = "rename"
OP_DELETE = "delete"
OP_RESOLVE = "resolve"
OP_SIGN_URL = "sign_url"
OP_CONFLICT_READ = "conflict_read"

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "credential", "content"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields; document bodies never belong in the log.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_operation(
    *,
    session: AsyncSession | None = None,
    session_factory: SessionFactory | None = None,
    tenant_id: str,
    operation: str,
    document_id: str | None = None,
    path: str | None = None,
    size_bytes: int = 0,
    success: bool = True,
    error_message: str | None = None,
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
    best_effort: bool = True,
) -> None:
    """Append a row to the sync operation log.

    With ``session`` the row joins the caller's transaction and commits or rolls
    back with it. Without one, a short session from ``session_factory`` is used and
    write failures are logged rather than raised.
    """
    row = SyncOperation(
        tenant_id=tenant_id,
        document_id=document_id,
        operation=operation,
        path=path,
        size_bytes=int(size_bytes),
        success=success,
        error_message=error_message,
        metadata_json=sanitize_metadata(metadata) if metadata else None,
        created_at=occurred_at or utc_now(),
    )

    if session is not None:
        session.add(row)
        return

    if session_factory is None:
        raise ValueError("record_operation requires a session or a session_factory")
    async with session_factory() as op_session:
        try:
            op_session.add(row)
            await op_session.commit()
        except SQLAlchemyError as exc:
            await op_session.rollback()
            level = logger.warning if best_effort else logger.error
            level(
                "sync_operation_write_failed operation=%s tenant_id=%s",
                operation,
                tenant_id,
                exc_info=exc,
            )
            if not best_effort:
                raise
