from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import json
from typing import Any

from sqlalchemy import and_, or_
from sqlalchemy.sql import ColumnElement


LIST_SCOPE = "sync.status"


class CursorError(ValueError):
    # Raise for malformed or tampered cursor tokens.
    pass


@dataclass(frozen=True)
class ListCursor:
    # Position after the last returned row: (updated_at, id) in descending order.
    updated_at: datetime
    document_id: str


def encode_cursor(payload: dict[str, Any], secret: str) -> str:
    # Sign cursor payloads to prevent client-side tampering.
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    encoded = base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")
    return f"{encoded}.{signature}"


def decode_cursor(token: str, secret: str) -> dict[str, Any]:
    # Verify cursor signatures and return the decoded payload.
    try:
        encoded, signature = token.split(".", 1)
    except ValueError as exc:
        raise CursorError("Invalid cursor format") from exc
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("utf-8"))
    except (ValueError, binascii.Error) as exc:
        raise CursorError("Invalid cursor encoding") from exc
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise CursorError("Invalid cursor signature")
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise CursorError("Invalid cursor payload") from exc
    if not isinstance(payload, dict):
        raise CursorError("Invalid cursor payload")
    return payload


def build_list_cursor(*, tenant_id: str, updated_at: datetime, document_id: str, secret: str) -> str:
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    payload = {
        "scope": LIST_SCOPE,
        "tenant_id": tenant_id,
        "updated_at": updated_at.astimezone(timezone.utc).isoformat(),
        "id": document_id,
    }
    return encode_cursor(payload, secret)


def parse_list_cursor(token: str, *, tenant_id: str, secret: str) -> ListCursor:
    payload = decode_cursor(token, secret)
    # A cursor minted for another tenant or listing is never honoured.
    if payload.get("scope") != LIST_SCOPE or payload.get("tenant_id") != tenant_id:
        raise CursorError("Cursor does not match this listing")
    raw_ts = payload.get("updated_at")
    document_id = payload.get("id")
    if not isinstance(raw_ts, str) or not isinstance(document_id, str) or not document_id:
        raise CursorError("Invalid cursor payload")
    try:
        updated_at = datetime.fromisoformat(raw_ts)
    except ValueError as exc:
        raise CursorError("Invalid cursor timestamp") from exc
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    return ListCursor(updated_at=updated_at, document_id=document_id)


def after_cursor(
    cursor: ListCursor,
    *,
    updated_at_column: ColumnElement[Any],
    id_column: ColumnElement[Any],
) -> ColumnElement[bool]:
    # Exclusive on updated_at, with id as the tie-break among equal timestamps.
    return or_(
        updated_at_column < cursor.updated_at,
        and_(updated_at_column == cursor.updated_at, id_column < cursor.document_id),
    )
