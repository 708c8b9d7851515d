from __future__ import annotations

from dataclasses import dataclass


ROLE_CONTENT = "content"
ROLE_SIDECAR = "sidecar"
ROLES = (ROLE_CONTENT, ROLE_SIDECAR)

CONTENT_MIME = "text/markdown; charset=utf-8"
SIDECAR_MIME = "application/json"


@dataclass(frozen=True)
class BlobAddress:
    # Parsed form of a key; version is set only for preserved conflict revisions,
    # revision only for current pairs written under a per-write segment.
    tenant_id: str
    document_id: str
    role: str
    version: int | None = None
    revision: str | None = None


def tenant_prefix(tenant_id: str) -> str:
    return f"tenants/{tenant_id}/"


def document_prefix(tenant_id: str, document_id: str) -> str:
    return f"{tenant_prefix(tenant_id)}documents/{document_id}/"


def document_key(tenant_id: str, document_id: str, role: str, revision: str = "") -> str:
    # An empty revision is the unsegmented layout; catalog rows written before
    # per-write revisions still point at it.
    if not revision:
        return f"{document_prefix(tenant_id, document_id)}{role}"
    return f"{document_prefix(tenant_id, document_id)}{revision}/{role}"


def conflict_key(tenant_id: str, document_id: str, version: int, role: str) -> str:
    return f"{tenant_prefix(tenant_id)}conflicts/{document_id}/{version}/{role}"


def parse_key(key: str) -> BlobAddress:
    # Inverse of document_key/conflict_key; anything else is not a key this service issues.
    parts = key.split("/")
    if len(parts) == 5 and parts[0] == "tenants" and parts[2] == "documents" and parts[4] in ROLES:
        return BlobAddress(tenant_id=parts[1], document_id=parts[3], role=parts[4])
    if len(parts) == 6 and parts[0] == "tenants" and parts[2] == "documents" and parts[5] in ROLES:
        if not parts[4]:
            raise ValueError(f"Malformed document key: {key}")
        return BlobAddress(
            tenant_id=parts[1], document_id=parts[3], role=parts[5], revision=parts[4]
        )
    if len(parts) == 6 and parts[0] == "tenants" and parts[2] == "conflicts" and parts[5] in ROLES:
        try:
            version = int(parts[4])
        except ValueError as exc:
            raise ValueError(f"Malformed conflict key: {key}") from exc
        return BlobAddress(
            tenant_id=parts[1], document_id=parts[3], role=parts[5], version=version
        )
    raise ValueError(f"Unrecognised blob key: {key}")


def mime_for_role(role: str) -> str:
    return CONTENT_MIME if role == ROLE_CONTENT else SIDECAR_MIME
