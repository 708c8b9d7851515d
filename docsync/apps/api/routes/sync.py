from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from docsync.apps.api.deps import Coordinator, CurrentPrincipal, Principal
from docsync.apps.api.errors import fail_to_http
from docsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from docsync.apps.api.response import success_response
from docsync.domain.models import SyncConflict, SyncDocument
from docsync.domain.results import Fail, Result
from docsync.services.conflicts import RevisionPayload
from docsync.services.cursors import CursorError
from docsync.services.sync import SyncCoordinator


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"], responses=DEFAULT_ERROR_RESPONSES)


class UploadRequest(BaseModel):
    path: str
    content: str
    # Validated by the coordinator so malformed sidecars surface as INVALID_SIDECAR.
    sidecar: Any = Field(default_factory=dict)
    base_version: int | None = Field(default=None, alias="baseVersion", ge=0)

    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "path": "notes/plan.md",
                    "content": "# Plan\n",
                    "sidecar": {"tags": ["work"]},
                    "baseVersion": 3,
                }
            ]
        },
    )


class RenameRequest(BaseModel):
    path: str

    model_config = ConfigDict(extra="forbid")


class ResolveRequest(BaseModel):
    resolution: Literal["local", "remote", "both"]

    model_config = ConfigDict(extra="forbid")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _document_payload(document: SyncDocument) -> dict[str, Any]:
    return {
        "id": document.id,
        "path": document.path,
        "version": int(document.version),
        "contentHash": document.content_hash,
        "sidecarHash": document.sidecar_hash,
        "sizeBytes": int(document.size_bytes or 0),
        "createdAt": _iso(document.created_at),
        "updatedAt": _iso(document.updated_at),
        "deletedAt": _iso(document.deleted_at),
        "deleted": document.deleted_at is not None,
    }


def _conflict_payload(conflict: SyncConflict) -> dict[str, Any]:
    return {
        "id": conflict.id,
        "documentId": conflict.document_id,
        "path": conflict.path,
        "localVersion": int(conflict.local_version),
        "remoteVersion": int(conflict.remote_version),
        "createdAt": _iso(conflict.created_at),
        "resolvedAt": _iso(conflict.resolved_at),
        "resolution": conflict.resolution,
        "resolved": conflict.resolved_at is not None,
    }


def _revision_payload(revision: RevisionPayload | None) -> dict[str, Any] | None:
    if revision is None:
        return None
    return {
        "version": revision.version,
        "content": revision.content,
        "sidecar": revision.sidecar,
        "contentHash": revision.content_hash,
    }


def _unwrap(result: Result[Any]) -> Any:
    # Map domain failures onto the versioned error envelope.
    if isinstance(result, Fail):
        raise fail_to_http(result)
    return result.value


@router.get("/status")
async def sync_status(
    request: Request,
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = Query(default=None),
    principal: Principal = CurrentPrincipal,
    coordinator: SyncCoordinator = Coordinator,
) -> dict:
    try:
        result = await coordinator.status(
            tenant_id=principal.tenant_id, tier=principal.tier, limit=limit, cursor=cursor
        )
    except CursorError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_CURSOR", "message": str(exc) or "Invalid cursor"},
        ) from exc
    view = _unwrap(result)
    payload = {
        "documents": [_document_payload(document) for document in view.documents],
        "conflicts": [_conflict_payload(conflict) for conflict in view.conflicts],
        "usage": view.usage,
        "nextCursor": view.next_cursor,
        "storageAvailable": view.storage_available,
        "backend": view.backend,
    }
    return success_response(request=request, data=payload)


@router.get("/usage")
async def sync_usage(
    request: Request,
    principal: Principal = CurrentPrincipal,
    coordinator: SyncCoordinator = Coordinator,
) -> dict:
    usage = _unwrap(await coordinator.usage(tenant_id=principal.tenant_id, tier=principal.tier))
    return success_response(request=request, data=usage)


@router.post("/documents")
async def upload_document(
    request: Request,
    payload: UploadRequest,
    principal: Principal = CurrentPrincipal,
    coordinator: SyncCoordinator = Coordinator,
) -> dict:
    document = _unwrap(
        await coordinator.upload(
            tenant_id=principal.tenant_id,
            tier=principal.tier,
            path=payload.path,
            content=payload.content,
            sidecar=payload.sidecar,
            base_version=payload.base_version,
        )
    )
    return success_response(request=request, data=_document_payload(document))


@router.get("/documents/{document_id}")
async def download_document(
    request: Request,
    document_id: str,
    principal: Principal = CurrentPrincipal,
    coordinator: SyncCoordinator = Coordinator,
) -> dict:
    downloaded = _unwrap(
        await coordinator.download(tenant_id=principal.tenant_id, document_id=document_id)
    )
    data = _document_payload(downloaded.document)
    data["content"] = downloaded.content
    data["sidecar"] = downloaded.sidecar
    return success_response(request=request, data=data)


@router.get("/documents/{document_id}/url")
async def document_url(
    request: Request,
    document_id: str,
    expires_in: int | None = Query(default=None, alias="expiresIn", ge=1, le=7 * 24 * 3600),
    principal: Principal = CurrentPrincipal,
    coordinator: SyncCoordinator = Coordinator,
) -> dict:
    signed = _unwrap(
        await coordinator.signed_url(
            tenant_id=principal.tenant_id, document_id=document_id, expires_in=expires_in
        )
    )
    return success_response(
        request=request,
        data={"documentId": signed.document.id, "url": signed.url, "expiresIn": signed.expires_in},
    )


@router.patch("/documents/{document_id}")
async def rename_document(
    request: Request,
    document_id: str,
    payload: RenameRequest,
    principal: Principal = CurrentPrincipal,
    coordinator: SyncCoordinator = Coordinator,
) -> dict:
    document = _unwrap(
        await coordinator.rename(
            tenant_id=principal.tenant_id, document_id=document_id, path=payload.path
        )
    )
    return success_response(request=request, data=_document_payload(document))


@router.delete("/documents/{document_id}")
async def delete_document(
    request: Request,
    document_id: str,
    principal: Principal = CurrentPrincipal,
    coordinator: SyncCoordinator = Coordinator,
) -> dict:
    document = _unwrap(
        await coordinator.soft_delete(tenant_id=principal.tenant_id, document_id=document_id)
    )
    return success_response(request=request, data=_document_payload(document))


@router.get("/conflicts/{conflict_id}")
async def get_conflict(
    request: Request,
    conflict_id: str,
    principal: Principal = CurrentPrincipal,
    coordinator: SyncCoordinator = Coordinator,
) -> dict:
    detail = _unwrap(
        await coordinator.get_conflict(tenant_id=principal.tenant_id, conflict_id=conflict_id)
    )
    data = _conflict_payload(detail.conflict)
    data["local"] = _revision_payload(detail.local)
    data["remote"] = _revision_payload(detail.remote)
    return success_response(request=request, data=data)


@router.post("/conflicts/{conflict_id}/resolve")
async def resolve_conflict(
    request: Request,
    conflict_id: str,
    payload: ResolveRequest,
    principal: Principal = CurrentPrincipal,
    coordinator: SyncCoordinator = Coordinator,
) -> dict:
    resolution = _unwrap(
        await coordinator.resolve_conflict(
            tenant_id=principal.tenant_id,
            tier=principal.tier,
            conflict_id=conflict_id,
            resolution=payload.resolution,
        )
    )
    logger.info(
        "sync_conflict_resolved tenant_id=%s conflict_id=%s resolution=%s",
        principal.tenant_id,
        conflict_id,
        payload.resolution,
    )
    data = {
        "conflict": _conflict_payload(resolution.conflict),
        "document": _document_payload(resolution.document) if resolution.document is not None else None,
    }
    return success_response(request=request, data=data)
