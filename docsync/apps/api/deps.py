from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.apps.api.rate_limit import enforce_rate_limit
from docsync.core.config import normalize_tier
from docsync.persistence.db import get_session
from docsync.services.sync import SyncCoordinator, get_sync_coordinator


TENANT_HEADER = "X-Tenant-Id"
TIER_HEADER = "X-Tenant-Tier"
_MAX_TENANT_ID_CHARS = 128


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity resolved by the upstream gateway; the core only sees tenant and tier.
    tenant_id: str
    tier: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def principal_from_headers(request: Request) -> Principal:
    tenant_id = (request.headers.get(TENANT_HEADER) or "").strip()
    if not tenant_id:
        raise _auth_error(f"{TENANT_HEADER} header is required")
    if len(tenant_id) > _MAX_TENANT_ID_CHARS or "/" in tenant_id:
        # Tenant ids become blob key segments.
        raise _auth_error(f"{TENANT_HEADER} header is malformed")
    return Principal(tenant_id=tenant_id, tier=normalize_tier(request.headers.get(TIER_HEADER)))


async def get_current_principal(request: Request, response: Response) -> Principal:
    principal = principal_from_headers(request)
    request.state.tenant_id = principal.tenant_id
    # Throttle before the request reaches the coordinator.
    await enforce_rate_limit(request=request, response=response, principal=principal)
    return principal


def get_coordinator() -> SyncCoordinator:
    return get_sync_coordinator()


CurrentPrincipal = Depends(get_current_principal)
Coordinator = Depends(get_coordinator)
