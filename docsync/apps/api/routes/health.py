from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.apps.api.deps import Coordinator, get_db
from docsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from docsync.apps.api.response import SuccessEnvelope, success_response
from docsync.persistence.db import pool_stats
from docsync.services.sync import SyncCoordinator
from docsync.services.telemetry import availability, blob_latency_by_operation, counters_snapshot


logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)

_WINDOW_S = 300


class HealthResponse(BaseModel):
    status: str
    database: bool
    storage: bool
    backend: str
    database_pool: dict[str, int | None] = {}
    availability: float | None = None
    blob_latency: dict[str, dict[str, float | int | None]] = {}
    counters: dict[str, int] = {}


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(
    request: Request,
    db: AsyncSession = Depends(get_db),
    coordinator: SyncCoordinator = Coordinator,
) -> dict:
    try:
        await db.execute(text("SELECT 1"))
        database_ok = True
    except Exception as exc:  # noqa: BLE001 - health reports reachability, never raises
        logger.warning("health_database_unreachable", exc_info=exc)
        database_ok = False
    storage_ok = await coordinator.blob_store.ping()
    payload = HealthResponse(
        status="ok" if database_ok and storage_ok else "degraded",
        database=database_ok,
        storage=storage_ok,
        backend=coordinator.blob_store.backend,
        database_pool=pool_stats(),
        availability=availability(_WINDOW_S),
        blob_latency=blob_latency_by_operation(_WINDOW_S),
        counters=counters_snapshot(),
    )
    return success_response(request=request, data=payload.model_dump())
