from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from docsync.apps.api.errors import (
    http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from docsync.apps.api.response import API_VERSION
from docsync.apps.api.routes.health import router as health_router
from docsync.apps.api.routes.sync import router as sync_router
from docsync.core.config import get_settings
from docsync.core.logging import configure_logging
from docsync.persistence.guards import TenantPredicateError
from docsync.services.telemetry import record_request


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    stop = asyncio.Event()
    task: asyncio.Task | None = None
    if settings.sweeper_in_process:
        from docsync.persistence.db import SessionLocal
        from docsync.services.sweeper import build_sweeper

        # Single-process deployments sweep on a background task instead of the arq worker.
        sweeper = build_sweeper(session_factory=SessionLocal, settings=settings)
        task = asyncio.create_task(sweeper.run_forever(stop))
        logger.info("sweeper_started mode=in_process interval_hours=%s", settings.sweeper_interval_hours)
    try:
        yield
    finally:
        if task is not None:
            stop.set()
            await task
            logger.info("sweeper_stopped mode=in_process")


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="docsync API", lifespan=lifespan, docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Routes build their own {data, meta} envelopes via success_response.
    app.include_router(sync_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="docsync API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    return app


app = create_app()
