from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from docsync.apps.api.response import error_response, is_versioned_request
from docsync.domain.results import ErrorKind, Fail
from docsync.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

# Stable wire codes and statuses for every failure the coordinator can return.
ERROR_KIND_HTTP: dict[ErrorKind, tuple[int, str]] = {
    ErrorKind.INVALID_PATH: (status.HTTP_400_BAD_REQUEST, "INVALID_PATH"),
    ErrorKind.INVALID_SIDECAR: (status.HTTP_400_BAD_REQUEST, "INVALID_SIDECAR"),
    ErrorKind.INVALID_CONTENT: (status.HTTP_400_BAD_REQUEST, "INVALID_CONTENT"),
    ErrorKind.PAYLOAD_TOO_LARGE: (413, "PAYLOAD_TOO_LARGE"),
    ErrorKind.QUOTA_EXCEEDED: (status.HTTP_402_PAYMENT_REQUIRED, "QUOTA_EXCEEDED"),
    ErrorKind.CONFLICT: (status.HTTP_409_CONFLICT, "CONFLICT"),
    ErrorKind.NOT_FOUND: (status.HTTP_404_NOT_FOUND, "NOT_FOUND"),
    ErrorKind.PATH_IN_USE: (status.HTTP_409_CONFLICT, "PATH_IN_USE"),
    ErrorKind.ALREADY_RESOLVED: (status.HTTP_409_CONFLICT, "ALREADY_RESOLVED"),
    ErrorKind.STALE: (status.HTTP_409_CONFLICT, "STALE_CONFLICT"),
    ErrorKind.STORAGE_UNAVAILABLE: (status.HTTP_503_SERVICE_UNAVAILABLE, "STORAGE_UNAVAILABLE"),
    ErrorKind.CORRUPT_CATALOG: (status.HTTP_500_INTERNAL_SERVER_ERROR, "CORRUPT_CATALOG"),
    ErrorKind.RATE_LIMITED: (status.HTTP_429_TOO_MANY_REQUESTS, "RATE_LIMITED"),
    ErrorKind.SIGN_URL_UNSUPPORTED: (status.HTTP_501_NOT_IMPLEMENTED, "SIGNED_URL_UNSUPPORTED"),
}

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def fail_to_http(failure: Fail) -> HTTPException:
    status_code, code = ERROR_KIND_HTTP.get(
        failure.kind, (status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR")
    )
    return HTTPException(
        status_code=status_code,
        detail={"code": code, "message": failure.message, "kind": failure.kind.value, **failure.details},
    )


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    fallback = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        code = str(detail.get("code") or fallback)
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return fallback, detail, None
    return fallback, "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers both FastAPI and Starlette HTTP exceptions.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_errors(exc)},
    )
    return JSONResponse(content=payload, status_code=422)


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    # Pydantic error contexts may carry exception objects; keep only wire-safe fields.
    return [
        {"loc": list(error.get("loc", ())), "msg": str(error.get("msg", "")), "type": str(error.get("type", ""))}
        for error in exc.errors()
    ]


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    logger.error("tenant_predicate_missing path=%s", request.url.path)
    payload = error_response(request=request, code="TENANT_SCOPE_REQUIRED", message=exc.message)
    return JSONResponse(content=payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
