from __future__ import annotations

from typing import Any

from docsync.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", code="INVALID_PATH", message="Path segments must not be empty"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="X-Tenant-Id header is required"),
    402: _response(
        "Quota exceeded",
        code="QUOTA_EXCEEDED",
        message="Storage limit exceeded",
        details={"limit": 104857600, "used": 104000000, "requested": 2048000},
    ),
    404: _response("Not found", code="NOT_FOUND", message="Document not found"),
    409: _response(
        "Conflict",
        code="CONFLICT",
        message="Conflict detected",
        details={"conflictId": "c0ffee", "documentId": "d0c", "localVersion": 3, "remoteVersion": 4},
    ),
    413: _response("Payload too large", code="PAYLOAD_TOO_LARGE", message="Content exceeds 10.0 MB"),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    429: _response(
        "Rate limited",
        code="RATE_LIMITED",
        message="Rate limit exceeded",
        details={"tier": "free", "limit_per_minute": 60, "retry_after_ms": 1000},
    ),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _response("Storage unavailable", code="STORAGE_UNAVAILABLE", message="Storage service unavailable"),
}
