from __future__ import annotations

import importlib
import warnings

import pytest

from docsync.apps.api import errors as api_errors
from docsync.apps.api.errors import ERROR_KIND_HTTP, _split_detail, fail_to_http
from docsync.domain.results import ErrorKind, Fail


def test_every_error_kind_has_a_wire_mapping() -> None:
    assert set(ERROR_KIND_HTTP) == set(ErrorKind)


def test_wire_mapping_builds_without_deprecated_status_names() -> None:
    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        reloaded = importlib.reload(api_errors)
    assert reloaded.ERROR_KIND_HTTP[ErrorKind.PAYLOAD_TOO_LARGE] == (413, "PAYLOAD_TOO_LARGE")


@pytest.mark.parametrize(
    ("kind", "status", "code"),
    [
        (ErrorKind.INVALID_PATH, 400, "INVALID_PATH"),
        (ErrorKind.INVALID_CONTENT, 400, "INVALID_CONTENT"),
        (ErrorKind.PAYLOAD_TOO_LARGE, 413, "PAYLOAD_TOO_LARGE"),
        (ErrorKind.QUOTA_EXCEEDED, 402, "QUOTA_EXCEEDED"),
        (ErrorKind.CONFLICT, 409, "CONFLICT"),
        (ErrorKind.STALE, 409, "STALE_CONFLICT"),
        (ErrorKind.CORRUPT_CATALOG, 500, "CORRUPT_CATALOG"),
        (ErrorKind.SIGN_URL_UNSUPPORTED, 501, "SIGNED_URL_UNSUPPORTED"),
    ],
)
def test_fail_to_http(kind: ErrorKind, status: int, code: str) -> None:
    exc = fail_to_http(Fail(kind, "boom", {"documentId": "d1"}))
    assert exc.status_code == status
    assert exc.detail["code"] == code
    assert exc.detail["message"] == "boom"
    assert exc.detail["documentId"] == "d1"
    assert exc.detail["kind"] == kind.value


def test_split_detail_shapes() -> None:
    assert _split_detail({"code": "X", "message": "m", "extra": 1}, 400) == ("X", "m", {"extra": 1})
    assert _split_detail("plain", 404) == ("NOT_FOUND", "plain", None)
    assert _split_detail(None, 418) == ("UNKNOWN_ERROR", "Request failed", None)
