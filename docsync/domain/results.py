from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar, Union


T = TypeVar("T")


class ErrorKind(str, Enum):
    INVALID_PATH = "invalidPath"
    INVALID_SIDECAR = "invalidSidecar"
    INVALID_CONTENT = "invalidContent"
    PAYLOAD_TOO_LARGE = "payloadTooLarge"
    QUOTA_EXCEEDED = "quotaExceeded"
    CONFLICT = "conflict"
    NOT_FOUND = "notFound"
    PATH_IN_USE = "pathInUse"
    ALREADY_RESOLVED = "alreadyResolved"
    STALE = "stale"
    STORAGE_UNAVAILABLE = "storageUnavailable"
    CORRUPT_CATALOG = "corruptCatalog"
    RATE_LIMITED = "rateLimited"
    SIGN_URL_UNSUPPORTED = "signUrlUnsupported"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Fail:
    kind: ErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Fail]
