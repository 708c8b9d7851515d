from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any

from docsync.core.config import get_settings


# Keys that would poison a JavaScript client's object prototype when merged.
PROTOTYPE_POLLUTION_KEYS = frozenset({"__proto__", "constructor", "prototype"})


class _NotJson(ValueError):
    pass


@dataclass(frozen=True)
class SidecarCheck:
    clean: dict[str, Any] | None
    serialized: bytes = b""
    reason: str | None = None

    @property
    def valid(self) -> bool:
        return self.reason is None


def canonical_json(value: Any) -> bytes:
    # Sorted, compact UTF-8 so hashes and byte charges are stable across clients.
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def _clean_copy(value: Any) -> Any:
    if isinstance(value, dict):
        copied: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise _NotJson("Sidecar keys must be strings")
            if key in PROTOTYPE_POLLUTION_KEYS:
                continue
            copied[key] = _clean_copy(item)
        return copied
    if isinstance(value, (list, tuple)):
        return [_clean_copy(item) for item in value]
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    raise _NotJson(f"Unsupported sidecar value type: {type(value).__name__}")


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.1f}".rstrip("0").rstrip(".") + f" {units[index]}"


def sanitize_sidecar(sidecar: object, *, max_bytes: int | None = None) -> SidecarCheck:
    """Deep-copy a sidecar mapping without prototype-pollution keys.

    Accepts an already-decoded mapping or JSON text/bytes that decodes to one.
    The size limit applies to the canonical serialization of the cleaned value.
    """
    limit = max_bytes if max_bytes is not None else get_settings().limits_sidecar_max_bytes
    if isinstance(sidecar, (bytes, bytearray)):
        try:
            sidecar = sidecar.decode("utf-8")
        except UnicodeDecodeError:
            return SidecarCheck(clean=None, reason="Sidecar must be UTF-8 JSON")
    if isinstance(sidecar, str):
        try:
            sidecar = json.loads(sidecar)
        except ValueError:
            return SidecarCheck(clean=None, reason="Sidecar contains invalid JSON data")
    if not isinstance(sidecar, dict):
        return SidecarCheck(clean=None, reason="Sidecar must be an object")

    try:
        clean = _clean_copy(sidecar)
        serialized = canonical_json(clean)
    except (_NotJson, ValueError, TypeError, RecursionError):
        return SidecarCheck(clean=None, reason="Sidecar contains invalid JSON data")

    if len(serialized) > limit:
        return SidecarCheck(
            clean=None,
            reason=f"Sidecar too large ({format_bytes(len(serialized))}, max {format_bytes(limit)})",
        )
    return SidecarCheck(clean=clean, serialized=serialized)
