from __future__ import annotations

from dataclasses import dataclass
import posixpath
import re
import unicodedata
from urllib.parse import unquote

from docsync.core.config import get_settings


# Windows device names are reserved regardless of extension or case.
RESERVED_NAMES = frozenset(
    {"con", "prn", "aux", "nul"}
    | {f"com{i}" for i in range(1, 10)}
    | {f"lpt{i}" for i in range(1, 10)}
)

# Control characters other than TAB and LF.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_DRIVE_PREFIX = re.compile(r"^[a-zA-Z]:")
_EXTENSION = re.compile(r"\.[^.]*$")


@dataclass(frozen=True)
class PathCheck:
    canonical: str | None
    reason: str | None = None

    @property
    def valid(self) -> bool:
        return self.reason is None


def _reject(reason: str) -> PathCheck:
    return PathCheck(canonical=None, reason=reason)


def _strict_unquote(value: str) -> str | None:
    # Reject malformed escapes instead of passing them through like unquote() does.
    if re.search(r"%(?![0-9a-fA-F]{2})", value):
        return None
    try:
        return unquote(value, encoding="utf-8", errors="strict")
    except UnicodeDecodeError:
        return None


def validate_path(
    raw: object,
    *,
    max_chars: int | None = None,
    max_segment_chars: int | None = None,
) -> PathCheck:
    """Validate a client-supplied document path and return its canonical form.

    Checks run in a fixed order and the first failure wins. The canonical form is
    the catalog's uniqueness key, so it is NFC-normalised, forward-slash separated
    and idempotent: ``validate_path(validate_path(p).canonical)`` yields the same
    canonical value.
    """
    settings = get_settings()
    max_chars = max_chars if max_chars is not None else settings.limits_path_max_chars
    max_segment_chars = (
        max_segment_chars if max_segment_chars is not None else settings.limits_filename_max_chars
    )

    if not isinstance(raw, str):
        return _reject("Path must be a string")
    if "\x00" in raw or _CONTROL_CHARS.search(raw):
        return _reject("Path contains invalid characters")
    if len(raw) > max_chars:
        return _reject(f"Path too long (max {max_chars} characters)")

    value = raw.strip()
    if not value:
        return _reject("Path cannot be empty")

    decoded = _strict_unquote(value)
    # A "%" surviving one decode layer would decode again on re-validation.
    if decoded is None or "%" in decoded:
        return _reject("Path contains invalid encoding")
    value = unicodedata.normalize("NFC", decoded).strip()
    if not value:
        return _reject("Path cannot be empty")

    # Decoding may have produced characters the raw checks never saw.
    if "\x00" in value or _CONTROL_CHARS.search(value):
        return _reject("Path contains invalid characters")
    if len(value) > max_chars:
        return _reject(f"Path too long (max {max_chars} characters)")

    if value.startswith(("/", "\\")) or _DRIVE_PREFIX.match(value):
        return _reject("Absolute paths are not allowed")
    if "\\" in value:
        return _reject("Backslash separators are not allowed")
    # "." segments collapse into the canonical form; ".." never does.
    if ".." in value.split("/"):
        return _reject("Path traversal is not allowed")

    normalized = posixpath.normpath(value)
    if normalized.startswith("..") or ".." in normalized:
        return _reject("Path traversal is not allowed")
    if normalized in {".", ""}:
        return _reject("Path cannot be empty")

    for segment in normalized.split("/"):
        if segment in {".", ".."}:
            return _reject("Invalid path segment")
        if len(segment) > max_segment_chars:
            return _reject(f"Filename too long (max {max_segment_chars} characters)")
        base_name = _EXTENSION.sub("", segment).lower()
        if base_name in RESERVED_NAMES:
            return _reject("Path contains reserved filename")
        if segment.endswith((".", " ")):
            return _reject("Filename cannot end with dot or space")

    return PathCheck(canonical=normalized)


def conflict_copy_path(path: str, attempt: int = 1) -> str:
    # "notes/a.md" -> "notes/a (conflict).md"; later attempts add a counter.
    suffix = " (conflict)" if attempt <= 1 else f" (conflict {attempt})"
    directory, _, name = path.rpartition("/")
    stem, dot, extension = name.rpartition(".")
    if dot and stem:
        renamed = f"{stem}{suffix}.{extension}"
    else:
        renamed = f"{name}{suffix}"
    return f"{directory}/{renamed}" if directory else renamed
