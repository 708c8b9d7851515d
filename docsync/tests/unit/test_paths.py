from __future__ import annotations

import pytest

from docsync.services.paths import conflict_copy_path, validate_path


@pytest.mark.parametrize(
    "raw",
    [
        "../etc/passwd",
        "notes/../../x.md",
        "/abs/path.md",
        "C:/windows/a.md",
        "a\\b.md",
        "CON.txt",
        "dir/lpt1",
        "trailing.",
        "dir /a.md",
        "",
        "   ",
        "bad\x00byte",
        "bell\x07.md",
        "%2e%2e/secret",
        "bad%zzescape",
        "%2525double",
    ],
)
def test_rejects_unsafe_paths(raw: str) -> None:
    result = validate_path(raw, max_chars=1000, max_segment_chars=255)
    assert not result.valid
    assert result.canonical is None


def test_rejects_non_string_input() -> None:
    assert validate_path(42).reason == "Path must be a string"


def test_canonicalizes_dot_segments_and_encoding() -> None:
    assert validate_path("a/./b").canonical == "a/b"
    assert validate_path("notes//a.md").canonical == "notes/a.md"
    assert validate_path("my%20notes/a.md").canonical == "my notes/a.md"


def test_nfc_normalization() -> None:
    decomposed = "cafe\u0301.md"
    assert validate_path(decomposed).canonical == "caf\u00e9.md"


def test_length_limits() -> None:
    assert not validate_path("a" * 20, max_chars=10, max_segment_chars=255).valid
    assert not validate_path("dir/" + "b" * 12, max_chars=100, max_segment_chars=10).valid
    assert validate_path("dir/" + "b" * 10, max_chars=100, max_segment_chars=10).valid


@pytest.mark.parametrize(
    "raw",
    ["a/./b", "notes/a.md", "x%20y/z.md", "  spaced/name.md  ", "cafe\u0301/x.md", "a//b///c"],
)
def test_normalization_is_idempotent(raw: str) -> None:
    first = validate_path(raw).canonical
    assert first is not None
    assert validate_path(first).canonical == first
    assert ".." not in first.split("/")
    assert "\\" not in first
    assert not first.startswith("/")


def test_conflict_copy_path_variants() -> None:
    assert conflict_copy_path("notes/a.md") == "notes/a (conflict).md"
    assert conflict_copy_path("notes/a.md", 2) == "notes/a (conflict 2).md"
    assert conflict_copy_path("archive.tar.gz") == "archive.tar (conflict).gz"
    assert conflict_copy_path("README") == "README (conflict)"
    assert conflict_copy_path("dir/.env") == "dir/.env (conflict)"
