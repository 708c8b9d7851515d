from __future__ import annotations

import json

from docsync.services.sidecar import canonical_json, format_bytes, sanitize_sidecar


def _keys(value) -> set[str]:
    found: set[str] = set()
    if isinstance(value, dict):
        for key, item in value.items():
            found.add(key)
            found |= _keys(item)
    elif isinstance(value, list):
        for item in value:
            found |= _keys(item)
    return found


def test_strips_prototype_keys_at_every_depth() -> None:
    raw = {
        "title": "x",
        "__proto__": {"admin": True},
        "nested": {"constructor": 1, "deep": [{"prototype": 2, "ok": 3}]},
    }
    result = sanitize_sidecar(raw, max_bytes=1024)
    assert result.valid
    assert not _keys(result.clean) & {"__proto__", "constructor", "prototype"}
    assert result.clean == {"title": "x", "nested": {"deep": [{"ok": 3}]}}


def test_input_is_not_mutated() -> None:
    raw = {"__proto__": 1, "a": {"constructor": 2}}
    sanitize_sidecar(raw, max_bytes=1024)
    assert raw == {"__proto__": 1, "a": {"constructor": 2}}


def test_accepts_json_text() -> None:
    result = sanitize_sidecar('{"b": 1, "a": [1, 2]}', max_bytes=1024)
    assert result.serialized == b'{"a":[1,2],"b":1}'


def test_rejects_non_objects_and_bad_json() -> None:
    assert sanitize_sidecar([1, 2], max_bytes=1024).reason == "Sidecar must be an object"
    assert sanitize_sidecar("{nope", max_bytes=1024).reason == "Sidecar contains invalid JSON data"
    assert not sanitize_sidecar({"x": object()}, max_bytes=1024).valid
    assert not sanitize_sidecar({"x": float("nan")}, max_bytes=1024).valid


def test_size_limit_measured_after_sanitization() -> None:
    big_poison = {"__proto__": "p" * 500, "a": 1}
    assert sanitize_sidecar(big_poison, max_bytes=16).valid
    too_big = sanitize_sidecar({"a": "x" * 100}, max_bytes=16)
    assert not too_big.valid
    assert "too large" in (too_big.reason or "")


def test_canonical_json_is_stable() -> None:
    assert canonical_json({}) == b"{}"
    assert canonical_json({"b": "é", "a": 1}) == json.dumps(
        {"a": 1, "b": "é"}, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def test_format_bytes() -> None:
    assert format_bytes(0) == "0 B"
    assert format_bytes(512) == "512 B"
    assert format_bytes(1024 * 1024) == "1 MB"
    assert format_bytes(1536) == "1.5 KB"
