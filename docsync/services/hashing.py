from __future__ import annotations

import hashlib


def content_hash(data: bytes | str) -> str:
    # SHA-256 over the exact stored bytes; text is hashed as UTF-8.
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()
