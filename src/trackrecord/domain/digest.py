from __future__ import annotations

import hashlib
import re

GENESIS_HASH = "0" * 64

_HEX64 = re.compile(r"[0-9a-f]{64}")


def sha256_hex(data: str | bytes) -> str:
    """SHA-256 (FIPS 180-4) of ``data`` as 64 lowercase hex characters.

    Text is encoded as UTF-8 before hashing.
    """
    raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    return hashlib.sha256(raw).hexdigest()


def is_hex64(value: object) -> bool:
    return isinstance(value, str) and _HEX64.fullmatch(value) is not None
