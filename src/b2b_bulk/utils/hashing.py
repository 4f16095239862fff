"""Canonical JSON hashing and keyed signatures for tamper-evident records."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

from b2b_bulk.utils.serialization import json_default


def canonical_json(payload: Any) -> str:
    """Deterministic JSON: sorted keys, no insignificant whitespace."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        default=json_default,
    )


def normalize_json(payload: Any) -> Any:
    """Round-trip through JSON so hashes match what is read back from disk."""
    return json.loads(canonical_json(payload))


def sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hmac_sha256_hex(secret: bytes, data: str) -> str:
    return hmac.new(secret, data.encode("utf-8"), hashlib.sha256).hexdigest()


def digests_match(expected: str, actual: str | None) -> bool:
    if actual is None:
        return False
    return hmac.compare_digest(expected, actual)
