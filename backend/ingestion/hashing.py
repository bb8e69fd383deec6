"""Deterministic content hashing for ingestion payloads.

Two payloads that differ only in key order hash identically; list order is
significant. The hash keys snapshot deduplication, so it must never change
for an unchanged observation.
"""
from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Set


class UnhashablePayloadError(ValueError):
    """Raised for payloads that cannot be canonicalized (cycles, odd types)."""


def _canonicalize(value: Any, seen: Set[int]) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise UnhashablePayloadError("non-finite floats cannot be hashed")
        # 3.0 and 3 describe the same observation
        return int(value) if value.is_integer() else value
    if isinstance(value, Decimal):
        return _canonicalize(float(value), seen)
    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, (dict, list, tuple)):
        marker = id(value)
        if marker in seen:
            raise UnhashablePayloadError("cannot hash a payload containing a reference cycle")
        seen.add(marker)
        try:
            if isinstance(value, dict):
                out = {}
                for key, item in value.items():
                    if not isinstance(key, str):
                        key = str(key)
                    out[key] = _canonicalize(item, seen)
                return out
            return [_canonicalize(item, seen) for item in value]
        finally:
            seen.discard(marker)

    raise UnhashablePayloadError(f"unsupported payload type: {type(value).__name__}")


def stable_json(payload: Any) -> str:
    """Serialize with recursively sorted keys and no insignificant whitespace."""
    return json.dumps(
        _canonicalize(payload, set()),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def content_hash(payload: Any) -> str:
    return hashlib.sha256(stable_json(payload).encode("utf-8")).hexdigest()


__all__ = ["UnhashablePayloadError", "stable_json", "content_hash"]
