"""
Stable fingerprints for cacheable units of work.

A fingerprint is the SHA-256 of the canonical JSON encoding of
(capability, normalized input, relevant context slice, engine version).
Canonical means sorted keys, no whitespace, tuples as lists, sets sorted and
mappings of any type treated as dicts, so equal inputs always hash equally.
"""

from __future__ import annotations

import hashlib
import json
import math
from enum import Enum
from typing import Any, Mapping, Optional

from .._version import ENGINE_VERSION


def _canonicalize(obj: Any) -> Any:
    if obj is None or isinstance(obj, (bool, int, str)):
        return obj
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return repr(obj)
        # 1.0 and 1 fingerprint identically
        return int(obj) if obj.is_integer() else obj
    if isinstance(obj, Enum):
        return _canonicalize(obj.value)
    if isinstance(obj, (bytes, bytearray)):
        return bytes(obj).hex()
    if isinstance(obj, Mapping):
        return {str(key): _canonicalize(obj[key]) for key in sorted(obj.keys(), key=str)}
    if isinstance(obj, (list, tuple)):
        return [_canonicalize(item) for item in obj]
    if isinstance(obj, (set, frozenset)):
        return sorted((_canonicalize(item) for item in obj), key=lambda item: json.dumps(item, sort_keys=True))
    # Unknown objects fall back to their repr; callers wanting stability supply a normalizer
    return repr(obj)


def canonical_json(obj: Any) -> str:
    """Return the canonical JSON text for ``obj``."""
    return json.dumps(_canonicalize(obj), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_fingerprint(
    capability: str,
    normalized_input: Any,
    context_slice: Optional[Mapping[str, Any]] = None,
    engine_version: str = ENGINE_VERSION,
) -> str:
    """
    Fingerprint a unit of work.

    Args:
        capability: Registry name of the capability
        normalized_input: Task input after volatile fields were removed
        context_slice: Context values the capability declared as relevant
        engine_version: Entries from other engine versions never collide

    Returns:
        Hex SHA-256 digest
    """
    payload = {
        "capability": capability,
        "input": normalized_input,
        "context": dict(context_slice or {}),
        "engine_version": engine_version,
    }
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
