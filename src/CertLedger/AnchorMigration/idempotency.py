"""Deterministic idempotency keys.

Key composition:
  - Operation key: SHA-256({v, kind, source_id, ...context})

The ledger relay de-duplicates submissions carrying the same key, so a
retried POST after a lost acknowledgement cannot anchor a record twice.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict

__all__ = ["ikey", "op_key"]


def ikey(obj: Dict[str, Any]) -> str:
    """Generate a deterministic SHA-256 key from a dictionary.

    Serializes with sorted keys and no whitespace to ensure determinism.

    Args:
        obj: Dictionary to hash (may contain nested dicts/lists)

    Returns:
        Lowercase hex-encoded SHA-256 hash
    """
    payload = json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def op_key(kind: str, source_id: str, **context: Any) -> str:
    """Generate an idempotency key for a side-effecting operation.

    Args:
        kind: Operation type ("ANCHOR", "PUBLISH")
        source_id: Source record the operation belongs to
        **context: Additional context (content_hash, network, ...)
    """
    obj: Dict[str, Any] = {"v": 1, "kind": kind, "source_id": source_id}
    obj.update(context)
    return ikey(obj)
