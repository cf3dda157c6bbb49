"""Canonical hashing helpers for content addressing and the ledger chain."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(obj: Any) -> str:
    """Content-address a JSON-serializable object.

    Returns "sha256:<hex>" format used by the artifact store.
    """
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def compute_definition_hash(definition: dict[str, Any]) -> str:
    """Content address of a pipeline definition.

    Two definitions are the same deployed pipeline iff their hashes match;
    the self-mutation step compares nothing else.
    """
    return content_address({"pipeline_definition": definition})


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of a ledger entry (excluding the entry_hash field itself).

    This is the seal that makes each entry tamper-evident.
    """
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return sha256_hex(canonical_json_bytes(d))
