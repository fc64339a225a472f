"""Canonical hashing helpers for idempotency keys and content addressing."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes.

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

    Returns "sha256:<hex>".
    """
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def compute_idempotency_key(
    run_id: str,
    step_id: int,
    service: str,
    payload: dict[str, Any] | None = None,
) -> str:
    """SHA-256 of canonical(run + step + service + payload).

    Two requests for logically identical work (e.g. a double-click)
    produce the same key, so the job ledger refuses the second creation.
    """
    body = {
        "run_id": run_id,
        "step_id": step_id,
        "service": service,
        "payload": payload or {},
    }
    return sha256_hex(canonical_json_bytes(body))


def normalize_rule_text(text: str) -> str:
    """Collapse a failure description into a stable rule key.

    Digits are folded to ``#`` and whitespace is squashed, so
    "Floor plan has only 1 spaces" and "Floor plan has only 0 spaces"
    count as the same violation across runs.
    """
    folded = "".join("#" if ch.isdigit() else ch for ch in text.lower())
    return " ".join(folded.split())
