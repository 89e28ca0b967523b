"""Idempotency keys for exactly-once webhook ingestion."""

import hashlib
import json
from typing import Any


def canonical_payload(payload: dict[str, Any]) -> str:
    """Serialize a payload with sorted keys and no whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def payload_hash(payload: dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical payload."""
    return hashlib.sha256(canonical_payload(payload).encode("utf-8")).hexdigest()


def generate_idempotency_key(event_type: str, resource_id: str | None, digest: str) -> str:
    """Generate a deterministic idempotency key for a webhook delivery.

    The key identifies one change notification for one resource with one
    payload snapshot. A redelivery of the same notification maps to the
    same key; a later change to the resource (different digest) does not.

    Args:
        event_type: Topic such as ``customer.updated``.
        resource_id: Remote id of the resource, if the payload has one.
        digest: payload_hash() of the payload.

    Returns:
        Idempotency key string: '{event_type}:{resource_id}:{digest}'.
    """
    return f"{event_type}:{resource_id or '-'}:{digest}"
