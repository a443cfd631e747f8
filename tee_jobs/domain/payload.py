"""
Payload normalization shared by the producer, the queue adapter and the job store.

Anything handed to the queue engine is first passed through ``sanitize_payload``
so that it survives JSON serialization unchanged. The dedup key is a hash of the
sanitized payload, so sanitizing must be deterministic: the same logical payload
always produces the same JSON text.
"""
import dataclasses
import hashlib
import json
import math
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional
from uuid import UUID

from pydantic import BaseModel

CIRCULAR = "[Circular]"
NON_SERIALIZABLE = "[Non-serializable]"

OPAQUE_SCHEMA_VERSION = 1


def sanitize_payload(value: Any) -> Any:
    return _sanitize(value, set())


def _sanitize(value: Any, seen: set[int]) -> Any:
    if isinstance(value, Enum):
        return _sanitize(value.value, seen)
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return NON_SERIALIZABLE

    marker = id(value)
    if marker in seen:
        return CIRCULAR
    seen.add(marker)
    try:
        if isinstance(value, BaseModel):
            return _sanitize(value.model_dump(mode="python"), seen)
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return _sanitize(
                {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}, seen
            )
        if isinstance(value, Mapping):
            return {str(k): _sanitize(v, seen) for k, v in value.items()}
        if isinstance(value, (set, frozenset)):
            items = [_sanitize(v, seen) for v in value]
            return sorted(items, key=canonical_json)
        if isinstance(value, (list, tuple)):
            return [_sanitize(v, seen) for v in value]
        return NON_SERIALIZABLE
    finally:
        # Only ancestors count as circular; siblings may share an object.
        seen.discard(marker)


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def payload_hash(payload: Any, length: int = 16) -> str:
    digest = hashlib.sha256(canonical_json(sanitize_payload(payload)).encode("utf-8"))
    return digest.hexdigest()[:length]


def build_dedup_key(user_id: str, payload: Any) -> str:
    return f"user-{user_id}-{payload_hash(payload)}"


def encode_opaque(value: Any) -> Optional[str]:
    """Wraps caller data in a versioned envelope for storage."""
    if value is None:
        return None
    return canonical_json({"schema_version": OPAQUE_SCHEMA_VERSION, "data": sanitize_payload(value)})


def decode_opaque(blob: Optional[str]) -> Any:
    if blob is None:
        return None
    envelope = json.loads(blob)
    if not isinstance(envelope, dict) or "schema_version" not in envelope:
        raise ValueError("Opaque blob is missing its schema_version tag")
    version = envelope["schema_version"]
    if version != OPAQUE_SCHEMA_VERSION:
        raise ValueError(f"Unsupported opaque blob schema_version {version}")
    return envelope.get("data")
