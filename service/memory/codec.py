"""
Record codecs: MemoryItem <-> Redis hash fields.

Vectors are packed as consecutive little-endian IEEE-754 float32 values with
no header or padding, which is the layout RediSearch expects for a FLOAT32
vector field. Timestamps are integer ticks: 100-nanosecond intervals since
0001-01-01T00:00:00 UTC, with 0 meaning "unset" for ``updated_at``.

Decoding is total over *missing* fields (each has a default) and partial over
*malformed* ones: a metadata blob that is not a JSON object, or vector bytes
whose length is not a multiple of 4, raise ``MalformedRecord``.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta, UTC
from typing import Any, Mapping, Sequence

import numpy as np

from memory.errors import MalformedRecord
from memory.models import MemoryItem

FIELD_NAMES = (
    "id",
    "data",
    "user_id",
    "hash",
    "metadata",
    "created_at",
    "updated_at",
    "embedding",
)

_FLOAT32_LE = np.dtype("<f4")
_TICKS_EPOCH = datetime(1, 1, 1, tzinfo=UTC)
_TICKS_PER_SECOND = 10_000_000
_TICKS_PER_MICROSECOND = 10


# ── VectorCodec ───────────────────────────────────────────────────────────────

def encode_vector(vector: Sequence[float]) -> bytes:
    arr = np.asarray(vector, dtype=_FLOAT32_LE)
    if arr.ndim != 1:
        raise ValueError(f"Expected a flat vector, got shape {arr.shape}")
    return arr.tobytes()


def decode_vector(raw: bytes) -> list[float]:
    raw = bytes(raw)
    if len(raw) % _FLOAT32_LE.itemsize:
        raise MalformedRecord(
            f"Vector payload of {len(raw)} bytes is not a multiple of {_FLOAT32_LE.itemsize}"
        )
    return np.frombuffer(raw, dtype=_FLOAT32_LE).tolist()


# ── Ticks ─────────────────────────────────────────────────────────────────────

def datetime_to_ticks(value: datetime) -> int:
    """Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    delta = value - _TICKS_EPOCH
    return (
        (delta.days * 86_400 + delta.seconds) * _TICKS_PER_SECOND
        + delta.microseconds * _TICKS_PER_MICROSECOND
    )


def ticks_to_datetime(ticks: int) -> datetime:
    return _TICKS_EPOCH + timedelta(microseconds=ticks // _TICKS_PER_MICROSECOND)


# ── Field helpers ─────────────────────────────────────────────────────────────

def _text(value: Any, field: str) -> str:
    if isinstance(value, (bytes, bytearray, memoryview)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedRecord(f"Field '{field}' is not valid UTF-8") from exc
    return str(value)


def _optional_text(value: Any, field: str) -> str | None:
    if value is None:
        return None
    text = _text(value, field)
    return text or None


def _parse_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("ascii")
        return int(value)
    except (TypeError, ValueError, UnicodeDecodeError):
        return None


def _decode_metadata(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    text = _text(value, "metadata")
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedRecord(f"Field 'metadata' is not valid JSON: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise MalformedRecord(
            f"Field 'metadata' must be a JSON object, got {type(parsed).__name__}"
        )
    return parsed


def _decode_embedding(value: Any) -> list[float]:
    if value is None:
        return []
    if isinstance(value, str):
        raise MalformedRecord("Field 'embedding' must be binary; was the client created with decode_responses=True?")
    return decode_vector(value)


# ── RecordCodec ───────────────────────────────────────────────────────────────

def to_fields(item: MemoryItem) -> dict[str, str | int | bytes]:
    """Full field mapping written by insert."""
    return {
        "id": item.id,
        "data": item.data,
        "user_id": item.user_id or "",
        "hash": item.hash or "",
        "metadata": json.dumps(item.metadata or {}, ensure_ascii=False, default=str),
        "created_at": datetime_to_ticks(item.created_at),
        "updated_at": datetime_to_ticks(item.updated_at) if item.updated_at else 0,
        "embedding": encode_vector(item.embedding),
    }


def to_update_fields(item: MemoryItem, now: datetime | None = None) -> dict[str, str | int | bytes]:
    """Mutable subset written by update. Never touches id, user_id or created_at.

    An empty embedding is left out so the stored vector survives.
    """
    updated_at = item.updated_at or now or datetime.now(UTC)
    fields: dict[str, str | int | bytes] = {
        "data": item.data,
        "hash": item.hash or "",
        "metadata": json.dumps(item.metadata or {}, ensure_ascii=False, default=str),
        "updated_at": datetime_to_ticks(updated_at),
    }
    if item.embedding:
        fields["embedding"] = encode_vector(item.embedding)
    return fields


def from_fields(fields: Mapping[Any, Any], fallback_id: str | None = None) -> MemoryItem:
    """Decode a Redis hash (bytes or str keys/values) into a MemoryItem.

    Defaults for missing fields: id -> ``fallback_id`` or "", data -> "",
    user_id/hash -> None (empty strings too), metadata -> {}, embedding -> [],
    created_at -> now (also when unparseable), updated_at -> None (also when
    unparseable or <= 0).
    """
    raw = {
        (k.decode("utf-8") if isinstance(k, (bytes, bytearray)) else str(k)): v
        for k, v in fields.items()
    }

    record_id = _text(raw["id"], "id") if "id" in raw else ""
    if not record_id and fallback_id:
        record_id = fallback_id

    created_at = datetime.now(UTC)
    created_ticks = _parse_int(raw.get("created_at"))
    if created_ticks is not None:
        try:
            created_at = ticks_to_datetime(created_ticks)
        except (OverflowError, ValueError):
            pass

    updated_at = None
    updated_ticks = _parse_int(raw.get("updated_at"))
    if updated_ticks is not None and updated_ticks > 0:
        try:
            updated_at = ticks_to_datetime(updated_ticks)
        except (OverflowError, ValueError):
            updated_at = None

    return MemoryItem(
        id=record_id,
        data=_text(raw["data"], "data") if "data" in raw else "",
        user_id=_optional_text(raw.get("user_id"), "user_id"),
        hash=_optional_text(raw.get("hash"), "hash"),
        metadata=_decode_metadata(raw.get("metadata")),
        created_at=created_at,
        updated_at=updated_at,
        embedding=_decode_embedding(raw.get("embedding")),
    )
