"""Error taxonomy for the Redis memory store."""
from __future__ import annotations

from redis.exceptions import ConnectionError as RedisConnectionError


class MemoryStoreError(Exception):
    """Base class for every error raised by the memory store."""


class CapabilityRequired(MemoryStoreError):
    """The backend lacks native vector search and degradation is not allowed (production)."""


class IndexCreationFailed(MemoryStoreError):
    """The backend rejected the search index schema."""


class MalformedRecord(MemoryStoreError, ValueError):
    """A stored field is present but cannot be decoded (metadata JSON, vector bytes)."""


class DimensionMismatch(MemoryStoreError, ValueError):
    """An embedding's length differs from the collection's declared vector size."""


class BackendUnavailable(MemoryStoreError, RedisConnectionError):
    """Transport-level failure talking to Redis. Never retried here."""


class OperationCancelled(MemoryStoreError):
    """The caller cancelled a compound operation between backend round-trips."""
