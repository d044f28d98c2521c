"""
MemVault Data Models
Pydantic models for memory records stored in a Redis collection.
"""
from datetime import datetime, UTC
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
import uuid


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MemoryItem(BaseModel):
    """
    One stored memory: text payload, owner scope, and its embedding.
    Lives in a single Redis hash at ``{collection}:{id}``.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))  # unique within a collection
    data: str = ""

    # Scope / dedup
    user_id: Optional[str] = None  # owner / tenant
    hash: Optional[str] = None  # content fingerprint supplied by the caller

    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    # Fixed length per collection once records exist
    embedding: List[float] = Field(default_factory=list)


class MemorySearchResult(BaseModel):
    """
    A ranked search hit.

    ``score`` depends on the engine that produced it: the native index
    reports ``1 - cosine distance`` and the fallback scan reports raw cosine
    similarity in [-1, 1]. The two scales coincide only because the index is
    always created with the COSINE metric.
    """
    id: str
    memory: MemoryItem
    score: float


class CapabilityVerdict(str, Enum):
    UNKNOWN = "unknown"
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"
