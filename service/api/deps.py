"""Shared security, models, and helper functions for API route modules."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, TypeVar

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

import config
from memory.errors import (
    BackendUnavailable,
    CapabilityRequired,
    DimensionMismatch,
    IndexCreationFailed,
    MalformedRecord,
)
from memory.models import MemoryItem, MemorySearchResult
from runtime import get_store

log = logging.getLogger("memvault")

security = HTTPBearer(auto_error=False)

T = TypeVar("T")

# ── Pydantic models ────────────────────────────────────────────────────────────

class ErrorResponse(BaseModel):
    error: str
    code: str
    detail: str | None = None
    timestamp: str


class EnsureCollectionRequest(BaseModel):
    vector_size: int = Field(ge=1, le=32_768)
    allow_recreation: bool = False


class MemoriesRequest(BaseModel):
    memories: list[MemoryItem] = Field(min_length=1)


class SearchRequest(BaseModel):
    vector: list[float] = Field(min_length=1)
    user_id: str | None = None
    limit: int = Field(default=100, ge=1, le=1000)


class SearchResponse(BaseModel):
    results: list[MemorySearchResult]
    result_count: int
    degraded: bool
    timestamp: str


class MemoryListResponse(BaseModel):
    memories: list[MemoryItem]
    count: int
    timestamp: str


# ── Security ───────────────────────────────────────────────────────────────────

def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = credentials.credentials
    if token != config.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token


# ── Runtime guards ─────────────────────────────────────────────────────────────

def require_store():
    store = get_store()
    if store is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return store


async def run_store_call(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking store call off the event loop and map store errors to HTTP."""
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except (CapabilityRequired, BackendUnavailable) as exc:
        log.error("Store unavailable: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except (MalformedRecord, DimensionMismatch) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except IndexCreationFailed as exc:
        log.error("Index creation failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
