"""Memory store API routes: collection, CRUD, list, search, stats."""
from __future__ import annotations

import logging
from datetime import datetime, UTC
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from memory.models import MemoryItem
from metrics.stats_logger import get_request_summary

from api.deps import (
    EnsureCollectionRequest,
    MemoriesRequest,
    MemoryListResponse,
    SearchRequest,
    SearchResponse,
    require_store,
    run_store_call,
    verify_api_key,
)

log = logging.getLogger("memvault")
router = APIRouter()


def _now() -> str:
    return datetime.now(UTC).isoformat()


@router.post("/collection", operation_id="post_collection")
async def ensure_collection(
    body: EnsureCollectionRequest,
    _api_key: str = Depends(verify_api_key),
) -> dict[str, Any]:
    store = require_store()
    created = await run_store_call(
        store.ensure_collection_exists, body.vector_size, body.allow_recreation
    )
    return {
        "collection": store.keys.name,
        "created": created,
        "vector_size": body.vector_size,
        "capability": store.probe.verdict.value,
        "timestamp": _now(),
    }


@router.post("/memories", operation_id="post_memories")
async def insert_memories(
    body: MemoriesRequest,
    _api_key: str = Depends(verify_api_key),
) -> dict[str, Any]:
    store = require_store()
    await run_store_call(store.insert, body.memories)
    return {"inserted": len(body.memories), "ids": [m.id for m in body.memories], "timestamp": _now()}


@router.put("/memories", operation_id="put_memories")
async def update_memories(
    body: MemoriesRequest,
    _api_key: str = Depends(verify_api_key),
) -> dict[str, Any]:
    store = require_store()
    updated = await run_store_call(store.update, body.memories)
    return {"requested": len(body.memories), "updated": updated, "timestamp": _now()}


@router.get("/memories", response_model=MemoryListResponse, operation_id="get_memories")
async def list_memories(
    user_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    _api_key: str = Depends(verify_api_key),
) -> MemoryListResponse:
    store = require_store()
    memories = await run_store_call(store.list_memories, user_id=user_id, limit=limit)
    return MemoryListResponse(memories=memories, count=len(memories), timestamp=_now())


@router.get("/memories/{memory_id:path}", response_model=MemoryItem, operation_id="get_memory")
async def get_memory(
    memory_id: str,
    _api_key: str = Depends(verify_api_key),
) -> MemoryItem:
    store = require_store()
    memory = await run_store_call(store.get, memory_id)
    if memory is None:
        raise HTTPException(status_code=404, detail=f"Memory '{memory_id}' not found")
    return memory


@router.delete("/memories/{memory_id:path}", operation_id="delete_memory")
async def delete_memory(
    memory_id: str,
    _api_key: str = Depends(verify_api_key),
) -> dict[str, Any]:
    store = require_store()
    await run_store_call(store.delete, memory_id)
    return {"deleted": memory_id, "timestamp": _now()}


@router.delete("/users/{user_id:path}/memories", operation_id="delete_user_memories")
async def delete_user_memories(
    user_id: str,
    _api_key: str = Depends(verify_api_key),
) -> dict[str, Any]:
    store = require_store()
    deleted = await run_store_call(store.delete_by_owner, user_id)
    log.info("Deleted %d memories for user %s via API", deleted, user_id)
    return {"user_id": user_id, "deleted_count": deleted, "timestamp": _now()}


@router.post("/search", response_model=SearchResponse, operation_id="post_search")
async def search_memories(
    body: SearchRequest,
    _api_key: str = Depends(verify_api_key),
) -> SearchResponse:
    store = require_store()
    results = await run_store_call(store.search, body.vector, user_id=body.user_id, limit=body.limit)
    return SearchResponse(
        results=results,
        result_count=len(results),
        degraded=store.is_degraded(),
        timestamp=_now(),
    )


@router.get("/stats", operation_id="get_stats")
async def stats(_api_key: str = Depends(verify_api_key)) -> dict[str, Any]:
    store = require_store()
    return {
        "vector_store": store.get_stats(),
        "requests": get_request_summary(),
        "timestamp": _now(),
    }
