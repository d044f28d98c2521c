"""Shared runtime state: the active memory store and when it came up."""
from __future__ import annotations

import threading
from datetime import datetime, UTC
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from memory.vector_store import MemoryVectorStore

_LOCK = threading.Lock()

_STORE: "MemoryVectorStore | None" = None
# Set when a store is installed (in lifespan, or by tests).
_STARTED_AT: datetime | None = None


def install_store(store: "MemoryVectorStore") -> None:
    global _STORE, _STARTED_AT
    with _LOCK:
        _STORE = store
        _STARTED_AT = datetime.now(UTC)


def clear_store() -> "MemoryVectorStore | None":
    """Detach and return the current store, if any."""
    global _STORE, _STARTED_AT
    with _LOCK:
        store, _STORE = _STORE, None
        _STARTED_AT = None
    return store


def get_store() -> "MemoryVectorStore | None":
    return _STORE


def runtime_status() -> dict[str, Any]:
    with _LOCK:
        store, started_at = _STORE, _STARTED_AT
    uptime = (datetime.now(UTC) - started_at).total_seconds() if started_at else 0.0
    return {
        "ready": store is not None,
        "started_at": started_at.isoformat() if started_at else None,
        "uptime_seconds": round(uptime, 1),
    }
