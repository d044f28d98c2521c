"""MemVault HTTP service: app + lifespan only."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

import config
from api.deps import ErrorResponse
from memory.vector_store import MemoryVectorStore
from redis_connection import build_redis_client
from runtime import clear_store, get_store, install_store, runtime_status


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }
        if record.exc_info and record.exc_info[1] is not None:
            import traceback
            entry["traceback"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(entry)


_handler = logging.StreamHandler()
_handler.setFormatter(_JsonFormatter())
logging.root.addHandler(_handler)
logging.root.setLevel(logging.INFO)

log = logging.getLogger("memvault")

app = FastAPI(
    title="MemVault",
    description="Redis-backed vector memory store",
    version="1.0.0",
)


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    from metrics.stats_logger import log_request
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    response.headers["X-Process-Time-Ms"] = f"{duration_ms:.2f}"
    log_request(
        path=request.url.path,
        method=request.method,
        status=response.status_code,
        duration_ms=duration_ms,
    )
    return response


def _build_store() -> MemoryVectorStore:
    client = build_redis_client(config.REDIS_URL, config.REDIS_CREDENTIAL)
    store = MemoryVectorStore(
        client,
        config.COLLECTION_NAME,
        production=config.IS_PRODUCTION,
        scan_page_size=config.SCAN_PAGE_SIZE,
        delete_by_owner_limit=config.DELETE_BY_OWNER_LIMIT,
    )
    store.ensure_collection_exists(config.VECTOR_SIZE, config.RECREATE_COLLECTION)
    return store


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if config.TEST_MODE:
        log.info("Starting in test mode (Redis connection disabled)")
        yield
        return

    log.info(
        "Starting MemVault service (env=%s, collection=%s)",
        config.DEPLOYMENT_ENV, config.COLLECTION_NAME,
    )
    # Capability and index failures abort startup: in production the probe
    # raises instead of degrading.
    store = await asyncio.to_thread(_build_store)
    install_store(store)
    if store.is_degraded():
        log.warning("Vector store is running in degraded (scan) mode")

    try:
        yield
    finally:
        clear_store()
        close = getattr(store.client, "close", None)
        if callable(close):
            close()
        log.info("MemVault service stopped")


app.router.lifespan_context = lifespan


@app.exception_handler(HTTPException)
async def http_exception_handler(_request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=str(exc.detail),
            code=f"HTTP_{exc.status_code}",
            timestamp=datetime.now(UTC).isoformat(),
        ).model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(_request: Request, exc: Exception):
    log.error("Unhandled exception", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="Internal server error",
            code="INTERNAL_ERROR",
            detail=str(exc) if config.TEST_MODE else None,
            timestamp=datetime.now(UTC).isoformat(),
        ).model_dump(),
    )


@app.get("/health")
async def health() -> dict[str, Any]:
    store = get_store()
    degraded = bool(store and store.is_degraded())
    if store is None:
        overall_status = "starting"
    else:
        overall_status = "degraded" if degraded else "healthy"

    return {
        "status": overall_status,
        "version": "1.0.0",
        "environment": config.DEPLOYMENT_ENV,
        "test_mode": config.TEST_MODE,
        "runtime": runtime_status(),
        "vector_degraded": degraded,
        "vector_stats": store.get_stats() if store else {},
    }


# ── Include route modules ──────────────────────────────────────────────────────
from api import memories as _memories_module

app.include_router(_memories_module.router)


def run() -> None:
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
