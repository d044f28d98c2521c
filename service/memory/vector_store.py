"""
Vector Store - Redis-backed memory collection
Engines: RediSearch KNN (native), SCAN + cosine (fallback)
"""
from __future__ import annotations

import heapq
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import Any, Dict, Iterator, List, Optional, Sequence

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from memory.capability import CapabilityProbe
from memory.codec import FIELD_NAMES, encode_vector, from_fields, to_fields, to_update_fields
from memory.errors import (
    BackendUnavailable,
    DimensionMismatch,
    IndexCreationFailed,
    OperationCancelled,
)
from memory.index_lifecycle import IndexLifecycleManager
from memory.models import CapabilityVerdict, MemoryItem, MemorySearchResult
from memory.similarity import cosine_similarity, rank_by_similarity

log = logging.getLogger(__name__)

SCORE_FIELD = "__embedding_score"
_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _decode(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8")
    return str(value)


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Operation cancelled by caller")


class CollectionKeys:
    """Key layout for one logical collection."""

    def __init__(self, name: str):
        if not name:
            raise ValueError("Collection name must not be empty")
        self.name = name
        self.index_name = f"idx:{name}"
        self.key_prefix = f"{name}:"
        self.marker_key = f"flag:{self.index_name}"
        self.scan_pattern = _GLOB_SPECIAL.sub(r"\\\1", self.key_prefix) + "*"

    def key_for(self, memory_id: str) -> str:
        return f"{self.key_prefix}{memory_id}"

    def id_from_key(self, key: Any) -> str:
        text = _decode(key)
        return text[len(self.key_prefix):] if text.startswith(self.key_prefix) else text


class SearchEngine(ABC):
    """One way of answering index/search/list requests for a collection."""

    name = "abstract"

    def __init__(self, client: Any, keys: CollectionKeys):
        self.client = client
        self.keys = keys

    @abstractmethod
    def index_exists(self) -> bool:
        pass

    @abstractmethod
    def create_index(self, vector_size: int) -> None:
        pass

    @abstractmethod
    def drop_index(self) -> None:
        pass

    @abstractmethod
    def search(self, query_vector: Sequence[float], user_id: Optional[str] = None,
               limit: int = 100, cancel: Optional[threading.Event] = None) -> List[MemorySearchResult]:
        pass

    @abstractmethod
    def list_memories(self, user_id: Optional[str] = None, limit: int = 100,
                      cancel: Optional[threading.Event] = None) -> List[MemoryItem]:
        pass


class RedisSearchEngine(SearchEngine):
    """Native engine: HNSW/COSINE index over the collection's hashes, queried with KNN."""

    name = "redisearch"

    def index_exists(self) -> bool:
        names = self.client.execute_command("FT._LIST") or []
        return self.keys.index_name in {_decode(n) for n in names}

    def create_index(self, vector_size: int) -> None:
        args = [
            "FT.CREATE", self.keys.index_name,
            "ON", "HASH",
            "PREFIX", "1", self.keys.key_prefix,
            "SCHEMA",
            "id", "TEXT",
            "data", "TEXT",
            "user_id", "TEXT",
            "hash", "TEXT",
            "metadata", "TEXT",
            "created_at", "NUMERIC", "SORTABLE",
            "updated_at", "NUMERIC",
            "embedding", "VECTOR", "HNSW", "6",
            "TYPE", "FLOAT32",
            "DIM", str(vector_size),
            "DISTANCE_METRIC", "COSINE",
        ]
        try:
            reply = self.client.execute_command(*args)
        except ResponseError as exc:
            raise IndexCreationFailed(f"Failed to create Redis vector index {self.keys.index_name}: {exc}") from exc
        if reply is not True and _decode(reply).upper() != "OK":
            raise IndexCreationFailed(
                f"Failed to create Redis vector index {self.keys.index_name}: unexpected reply {reply!r}"
            )

    def drop_index(self) -> None:
        # Without DD: the records themselves survive a drop.
        self.client.execute_command("FT.DROPINDEX", self.keys.index_name)

    @staticmethod
    def owner_filter(user_id: Optional[str]) -> str:
        """Query clause matching ``user_id`` as an exact phrase, or ``*``."""
        if user_id is None:
            return "*"
        escaped = user_id.replace("\\", "\\\\").replace('"', '\\"')
        return f'@user_id:"{escaped}"'

    def search(self, query_vector: Sequence[float], user_id: Optional[str] = None,
               limit: int = 100, cancel: Optional[threading.Event] = None) -> List[MemorySearchResult]:
        _check_cancel(cancel)
        base = self.owner_filter(user_id)
        if base != "*":
            base = f"({base})"
        query = f"{base}=>[KNN {limit} @embedding $query_vector AS {SCORE_FIELD}]"
        return_fields = [*FIELD_NAMES, SCORE_FIELD]
        reply = self.client.execute_command(
            "FT.SEARCH", self.keys.index_name, query,
            "RETURN", str(len(return_fields)), *return_fields,
            "SORTBY", SCORE_FIELD, "ASC",
            "LIMIT", "0", str(limit),
            "PARAMS", "2", "query_vector", encode_vector(query_vector),
            "DIALECT", "2",
        )

        results = []
        for key, fields in self._parse_reply(reply):
            distance = self._parse_float(fields.pop(SCORE_FIELD, None))
            item = from_fields(fields, fallback_id=self.keys.id_from_key(key))
            # Phrase matching on a TEXT field can over-match; owner scope must be exact.
            if user_id is not None and item.user_id != user_id:
                continue
            score = 1.0 - distance if distance is not None else 0.0
            results.append(MemorySearchResult(id=item.id, memory=item, score=score))
        return results

    def list_memories(self, user_id: Optional[str] = None, limit: int = 100,
                      cancel: Optional[threading.Event] = None) -> List[MemoryItem]:
        _check_cancel(cancel)
        reply = self.client.execute_command(
            "FT.SEARCH", self.keys.index_name, self.owner_filter(user_id),
            "RETURN", str(len(FIELD_NAMES)), *FIELD_NAMES,
            "SORTBY", "created_at", "DESC",
            "LIMIT", "0", str(limit),
            "DIALECT", "2",
        )
        items = []
        for key, fields in self._parse_reply(reply):
            item = from_fields(fields, fallback_id=self.keys.id_from_key(key))
            if user_id is not None and item.user_id != user_id:
                continue
            items.append(item)
        return items

    @staticmethod
    def _parse_reply(reply: Any) -> List[tuple[str, Dict[str, Any]]]:
        """Split a RESP2 FT.SEARCH reply: [total, key, [f, v, ...], key, [...], ...]."""
        if not reply:
            return []
        docs = []
        for i in range(1, len(reply) - 1, 2):
            key = _decode(reply[i])
            values = reply[i + 1] or []
            fields = {_decode(values[j]): values[j + 1] for j in range(0, len(values) - 1, 2)}
            docs.append((key, fields))
        return docs

    @staticmethod
    def _parse_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(_decode(value))
        except (TypeError, ValueError):
            return None


class ScanFallbackEngine(SearchEngine):
    """Fallback engine for Redis without the search module.

    The "index" is a presence-marker key and every query is a SCAN over the
    collection prefix: O(N) round-trips per call. No schema is enforced, so
    vector dimensions are only as consistent as the writers make them.
    """

    name = "scan-fallback"

    def __init__(self, client: Any, keys: CollectionKeys, page_size: int = 500):
        super().__init__(client, keys)
        self.page_size = max(1, page_size)

    def index_exists(self) -> bool:
        return bool(self.client.exists(self.keys.marker_key))

    def create_index(self, vector_size: int) -> None:
        self.client.set(self.keys.marker_key, "exists")

    def drop_index(self) -> None:
        self.client.delete(self.keys.marker_key)

    def _iter_records(self, user_id: Optional[str],
                      cancel: Optional[threading.Event]) -> Iterator[MemoryItem]:
        _check_cancel(cancel)
        for key in self.client.scan_iter(match=self.keys.scan_pattern, count=self.page_size):
            _check_cancel(cancel)
            # A collection named "flag" puts its own marker under the prefix.
            if _decode(key) == self.keys.marker_key:
                continue
            try:
                fields = self.client.hgetall(key)
            except ResponseError as exc:
                if "WRONGTYPE" not in str(exc):
                    raise
                log.debug("Skipping non-hash key %s under %s", _decode(key), self.keys.key_prefix)
                continue
            if not fields:
                continue
            item = from_fields(fields, fallback_id=self.keys.id_from_key(key))
            if user_id is not None and item.user_id != user_id:
                continue
            yield item

    def search(self, query_vector: Sequence[float], user_id: Optional[str] = None,
               limit: int = 100, cancel: Optional[threading.Event] = None) -> List[MemorySearchResult]:
        query = list(query_vector)
        candidates = [
            (item, cosine_similarity(query, item.embedding))
            for item in self._iter_records(user_id, cancel)
        ]
        return [
            MemorySearchResult(id=item.id, memory=item, score=similarity)
            for item, similarity in rank_by_similarity(candidates, limit)
        ]

    def list_memories(self, user_id: Optional[str] = None, limit: int = 100,
                      cancel: Optional[threading.Event] = None) -> List[MemoryItem]:
        # Full scan, bounded selection: same result set the native index returns.
        return heapq.nlargest(limit, self._iter_records(user_id, cancel), key=lambda item: item.created_at)


class MemoryVectorStore:
    """Public store for one collection; picks the engine from the capability verdict."""

    def __init__(
        self,
        client: Any,
        collection_name: str,
        production: bool = False,
        scan_page_size: int = 500,
        delete_by_owner_limit: int = 10_000,
        probe: Optional[CapabilityProbe] = None,
    ):
        self.client = client
        self.keys = CollectionKeys(collection_name)
        self.probe = probe or CapabilityProbe(client, production=production)
        self.native = RedisSearchEngine(client, self.keys)
        self.fallback = ScanFallbackEngine(client, self.keys, page_size=scan_page_size)
        self.lifecycle = IndexLifecycleManager(self.engine)
        self.delete_by_owner_limit = delete_by_owner_limit
        self._vector_size: Optional[int] = None

        self._search_lock = threading.Lock()
        self._search_durations_ms: list[float] = []
        self._search_count = 0
        self._search_error_count = 0

        log.info("MemoryVectorStore ready for collection '%s'", collection_name)

    # ── Dispatch ──────────────────────────────────────────────────────────────

    def engine(self) -> SearchEngine:
        """Engine for the resolved capability (probes Redis on first use only)."""
        return self.native if self.probe.resolve() else self.fallback

    @contextmanager
    def _backend_call(self, operation: str) -> Iterator[None]:
        try:
            yield
        except BackendUnavailable:
            raise
        except (RedisConnectionError, RedisTimeoutError) as exc:
            log.error("Redis unavailable during %s: %s", operation, exc)
            raise BackendUnavailable(f"Redis unavailable during {operation}: {exc}") from exc

    def _validate_dimensions(self, memories: List[MemoryItem], allow_empty: bool = False) -> None:
        """Reject embeddings whose length differs from the declared vector size.

        An empty embedding is only accepted by update, where it means "keep the
        stored vector". A record stored without one could not be indexed.
        """
        if self._vector_size is None:
            return
        for memory in memories:
            if not memory.embedding and allow_empty:
                continue
            if len(memory.embedding) != self._vector_size:
                raise DimensionMismatch(
                    f"Memory {memory.id} has a {len(memory.embedding)}-dim embedding; "
                    f"collection '{self.keys.name}' expects {self._vector_size}"
                )

    def _validate_query(self, query_vector: Sequence[float]) -> None:
        if self._vector_size is not None and len(query_vector) != self._vector_size:
            raise DimensionMismatch(
                f"Query vector has {len(query_vector)} dimensions; "
                f"collection '{self.keys.name}' expects {self._vector_size}"
            )

    # ── Collection ────────────────────────────────────────────────────────────

    def ensure_collection_exists(self, vector_size: int, allow_recreation: bool = False) -> bool:
        """Create the collection index if needed. Returns True if one was created."""
        if vector_size <= 0:
            raise ValueError(f"vector_size must be positive, got {vector_size}")
        with self._backend_call("ensure_collection_exists"):
            created = self.lifecycle.ensure_exists(vector_size, allow_recreation)
        self._vector_size = vector_size
        return created

    # ── Records ───────────────────────────────────────────────────────────────

    def insert(self, memories: List[MemoryItem]) -> None:
        self._validate_dimensions(memories)
        with self._backend_call("insert"):
            for memory in memories:
                self.client.hset(self.keys.key_for(memory.id), mapping=to_fields(memory))

    def update(self, memories: List[MemoryItem]) -> int:
        """Overwrite data/hash/metadata/updated_at/embedding of existing records.

        An empty embedding leaves the stored vector untouched. Missing records
        are skipped. Returns the number updated.
        """
        self._validate_dimensions(memories, allow_empty=True)
        now = datetime.now(UTC)
        updated = 0
        with self._backend_call("update"):
            for memory in memories:
                key = self.keys.key_for(memory.id)
                if not self.client.exists(key):
                    continue
                self.client.hset(key, mapping=to_update_fields(memory, now))
                updated += 1
        return updated

    def get(self, memory_id: str) -> Optional[MemoryItem]:
        with self._backend_call("get"):
            fields = self.client.hgetall(self.keys.key_for(memory_id))
        if not fields:
            return None
        return from_fields(fields, fallback_id=memory_id)

    def delete(self, memory_id: str) -> None:
        with self._backend_call("delete"):
            self.client.delete(self.keys.key_for(memory_id))

    def delete_by_owner(self, user_id: str) -> int:
        """Delete up to ``delete_by_owner_limit`` of the owner's records, one by one.

        Not atomic: a failure part-way leaves the earlier deletions in place.
        """
        memories = self.list_memories(user_id=user_id, limit=self.delete_by_owner_limit)
        for memory in memories:
            self.delete(memory.id)
        log.info("Deleted %d memories for user_id=%s", len(memories), user_id)
        return len(memories)

    # ── Queries ───────────────────────────────────────────────────────────────

    def search(self, query_vector: Sequence[float], user_id: Optional[str] = None,
               limit: int = 100, cancel: Optional[threading.Event] = None) -> List[MemorySearchResult]:
        if limit <= 0:
            return []
        self._validate_query(query_vector)
        start = time.perf_counter()
        result_count = 0
        failed = False
        engine_name = ""
        try:
            with self._backend_call("search"):
                engine = self.engine()
                engine_name = engine.name
                results = engine.search(query_vector, user_id=user_id, limit=limit, cancel=cancel)
            result_count = len(results)
            return results
        except Exception:
            failed = True
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            with self._search_lock:
                self._search_count += 1
                if failed:
                    self._search_error_count += 1
                self._search_durations_ms.append(duration_ms)
                if len(self._search_durations_ms) > 10_000:
                    del self._search_durations_ms[:5_000]

            log.info(
                "memory_search backend=%s limit=%s user_id=%s duration_ms=%.2f results=%s failed=%s",
                engine_name or "unresolved",
                limit,
                user_id or "",
                duration_ms,
                result_count,
                failed,
            )

    def list_memories(self, user_id: Optional[str] = None, limit: int = 100,
                      cancel: Optional[threading.Event] = None) -> List[MemoryItem]:
        """Memories ordered by created_at, newest first."""
        if limit <= 0:
            return []
        with self._backend_call("list"):
            return self.engine().list_memories(user_id=user_id, limit=limit, cancel=cancel)

    # ── Health ────────────────────────────────────────────────────────────────

    def is_degraded(self) -> bool:
        """True once the probe has settled on the fallback scan."""
        return self.probe.verdict is CapabilityVerdict.UNSUPPORTED

    def get_stats(self) -> Dict[str, Any]:
        verdict = self.probe.verdict
        if verdict is CapabilityVerdict.SUPPORTED:
            engine_name = self.native.name
        elif verdict is CapabilityVerdict.UNSUPPORTED:
            engine_name = self.fallback.name
        else:
            engine_name = None

        with self._search_lock:
            timings = list(self._search_durations_ms)
            search_count = self._search_count
            error_count = self._search_error_count

        avg_latency = sum(timings) / len(timings) if timings else 0.0
        return {
            "collection": self.keys.name,
            "index_name": self.keys.index_name,
            "capability": verdict.value,
            "engine": engine_name,
            "production": self.probe.production,
            "vector_size": self._vector_size,
            "search_count": search_count,
            "search_error_count": error_count,
            "search_avg_ms": round(avg_latency, 2),
            "search_p95_ms": round(self._percentile(timings, 95), 2),
            "search_last_ms": round(timings[-1], 2) if timings else 0.0,
        }

    @staticmethod
    def _percentile(values: List[float], pct: float) -> float:
        if not values:
            return 0.0
        sorted_vals = sorted(values)
        idx = int(len(sorted_vals) * pct / 100)
        idx = min(idx, len(sorted_vals) - 1)
        return sorted_vals[idx]
