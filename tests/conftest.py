from __future__ import annotations

import fnmatch
import importlib
import re
import sys
import threading
import time
from datetime import datetime, timedelta, UTC
from pathlib import Path

import numpy as np
import pytest
from redis.exceptions import ResponseError


REPO_ROOT = Path(__file__).resolve().parents[1]
for _path in (REPO_ROOT / "service", REPO_ROOT / "sdk"):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))


def _b(value) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return str(value).encode("utf-8")


def _s(value) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


_STOPWORDS = {"a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "if", "in", "into", "is", "it",
              "no", "not", "of", "on", "or", "such", "that", "the", "their", "then", "there", "these",
              "they", "this", "to", "was", "will", "with"}


def _tokens(text: str) -> list[str]:
    return [t for t in re.findall(r"\w+", text.lower()) if t not in _STOPWORDS]


_QUERY_RE = re.compile(
    r'^(?:\*|\(?@user_id:"(?P<owner>(?:[^"\\]|\\.)*)"\)?)'
    r"(?:=>\[KNN (?P<k>\d+) @embedding \$(?P<param>\w+) AS (?P<score>\S+)\])?$"
)


class FakeRedis:
    """In-memory stand-in for a redis-py client with decode_responses=False.

    Hashes, plain string keys, SCAN, and the handful of FT.* commands the store
    issues. TEXT matching on ``user_id`` is token based, like the real
    module: stopwords drop out, so a phrase filter can match more than one
    exact owner, or none.
    """

    def __init__(self, search_supported: bool = True, probe_delay: float = 0.0, probe_error: Exception | None = None):
        self.search_supported = search_supported
        self.probe_delay = probe_delay
        self.probe_error = probe_error
        self.hashes: dict[str, dict[bytes, bytes]] = {}
        self.strings: dict[str, bytes] = {}
        self.indexes: dict[str, dict] = {}
        self.commands: list[tuple] = []
        self.probe_calls = 0
        self.fail_with: Exception | None = None
        self.create_error: str | None = None
        self._lock = threading.Lock()

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    # ── Plain commands ────────────────────────────────────────────────────────

    def hset(self, key, mapping=None, **_kwargs):
        self._maybe_fail()
        record = self.hashes.setdefault(_s(key), {})
        added = 0
        for field, value in (mapping or {}).items():
            field = _b(field)
            if field not in record:
                added += 1
            record[field] = _b(value)
        return added

    def hgetall(self, key):
        self._maybe_fail()
        if _s(key) in self.strings:
            raise ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return dict(self.hashes.get(_s(key), {}))

    def exists(self, *keys):
        self._maybe_fail()
        return sum(1 for k in keys if _s(k) in self.hashes or _s(k) in self.strings)

    def delete(self, *keys):
        self._maybe_fail()
        removed = 0
        for key in keys:
            key = _s(key)
            if self.hashes.pop(key, None) is not None or self.strings.pop(key, None) is not None:
                removed += 1
        return removed

    def set(self, key, value):
        self._maybe_fail()
        self.strings[_s(key)] = _b(value)
        return True

    def get(self, key):
        self._maybe_fail()
        return self.strings.get(_s(key))

    def scan_iter(self, match=None, count=None):
        self._maybe_fail()
        for key in sorted([*self.hashes, *self.strings]):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key.encode("utf-8")

    def close(self):
        pass

    # ── FT.* ──────────────────────────────────────────────────────────────────

    def execute_command(self, *args):
        self._maybe_fail()
        self.commands.append(args)
        command = _s(args[0]).upper()
        if command == "FT._LIST":
            with self._lock:
                self.probe_calls += 1
            if self.probe_delay:
                time.sleep(self.probe_delay)
            if self.probe_error is not None:
                raise self.probe_error
            self._require_search(command)
            return [name.encode("utf-8") for name in self.indexes]
        self._require_search(command)
        if command == "FT.CREATE":
            return self._create(args)
        if command == "FT.DROPINDEX":
            name = _s(args[1])
            if name not in self.indexes:
                raise ResponseError("Unknown Index name")
            del self.indexes[name]
            return b"OK"
        if command == "FT.SEARCH":
            return self._search(args)
        raise ResponseError(f"unknown command '{command}'")

    def commands_named(self, name: str) -> list[tuple]:
        return [c for c in self.commands if _s(c[0]).upper() == name]

    def _require_search(self, command: str) -> None:
        if not self.search_supported:
            raise ResponseError(f"unknown command '{command}', with args beginning with: ")

    def _create(self, args):
        if self.create_error:
            raise ResponseError(self.create_error)
        name = _s(args[1])
        if name in self.indexes:
            raise ResponseError("Index already exists")
        words = [_s(a) for a in args]
        prefix = words[words.index("PREFIX") + 2]
        dim = int(words[words.index("DIM") + 1])
        self.indexes[name] = {"prefix": prefix, "dim": dim, "args": words}
        return b"OK"

    def _search(self, args):
        name = _s(args[1])
        if name not in self.indexes:
            raise ResponseError(f"{name}: no such index")
        index = self.indexes[name]
        match = _QUERY_RE.match(_s(args[2]))
        if match is None:
            raise ResponseError(f"Syntax error in query {_s(args[2])!r}")

        return_fields: list[str] | None = None
        sort_by: tuple[str, bool] | None = None
        offset, num = 0, 10
        params: dict[str, bytes] = {}
        i = 3
        while i < len(args):
            word = _s(args[i]).upper()
            if word == "RETURN":
                n = int(args[i + 1])
                return_fields = [_s(a) for a in args[i + 2:i + 2 + n]]
                i += 2 + n
            elif word == "SORTBY":
                sort_by = (_s(args[i + 1]), _s(args[i + 2]).upper() == "DESC")
                i += 3
            elif word == "LIMIT":
                offset, num = int(args[i + 1]), int(args[i + 2])
                i += 3
            elif word == "PARAMS":
                n = int(args[i + 1])
                for j in range(i + 2, i + 2 + n, 2):
                    params[_s(args[j])] = args[j + 1]
                i += 2 + n
            elif word == "DIALECT":
                i += 2
            else:
                raise ResponseError(f"Unknown argument {word}")

        docs = []
        for key in sorted(self.hashes):
            if not key.startswith(index["prefix"]):
                continue
            record = {_s(f): v for f, v in self.hashes[key].items()}
            owner = match.group("owner")
            if owner is not None:
                wanted = re.sub(r"\\(.)", r"\1", owner)
                wanted_tokens = _tokens(wanted)
                if not wanted_tokens or _tokens(_s(record.get("user_id", b""))) != wanted_tokens:
                    continue
            docs.append((key, record))

        if match.group("k") is not None:
            blob = params[match.group("param")]
            if len(blob) != index["dim"] * 4:
                raise ResponseError(
                    f"Error parsing vector similarity query: query vector blob size ({len(blob)}) "
                    f"does not match index's expected size ({index['dim'] * 4})."
                )
            query = np.frombuffer(blob, dtype="<f4").astype(np.float64)
            score_field = match.group("score")
            scored = []
            for key, record in docs:
                vec = np.frombuffer(record.get("embedding", b""), dtype="<f4").astype(np.float64)
                if vec.shape != query.shape:
                    continue
                denom = np.linalg.norm(vec) * np.linalg.norm(query)
                distance = 1.0 - (float(np.dot(vec, query) / denom) if denom else 0.0)
                record = dict(record)
                record[score_field] = repr(distance).encode("utf-8")
                scored.append((distance, key, record))
            scored.sort(key=lambda entry: entry[0])
            docs = [(key, record) for _, key, record in scored[: int(match.group("k"))]]

        if sort_by is not None:
            field, descending = sort_by
            docs.sort(key=lambda doc: float(_s(doc[1].get(field, b"0"))), reverse=descending)

        page = docs[offset:offset + num]
        reply: list = [len(docs)]
        for key, record in page:
            fields = return_fields or list(record)
            flat = []
            for field in fields:
                if field in record:
                    flat.extend([field.encode("utf-8"), record[field]])
            reply.extend([key.encode("utf-8"), flat])
        return reply


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def plain_redis():
    return FakeRedis(search_supported=False)


@pytest.fixture()
def make_memory():
    base = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    counter = {"n": 0}

    def _make(memory_id: str, embedding, user_id: str | None = "alice", **overrides):
        from memory.models import MemoryItem

        counter["n"] += 1
        fields = {
            "id": memory_id,
            "data": f"memory {memory_id}",
            "user_id": user_id,
            "embedding": list(embedding),
            "created_at": base + timedelta(minutes=counter["n"]),
        }
        fields.update(overrides)
        return MemoryItem(**fields)

    return _make


@pytest.fixture()
def native_store(fake_redis):
    from memory.vector_store import MemoryVectorStore

    store = MemoryVectorStore(fake_redis, "memories")
    store.ensure_collection_exists(2)
    return store


@pytest.fixture()
def fallback_store(plain_redis):
    from memory.vector_store import MemoryVectorStore

    store = MemoryVectorStore(plain_redis, "memories")
    store.ensure_collection_exists(2)
    return store


@pytest.fixture()
def client(monkeypatch, native_store):
    pytest.importorskip("fastapi")
    monkeypatch.setenv("MEMVAULT_TEST_MODE", "1")

    import config
    import main
    from metrics.stats_logger import reset_request_stats
    from runtime import clear_store, install_store

    importlib.reload(config)
    importlib.reload(main)
    reset_request_stats()
    install_store(native_store)

    from fastapi.testclient import TestClient

    try:
        with TestClient(main.app) as test_client:
            yield test_client
    finally:
        clear_store()
