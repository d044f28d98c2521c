"""Thin Python SDK for the MemVault HTTP API."""
from __future__ import annotations

from typing import Any, Sequence
from urllib.parse import quote

import httpx


def _segment(value: str) -> str:
    return quote(value, safe="")


class MemVaultClient:
    def __init__(
        self,
        base_url: str = "http://localhost:7431",
        api_key: str = "dev-key-change-in-production",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "MemVaultClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def health(self) -> dict[str, Any]:
        return self._client.get("/health").json()

    def ensure_collection(self, vector_size: int, allow_recreation: bool = False) -> dict[str, Any]:
        resp = self._client.post(
            "/collection",
            json={"vector_size": vector_size, "allow_recreation": allow_recreation},
        )
        resp.raise_for_status()
        return resp.json()

    def insert(self, memories: Sequence[dict[str, Any]]) -> dict[str, Any]:
        resp = self._client.post("/memories", json={"memories": list(memories)})
        resp.raise_for_status()
        return resp.json()

    def update(self, memories: Sequence[dict[str, Any]]) -> dict[str, Any]:
        resp = self._client.put("/memories", json={"memories": list(memories)})
        resp.raise_for_status()
        return resp.json()

    def get(self, memory_id: str) -> dict[str, Any] | None:
        resp = self._client.get(f"/memories/{_segment(memory_id)}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    def list_memories(self, user_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit}
        if user_id is not None:
            params["user_id"] = user_id
        resp = self._client.get("/memories", params=params)
        resp.raise_for_status()
        return resp.json()["memories"]

    def delete(self, memory_id: str) -> dict[str, Any]:
        resp = self._client.delete(f"/memories/{_segment(memory_id)}")
        resp.raise_for_status()
        return resp.json()

    def delete_by_owner(self, user_id: str) -> int:
        resp = self._client.delete(f"/users/{_segment(user_id)}/memories")
        resp.raise_for_status()
        return int(resp.json()["deleted_count"])

    def search(self, vector: Sequence[float], user_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"vector": list(vector), "limit": limit}
        if user_id is not None:
            payload["user_id"] = user_id
        resp = self._client.post("/search", json=payload)
        resp.raise_for_status()
        return resp.json()["results"]

    def stats(self) -> dict[str, Any]:
        resp = self._client.get("/stats")
        resp.raise_for_status()
        return resp.json()
