"""Redis client construction from endpoint + optional credential."""
from __future__ import annotations

import logging
from typing import Any

import redis

log = logging.getLogger(__name__)


def parse_credential(credential: str | None) -> dict[str, str]:
    """Split ``user:password`` into redis-py auth kwargs; a bare value is the password."""
    if not credential:
        return {}
    user, sep, password = credential.partition(":")
    if sep:
        return {"username": user, "password": password}
    return {"password": credential}


def build_redis_client(url: str, credential: str | None = None, **kwargs: Any) -> redis.Redis:
    """Return a binary-safe client; vectors are raw bytes, so responses are not decoded."""
    if "://" not in url:
        url = f"redis://{url}"
    options: dict[str, Any] = {"decode_responses": False}
    options.update(parse_credential(credential))
    options.update(kwargs)
    log.info("Connecting to Redis at %s", url.split("@")[-1])
    return redis.Redis.from_url(url, **options)
