"""
Redis helper utilities.

The idempotency ledger, the action queue, turn cancellation flags and the
lifecycle event channel all live in Redis. This module is the central place
that constructs the client plus a couple of helpers for JSON-style key access.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any
from weakref import WeakKeyDictionary

from fastapi.encoders import jsonable_encoder
from redis.asyncio import Redis

from .settings import settings

_redis_clients_by_loop: WeakKeyDictionary[asyncio.AbstractEventLoop, Redis] = (
    WeakKeyDictionary()
)


def _ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        return asyncio.get_running_loop()
    except RuntimeError as exc:  # pragma: no cover - easier debugging for sync misuse
        raise RuntimeError(
            "get_redis_client() 必须在运行中的事件循环内调用，请在 async 环境或 "
            "asyncio.run(...) 内部获取 Redis 客户端"
        ) from exc


def _create_client() -> Redis:
    return Redis.from_url(settings.redis_url, decode_responses=True)


def get_redis_client() -> Redis:
    """
    Return a Redis client bound to the current event loop.
    """

    loop = _ensure_event_loop()
    client = _redis_clients_by_loop.get(loop)
    if client is None:
        client = _create_client()
        _redis_clients_by_loop[loop] = client
    return client


def dumps_json(value: Any) -> str:
    return json.dumps(jsonable_encoder(value), ensure_ascii=False)


def loads_json(raw: Any) -> Any | None:
    """
    Decode a JSON payload read from Redis (str or bytes).
    Returns None on missing or malformed payload.
    """
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="ignore")
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return None


async def redis_get_json(redis: Redis, key: str) -> Any | None:
    """
    Convenience wrapper that loads a JSON value from Redis.
    Returns None on missing key or malformed payload.
    """
    return loads_json(await redis.get(key))


async def redis_set_json(
    redis: Redis,
    key: str,
    value: Any,
    *,
    ttl_seconds: int | None = None,
    only_if_absent: bool = False,
) -> bool:
    """
    Store a JSON-serialisable value under the given key with optional TTL.

    With ``only_if_absent`` the write is an atomic SET NX; the return value
    tells whether this call created the key.
    """
    data = dumps_json(value)
    kwargs: dict[str, Any] = {}
    if ttl_seconds is not None:
        kwargs["ex"] = int(ttl_seconds)
    if only_if_absent:
        kwargs["nx"] = True
    created = await redis.set(key, data, **kwargs)
    return bool(created)


__all__ = [
    "dumps_json",
    "get_redis_client",
    "loads_json",
    "redis_get_json",
    "redis_set_json",
]
