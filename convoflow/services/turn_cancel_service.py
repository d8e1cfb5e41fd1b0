from __future__ import annotations

from redis.asyncio import Redis

from convoflow.settings import settings


def turn_cancel_key(session_id: str) -> str:
    return f"turn_cancel:{session_id}"


async def mark_turn_canceled(redis: Redis, session_id: str, *, ttl_seconds: int | None = None) -> None:
    ttl = int(ttl_seconds or settings.turn_cancel_ttl_seconds)
    await redis.set(turn_cancel_key(session_id), "1", ex=ttl)


async def is_turn_canceled(redis: Redis, session_id: str) -> bool:
    val = await redis.get(turn_cancel_key(session_id))
    return val is not None and str(val).strip() != ""


async def clear_turn_cancel(redis: Redis, session_id: str) -> None:
    await redis.delete(turn_cancel_key(session_id))


__all__ = ["clear_turn_cancel", "is_turn_canceled", "mark_turn_canceled", "turn_cancel_key"]
