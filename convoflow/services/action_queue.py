"""
动作队列（Redis reliable queue）

    action_queue:pending      LPUSH 入队 / BLMOVE 取出（FIFO）
    action_queue:processing   已被 worker 取走、尚未 ack 的投递
    action_queue:leases       ZSET，score = 可见性超时截止时间
    action_queue:dead_letter  超过重试上限的投递

投递语义是"至少一次"：worker 崩溃或超时未 ack 的投递会被 requeue_expired
放回 pending，重复执行由幂等账本拦截。
"""

from __future__ import annotations

import time
import uuid
from typing import Any

from redis.asyncio import Redis

from convoflow.logging_config import logger
from convoflow.redis_client import dumps_json, loads_json
from convoflow.schemas import ActionDelivery, ActionRequest, ActionResult, DeadLetter
from convoflow.settings import settings

PENDING_KEY = "action_queue:pending"
PROCESSING_KEY = "action_queue:processing"
LEASES_KEY = "action_queue:leases"
DEAD_LETTER_KEY = "action_queue:dead_letter"


def _encode(delivery: ActionDelivery) -> str:
    return dumps_json(delivery.model_dump(mode="json"))


def _decode(raw: Any) -> ActionDelivery | None:
    payload = loads_json(raw)
    if not isinstance(payload, dict):
        return None
    try:
        delivery = ActionDelivery.model_validate(payload)
    except ValueError:
        return None
    delivery._raw = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
    return delivery


class ActionQueue:
    def __init__(self, redis: Redis, *, visibility_timeout_seconds: int | None = None) -> None:
        self._redis = redis
        self.visibility_timeout_seconds = int(
            visibility_timeout_seconds or settings.action_queue_visibility_timeout_seconds
        )

    async def push(self, request: ActionRequest, *, redeliveries: int = 0) -> ActionDelivery:
        delivery = ActionDelivery(
            delivery_id="dlv_" + uuid.uuid4().hex,
            request=request,
            redeliveries=redeliveries,
        )
        raw = _encode(delivery)
        await self._redis.lpush(PENDING_KEY, raw)
        delivery._raw = raw
        logger.debug(
            "action_queue: pushed action_id=%s delivery_id=%s", request.action_id, delivery.delivery_id
        )
        return delivery

    async def pull(self, timeout: float | None = None) -> ActionDelivery | None:
        """Block up to ``timeout`` seconds for the next delivery; None when idle."""
        wait = float(timeout if timeout is not None else settings.action_worker_poll_seconds)
        raw = await self._redis.blmove(PENDING_KEY, PROCESSING_KEY, wait, "RIGHT", "LEFT")
        if raw is None:
            return None
        await self._redis.zadd(LEASES_KEY, {raw: time.time() + self.visibility_timeout_seconds})

        delivery = _decode(raw)
        if delivery is None:
            logger.error("action_queue: dropping malformed delivery payload: %r", raw)
            await self._drop(raw)
            return None
        return delivery

    async def _drop(self, raw: str) -> None:
        await self._redis.lrem(PROCESSING_KEY, 1, raw)
        await self._redis.zrem(LEASES_KEY, raw)

    async def ack(self, delivery: ActionDelivery) -> None:
        await self._drop(delivery._raw or _encode(delivery))

    async def extend(self, delivery: ActionDelivery) -> None:
        """Push the visibility deadline out again while the delivery is still being worked on."""
        raw = delivery._raw or _encode(delivery)
        await self._redis.zadd(LEASES_KEY, {raw: time.time() + self.visibility_timeout_seconds}, xx=True)

    async def requeue_expired(self, now: float | None = None) -> int:
        """Move deliveries whose visibility lease expired back to pending."""
        cutoff = time.time() if now is None else float(now)
        expired = await self._redis.zrangebyscore(LEASES_KEY, "-inf", cutoff)
        moved = 0
        for raw in expired or []:
            removed = await self._redis.lrem(PROCESSING_KEY, 1, raw)
            await self._redis.zrem(LEASES_KEY, raw)
            if not removed:
                # acked between the scan and now
                continue
            delivery = _decode(raw)
            if delivery is None:
                continue
            redelivered = delivery.model_copy(update={"redeliveries": delivery.redeliveries + 1})
            await self._redis.lpush(PENDING_KEY, _encode(redelivered))
            moved += 1
            logger.warning(
                "action_queue: redelivering action_id=%s delivery_id=%s (redeliveries=%d)",
                delivery.request.action_id,
                delivery.delivery_id,
                redelivered.redeliveries,
            )
        return moved

    async def dead_letter(self, delivery: ActionDelivery, result: ActionResult) -> DeadLetter:
        entry = DeadLetter(delivery=delivery, result=result)
        await self._redis.lpush(DEAD_LETTER_KEY, dumps_json(entry.model_dump(mode="json")))
        logger.error(
            "action_queue: dead-lettered action_id=%s tool=%s error=%s",
            delivery.request.action_id,
            delivery.request.tool_name,
            result.error_detail,
        )
        return entry

    async def list_dead_letters(self, limit: int = 50) -> list[DeadLetter]:
        raws = await self._redis.lrange(DEAD_LETTER_KEY, 0, max(0, int(limit)) - 1) if limit > 0 else []
        entries: list[DeadLetter] = []
        for raw in raws or []:
            payload = loads_json(raw)
            if isinstance(payload, dict):
                entries.append(DeadLetter.model_validate(payload))
        return entries

    async def stats(self) -> dict[str, int]:
        return {
            "pending": int(await self._redis.llen(PENDING_KEY)),
            "processing": int(await self._redis.llen(PROCESSING_KEY)),
            "dead_letter": int(await self._redis.llen(DEAD_LETTER_KEY)),
        }


__all__ = [
    "ActionQueue",
    "DEAD_LETTER_KEY",
    "LEASES_KEY",
    "PENDING_KEY",
    "PROCESSING_KEY",
]
