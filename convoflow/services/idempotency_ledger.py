from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import UTC, datetime
from typing import Any

from redis.asyncio import Redis

from convoflow.errors import StateError
from convoflow.logging_config import logger
from convoflow.redis_client import dumps_json, loads_json, redis_get_json, redis_set_json
from convoflow.schemas import (
    ActionResult,
    Admitted,
    AlreadyInFlight,
    AlreadyResolved,
    BeginOutcome,
)
from convoflow.settings import settings


def ledger_inflight_key(action_id: str) -> str:
    return f"action_ledger:{action_id}:inflight"


def ledger_admitted_key(action_id: str) -> str:
    return f"action_ledger:{action_id}:admitted"


def ledger_result_key(action_id: str) -> str:
    return f"action_ledger:{action_id}:result"


def action_result_channel(action_id: str) -> str:
    return f"action_results:{action_id}"


class IdempotencyLedger:
    """
    幂等账本：把"至少一次投递"的队列变成"每个 action_id 恰好一次副作用"。

    三个 Redis key：
    - ``...:inflight``：SET NX 原子准入，带租约（worker 崩溃后租约到期才允许重新受理），
      执行期间由 worker 心跳续租；
    - ``...:admitted``：记录曾经 begin 过，保留到结果过期；租约过期后 resolve 仍然合法；
    - ``...:result``：SET NX 写入第一次解析结果，之后不可变，是所有调用方看到的权威结果。

    解析结果同时发布到 ``action_results:{action_id}``，等待方据此挂起而非忙等。
    """

    def __init__(
        self,
        redis: Redis,
        *,
        inflight_lease_seconds: int | None = None,
        result_ttl_seconds: int | None = None,
    ) -> None:
        self._redis = redis
        self._lease_seconds = int(inflight_lease_seconds or settings.action_inflight_lease_seconds)
        self._result_ttl_seconds = int(result_ttl_seconds or settings.action_result_ttl_seconds)

    @property
    def lease_seconds(self) -> int:
        return self._lease_seconds

    async def get(self, action_id: str) -> ActionResult | None:
        raw = await redis_get_json(self._redis, ledger_result_key(action_id))
        if not isinstance(raw, dict):
            return None
        return ActionResult.model_validate(raw)

    async def begin(
        self,
        action_id: str,
        *,
        worker_id: str | None = None,
        lease_seconds: int | None = None,
    ) -> BeginOutcome:
        resolved = await self.get(action_id)
        if resolved is not None:
            return AlreadyResolved(action_id=action_id, result=resolved)

        marker: dict[str, Any] = {
            "state": "in_flight",
            "action_id": action_id,
            "admitted_at": datetime.now(UTC).isoformat(),
            "worker_id": worker_id,
        }
        admitted = await redis_set_json(
            self._redis,
            ledger_inflight_key(action_id),
            marker,
            ttl_seconds=int(lease_seconds or self._lease_seconds),
            only_if_absent=True,
        )
        if admitted:
            await redis_set_json(
                self._redis,
                ledger_admitted_key(action_id),
                marker,
                ttl_seconds=self._result_ttl_seconds,
            )
            logger.debug("ledger: admitted action_id=%s worker=%s", action_id, worker_id)
            return Admitted(action_id=action_id)

        # Lost the race; the winner may already have resolved it.
        resolved = await self.get(action_id)
        if resolved is not None:
            return AlreadyResolved(action_id=action_id, result=resolved)
        return AlreadyInFlight(action_id=action_id)

    async def renew(
        self,
        action_id: str,
        *,
        worker_id: str | None = None,
        lease_seconds: int | None = None,
    ) -> bool:
        """
        延长 in-flight 租约（SET XX）。标记已经过期或已被清理时返回 False，
        不会凭空重新创建标记。
        """
        marker = await redis_get_json(self._redis, ledger_inflight_key(action_id))
        if not isinstance(marker, dict):
            return False
        if worker_id is not None and marker.get("worker_id") not in (None, worker_id):
            logger.warning(
                "ledger: action_id=%s is held by %s, not renewing for %s",
                action_id,
                marker.get("worker_id"),
                worker_id,
            )
            return False
        renewed = await self._redis.set(
            ledger_inflight_key(action_id),
            dumps_json(marker),
            ex=int(lease_seconds or self._lease_seconds),
            xx=True,
        )
        return bool(renewed)

    async def resolve(self, action_id: str, result: ActionResult) -> ActionResult:
        """
        in-flight -> resolved. Returns the authoritative record, which is the
        first resolution ever written for this action_id.

        The admitted worker always gets to write its result, even when its
        in-flight lease ran out mid-execution; SET NX keeps whichever result
        landed first.
        """
        if result.action_id != action_id:
            raise StateError(f"result for {result.action_id} cannot resolve {action_id}")

        marker = await redis_get_json(self._redis, ledger_inflight_key(action_id))
        if marker is None:
            existing = await self.get(action_id)
            if existing is not None:
                return existing
            if await redis_get_json(self._redis, ledger_admitted_key(action_id)) is None:
                raise StateError(f"resolve() called without begin() for action {action_id}")
            logger.warning("ledger: in-flight lease for action_id=%s expired before resolve", action_id)

        written = await redis_set_json(
            self._redis,
            ledger_result_key(action_id),
            result.model_dump(mode="json"),
            ttl_seconds=self._result_ttl_seconds,
            only_if_absent=True,
        )
        if not written:
            existing = await self.get(action_id)
            logger.warning("ledger: action_id=%s already resolved; keeping first result", action_id)
            return existing or result

        logger.info(
            "ledger: resolved action_id=%s status=%s attempt=%s",
            action_id,
            result.status.value,
            result.attempt,
        )
        await self._redis.publish(action_result_channel(action_id), dumps_json(result.model_dump(mode="json")))
        return result

    async def wait_for(self, action_id: str, timeout: float) -> ActionResult | None:
        """
        Suspend until the action resolves or ``timeout`` elapses (None).
        Subscribes before re-checking the record so a resolution published in
        between cannot be missed.
        """
        resolved = await self.get(action_id)
        if resolved is not None or timeout <= 0:
            return resolved

        loop = asyncio.get_running_loop()
        deadline = loop.time() + float(timeout)
        channel = action_result_channel(action_id)
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            resolved = await self.get(action_id)
            if resolved is not None:
                return resolved

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return await self.get(action_id)

                msg = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=min(remaining, 1.0)
                )
                if isinstance(msg, dict) and msg.get("type") == "message":
                    payload = loads_json(msg.get("data"))
                    if isinstance(payload, dict):
                        return ActionResult.model_validate(payload)

                # pub/sub is fire-and-forget; the stored record is the truth.
                resolved = await self.get(action_id)
                if resolved is not None:
                    return resolved
        finally:
            with suppress(Exception):
                await pubsub.unsubscribe(channel)
            with suppress(Exception):
                await pubsub.close()


__all__ = [
    "IdempotencyLedger",
    "action_result_channel",
    "ledger_admitted_key",
    "ledger_inflight_key",
    "ledger_result_key",
]
