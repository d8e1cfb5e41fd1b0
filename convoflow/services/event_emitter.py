from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any

from redis.asyncio import Redis

from convoflow.logging_config import logger
from convoflow.redis_client import dumps_json
from convoflow.settings import settings

CONVERSATION_STARTED = "conversation_started"
ACTION_EXECUTED = "action_executed"
ERROR_OCCURRED = "error_occurred"


def build_lifecycle_envelope(
    *,
    event_type: str,
    session_id: str,
    payload: dict[str, Any] | None,
    created_at_iso: str | None = None,
) -> dict[str, Any]:
    return {
        "type": "lifecycle.event",
        "event_type": str(event_type or "").strip() or "event",
        "session_id": str(session_id),
        "created_at": created_at_iso or datetime.now(UTC).isoformat(),
        "payload": {"sessionId": str(session_id), **(payload or {})},
    }


class EventEmitter:
    """
    生命周期事件：fire-and-forget 发布到 Redis pub/sub。

    emit() 只在当前事件循环上调度一次 publish，失败只记 debug 日志，
    永远不会让一轮对话失败。
    """

    def __init__(self, redis: Redis | None, *, channel: str | None = None) -> None:
        self._redis = redis
        self.channel = channel or settings.lifecycle_event_channel
        self._pending: set[asyncio.Task] = set()

    async def publish(self, envelope: dict[str, Any]) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.publish(self.channel, dumps_json(envelope))
        except Exception:
            logger.debug(
                "event_emitter: publish failed (event_type=%s session_id=%s)",
                envelope.get("event_type"),
                envelope.get("session_id"),
                exc_info=True,
            )

    def emit(self, event_type: str, session_id: str, payload: dict[str, Any] | None = None) -> None:
        if self._redis is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        envelope = build_lifecycle_envelope(event_type=event_type, session_id=session_id, payload=payload)
        task = loop.create_task(self.publish(envelope))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def conversation_started(self, session_id: str) -> None:
        self.emit(CONVERSATION_STARTED, session_id)

    def action_executed(self, session_id: str, *, action_id: str, status: str) -> None:
        self.emit(ACTION_EXECUTED, session_id, {"actionId": action_id, "status": status})

    def error_occurred(self, session_id: str, *, kind: str, detail: str | None = None) -> None:
        payload: dict[str, Any] = {"kind": kind}
        if detail:
            payload["detail"] = detail
        self.emit(ERROR_OCCURRED, session_id, payload)

    async def drain(self) -> None:
        """Wait for scheduled publishes (shutdown / tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = [
    "ACTION_EXECUTED",
    "CONVERSATION_STARTED",
    "ERROR_OCCURRED",
    "EventEmitter",
    "build_lifecycle_envelope",
]
