from __future__ import annotations

import asyncio

import pytest

from convoflow.services.event_emitter import EventEmitter, build_lifecycle_envelope
from tests.utils import InMemoryRedis


class _BrokenRedis:
    async def publish(self, channel: str, message: str) -> int:
        raise ConnectionError("redis is down")


def test_envelope_always_carries_session_id():
    envelope = build_lifecycle_envelope(
        event_type="action_executed",
        session_id="s1",
        payload={"actionId": "act_1", "status": "succeeded"},
        created_at_iso="2025-01-02T03:04:05+00:00",
    )

    assert envelope == {
        "type": "lifecycle.event",
        "event_type": "action_executed",
        "session_id": "s1",
        "created_at": "2025-01-02T03:04:05+00:00",
        "payload": {"sessionId": "s1", "actionId": "act_1", "status": "succeeded"},
    }


@pytest.mark.asyncio
async def test_emit_publishes_to_channel():
    redis = InMemoryRedis()
    emitter = EventEmitter(redis, channel="lifecycle:test")

    emitter.conversation_started("s1")
    emitter.action_executed("s1", action_id="act_1", status="failed")
    emitter.error_occurred("s1", kind="inference_unavailable", detail="upstream 503")
    await emitter.drain()

    events = redis.published_json("lifecycle:test")
    assert [e["event_type"] for e in events] == ["conversation_started", "action_executed", "error_occurred"]
    assert events[1]["payload"] == {"sessionId": "s1", "actionId": "act_1", "status": "failed"}
    assert events[2]["payload"]["kind"] == "inference_unavailable"
    assert events[2]["payload"]["detail"] == "upstream 503"


@pytest.mark.asyncio
async def test_emit_never_raises_when_redis_is_down():
    emitter = EventEmitter(_BrokenRedis(), channel="lifecycle:test")

    emitter.conversation_started("s1")
    await emitter.drain()
    await asyncio.sleep(0)


def test_emit_without_running_loop_is_noop():
    redis = InMemoryRedis()
    emitter = EventEmitter(redis, channel="lifecycle:test")

    emitter.conversation_started("s1")

    assert redis.published_json("lifecycle:test") == []
