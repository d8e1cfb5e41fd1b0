from __future__ import annotations

import asyncio

from celery import shared_task
from redis.asyncio import Redis

from convoflow.celery_app import celery_app
from convoflow.logging_config import logger
from convoflow.redis_client import get_redis_client
from convoflow.services.action_queue import ActionQueue
from convoflow.settings import settings


async def requeue_stalled_actions_async(redis: Redis, *, now: float | None = None) -> int:
    queue = ActionQueue(redis)
    moved = await queue.requeue_expired(now=now)
    if moved:
        logger.warning("requeue_stalled_actions: %d deliveries moved back to pending", moved)
    else:
        logger.debug("requeue_stalled_actions: nothing to requeue")
    return moved


async def dead_letter_report_async(redis: Redis) -> dict[str, int]:
    stats = await ActionQueue(redis).stats()
    if stats["dead_letter"]:
        logger.warning(
            "dead_letter_report: %d dead-lettered actions (pending=%d processing=%d)",
            stats["dead_letter"],
            stats["pending"],
            stats["processing"],
        )
    else:
        logger.info("dead_letter_report: queue healthy %s", stats)
    return stats


@shared_task(name="tasks.requeue_stalled_actions")
def requeue_stalled_actions() -> int:
    """把可见性超时（worker 崩溃 / 卡死）的投递放回 pending。"""

    async def _run() -> int:
        return await requeue_stalled_actions_async(get_redis_client())

    return asyncio.run(_run())


@shared_task(name="tasks.dead_letter_report")
def dead_letter_report() -> dict[str, int]:
    async def _run() -> dict[str, int]:
        return await dead_letter_report_async(get_redis_client())

    return asyncio.run(_run())


celery_app.conf.beat_schedule = getattr(celery_app.conf, "beat_schedule", {}) or {}
celery_app.conf.beat_schedule.update(
    {
        "action-queue-requeue-stalled": {
            "task": "tasks.requeue_stalled_actions",
            "schedule": settings.action_queue_requeue_interval_seconds,
        },
        "action-queue-dead-letter-report": {
            "task": "tasks.dead_letter_report",
            "schedule": 15 * 60,
        },
    }
)


__all__ = [
    "dead_letter_report",
    "dead_letter_report_async",
    "requeue_stalled_actions",
    "requeue_stalled_actions_async",
]
