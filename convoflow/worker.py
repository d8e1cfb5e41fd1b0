"""
动作 worker 进程入口::

    python -m convoflow.worker

从 Redis 动作队列拉取投递，经幂等账本准入后执行工具。
SIGINT / SIGTERM 时停止拉取，等待正在执行的动作完成后退出。
"""

from __future__ import annotations

import asyncio
import signal
from contextlib import suppress

from convoflow.logging_config import logger, setup_logging
from convoflow.redis_client import get_redis_client
from convoflow.services.action_dispatcher import ActionDispatcher, ActionWorkerPool
from convoflow.services.action_queue import ActionQueue
from convoflow.services.idempotency_ledger import IdempotencyLedger
from convoflow.services.tool_registry import ToolRegistry, build_registry_from_settings


async def run_worker(registry: ToolRegistry | None = None) -> None:
    redis = get_redis_client()
    registry = registry or build_registry_from_settings()
    dispatcher = ActionDispatcher(IdempotencyLedger(redis), ActionQueue(redis), registry)
    pool = ActionWorkerPool(dispatcher)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    logger.info("worker: serving tools %s", registry.names())
    pool.start()
    await stop.wait()
    logger.info("worker: shutdown requested; draining in-flight actions")
    await pool.stop()


def main() -> None:
    setup_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
