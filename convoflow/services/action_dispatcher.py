from __future__ import annotations

import asyncio
import math
import uuid
from contextlib import suppress
from typing import Awaitable, Callable

from redis.exceptions import RedisError

from convoflow.errors import ToolExecutionError
from convoflow.logging_config import logger
from convoflow.schemas import (
    ActionDelivery,
    ActionRequest,
    ActionResult,
    ActionStatus,
    Admitted,
    AlreadyInFlight,
    AlreadyResolved,
)
from convoflow.services.action_queue import ActionQueue
from convoflow.services.idempotency_ledger import IdempotencyLedger
from convoflow.services.tool_registry import ToolRegistry, validate_input
from convoflow.settings import settings, worst_case_execution_seconds

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, *, base: float, cap: float) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped."""
    if base <= 0:
        return 0.0
    return min(float(cap), float(base) * (2 ** max(0, attempt - 1)))


class ActionDispatcher:
    """
    动作分发：编排器侧 enqueue / await_result，worker 侧 process_delivery。

    worker 侧只有在账本 begin() 返回 Admitted 时才真正执行工具；
    重复投递（AlreadyInFlight / AlreadyResolved）直接 ack 丢弃。
    工具抛出的所有异常都在这里转换成 ActionResult，不会传到编排器。
    """

    def __init__(
        self,
        ledger: IdempotencyLedger,
        queue: ActionQueue,
        registry: ToolRegistry,
        *,
        max_attempts: int | None = None,
        retry_base_seconds: float | None = None,
        retry_max_seconds: float | None = None,
        sleep: Sleep | None = None,
        worker_id: str | None = None,
        heartbeat_seconds: float | None = None,
    ) -> None:
        self.ledger = ledger
        self.queue = queue
        self.registry = registry
        self.max_attempts = int(max_attempts or settings.action_max_attempts)
        self.retry_base_seconds = float(
            settings.action_retry_base_seconds if retry_base_seconds is None else retry_base_seconds
        )
        self.retry_max_seconds = float(
            settings.action_retry_max_seconds if retry_max_seconds is None else retry_max_seconds
        )
        self._sleep = sleep or asyncio.sleep
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.heartbeat_seconds = heartbeat_seconds

    # ---- orchestrator side ----

    async def enqueue(self, request: ActionRequest) -> None:
        await self.queue.push(request)
        logger.info(
            "dispatcher: enqueued action_id=%s tool=%s session_id=%s",
            request.action_id,
            request.tool_name,
            request.session_id,
        )

    async def await_result(self, action_id: str, timeout: float) -> ActionResult | None:
        """None means "not yet"; the action keeps running and resolves later."""
        return await self.ledger.wait_for(action_id, timeout)

    # ---- worker side ----

    def lease_seconds_for(self, request: ActionRequest) -> int:
        """
        in-flight 租约至少覆盖该工具的最坏执行时长（每次尝试都超时 + 全部退避）。
        """
        tool = self.registry.get(request.tool_name)
        declared = tool.spec.timeout_seconds if tool is not None else None
        timeout = declared or settings.action_default_timeout_seconds
        worst_case = worst_case_execution_seconds(
            timeout,
            max_attempts=self.max_attempts,
            retry_base_seconds=self.retry_base_seconds,
            retry_max_seconds=self.retry_max_seconds,
        )
        return max(self.ledger.lease_seconds, math.ceil(worst_case))

    async def _keep_alive(self, delivery: ActionDelivery, lease_seconds: int) -> None:
        interval = self.heartbeat_seconds or max(1.0, lease_seconds / 3)
        action_id = delivery.request.action_id
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self.ledger.renew(
                    action_id, worker_id=self.worker_id, lease_seconds=lease_seconds
                )
                await self.queue.extend(delivery)
            except RedisError:
                logger.warning("dispatcher: lease heartbeat failed for action_id=%s", action_id, exc_info=True)
                continue
            if not renewed:
                logger.warning(
                    "dispatcher: in-flight lease for action_id=%s was lost while executing", action_id
                )

    async def process_delivery(self, delivery: ActionDelivery) -> str:
        request = delivery.request
        lease_seconds = self.lease_seconds_for(request)
        outcome = await self.ledger.begin(
            request.action_id, worker_id=self.worker_id, lease_seconds=lease_seconds
        )

        if isinstance(outcome, AlreadyResolved):
            logger.info(
                "dispatcher: discarding duplicate delivery %s (action_id=%s already resolved)",
                delivery.delivery_id,
                request.action_id,
            )
            await self.queue.ack(delivery)
            return "already_resolved"
        if isinstance(outcome, AlreadyInFlight):
            logger.info(
                "dispatcher: discarding duplicate delivery %s (action_id=%s in flight)",
                delivery.delivery_id,
                request.action_id,
            )
            await self.queue.ack(delivery)
            return "already_in_flight"
        assert isinstance(outcome, Admitted)

        heartbeat = asyncio.create_task(self._keep_alive(delivery, lease_seconds))
        try:
            result = await self.execute(request)
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
        authoritative = await self.ledger.resolve(request.action_id, result)
        if authoritative.status == ActionStatus.PERMANENTLY_FAILED:
            await self.queue.dead_letter(delivery, authoritative)
        await self.queue.ack(delivery)
        return authoritative.status.value

    async def execute(self, request: ActionRequest) -> ActionResult:
        tool = self.registry.get(request.tool_name)
        if tool is None:
            logger.warning("dispatcher: unknown tool %r (action_id=%s)", request.tool_name, request.action_id)
            return ActionResult(
                action_id=request.action_id,
                status=ActionStatus.FAILED,
                error_detail=f"unknown tool: {request.tool_name}",
                attempt=0,
            )

        problems = validate_input(tool.spec, request.input)
        if problems:
            return ActionResult(
                action_id=request.action_id,
                status=ActionStatus.FAILED,
                error_detail="invalid input: " + "; ".join(problems),
                attempt=0,
            )

        timeout = float(tool.spec.timeout_seconds or settings.action_default_timeout_seconds)
        attempt = 0
        while True:
            attempt += 1
            try:
                output = await asyncio.wait_for(
                    tool.invoke(dict(request.input), idempotency_key=request.action_id),
                    timeout=timeout,
                )
            except ToolExecutionError as exc:
                if not exc.retryable:
                    logger.info(
                        "dispatcher: action_id=%s failed (non-retryable): %s", request.action_id, exc
                    )
                    return ActionResult(
                        action_id=request.action_id,
                        status=ActionStatus.FAILED,
                        error_detail=str(exc),
                        attempt=attempt,
                    )
                error = str(exc)
            except asyncio.TimeoutError:
                error = f"{request.tool_name} timed out after {timeout:g}s"
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
            else:
                return ActionResult(
                    action_id=request.action_id,
                    status=ActionStatus.SUCCEEDED,
                    output=output,
                    attempt=attempt,
                )

            if attempt >= self.max_attempts:
                logger.error(
                    "dispatcher: action_id=%s permanently failed after %d attempts: %s",
                    request.action_id,
                    attempt,
                    error,
                )
                return ActionResult(
                    action_id=request.action_id,
                    status=ActionStatus.PERMANENTLY_FAILED,
                    error_detail=error,
                    attempt=attempt,
                )

            delay = backoff_delay(attempt, base=self.retry_base_seconds, cap=self.retry_max_seconds)
            logger.warning(
                "dispatcher: action_id=%s attempt %d/%d failed (%s); retrying in %.2fs",
                request.action_id,
                attempt,
                self.max_attempts,
                error,
                delay,
            )
            await self._sleep(delay)


class ActionWorkerPool:
    """
    N 个 asyncio 拉取循环共享一个队列。

    stop() 只是让循环在当前投递处理完之后退出，已受理的动作不会被中断。
    处理中抛出的异常只记日志：投递未 ack，可见性超时后会被重新投递。
    """

    def __init__(
        self,
        dispatcher: ActionDispatcher,
        *,
        concurrency: int | None = None,
        poll_seconds: float | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.concurrency = int(concurrency or settings.action_worker_concurrency)
        self.poll_seconds = float(poll_seconds or settings.action_worker_poll_seconds)
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._run(idx), name=f"action-worker-{idx}")
            for idx in range(self.concurrency)
        ]
        logger.info("worker_pool: started %d workers (%s)", self.concurrency, self.dispatcher.worker_id)

    async def stop(self) -> None:
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("worker_pool: stopped (%s)", self.dispatcher.worker_id)

    async def _run(self, idx: int) -> None:
        queue = self.dispatcher.queue
        while not self._stopping.is_set():
            try:
                delivery = await queue.pull(timeout=self.poll_seconds)
            except Exception:
                logger.warning("worker_pool[%d]: pull failed; backing off", idx, exc_info=True)
                await asyncio.sleep(self.poll_seconds)
                continue
            if delivery is None:
                continue
            try:
                outcome = await self.dispatcher.process_delivery(delivery)
            except Exception:
                logger.exception(
                    "worker_pool[%d]: delivery %s failed; left for redelivery",
                    idx,
                    delivery.delivery_id,
                )
                continue
            logger.debug("worker_pool[%d]: delivery %s -> %s", idx, delivery.delivery_id, outcome)


__all__ = ["ActionDispatcher", "ActionWorkerPool", "backoff_delay"]
