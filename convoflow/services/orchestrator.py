"""
一轮对话的编排状态机

    LOAD_CONTEXT -> INFER -> {DONE | DISPATCHING}
                     ^            |
                     +------------+   (受 max_tool_calls_per_turn 约束)
    DONE -> PERSIST -> EMIT -> TERMINAL

编排器本身不持有持久状态：会话在 SessionStore 里，动作结果在 IdempotencyLedger 里，
崩溃后下一轮可以从两者重建。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from convoflow.errors import (
    ConcurrentTurnError,
    ConflictError,
    InferenceRejected,
    InferenceUnavailable,
    StoreUnavailableError,
    TurnCancelledError,
)
from convoflow.logging_config import logger
from convoflow.schemas import (
    ActionRequest,
    ActionResult,
    ActionStatus,
    AgentResponse,
    Message,
    MessageRole,
    Session,
    TurnState,
    tool_message_content,
)
from convoflow.services.action_dispatcher import ActionDispatcher, backoff_delay
from convoflow.services.event_emitter import EventEmitter
from convoflow.services.inference_gateway import ActionRequested, FinalResponse, InferenceGateway
from convoflow.services.session_store import SessionStore
from convoflow.services.turn_cancel_service import clear_turn_cancel, is_turn_canceled
from convoflow.settings import Settings, settings

Sleep = Callable[[float], Awaitable[None]]

PENDING_ACTIONS_KEY = "pending_actions"

APOLOGY_UNAVAILABLE = (
    "Sorry, I'm having trouble responding right now. Please try again in a moment."
)
APOLOGY_REJECTED = "Sorry, I can't help with that request."
APOLOGY_TOOL_LIMIT = (
    "Sorry, I couldn't finish that request. Please try rephrasing or breaking it into smaller steps."
)
APOLOGY_DISPATCH = "Sorry, I couldn't start that action right now. Please try again in a moment."
STILL_PROCESSING = (
    "I'm still working on that. I'll share the result as soon as it's ready; "
    "just send another message to check in."
)
STORE_UNAVAILABLE = "Sorry, we couldn't save this conversation right now. Please try again shortly."

# 这些状态进入前检查调用方的取消标记；PERSIST 之后不再可取消
_CANCELLABLE_STATES = frozenset(
    {TurnState.INFER, TurnState.DISPATCHING, TurnState.DONE, TurnState.PERSIST}
)


@dataclass
class _Turn:
    session_id: str
    history: Session | None = None
    user_message: Message | None = None
    tool_results: list[Message] = field(default_factory=list)
    next_seq: int = 1
    is_new: bool = False
    tool_calls: int = 0
    pending_request: ActionRequest | None = None
    pending_actions: list[dict[str, Any]] = field(default_factory=list)
    pending_changed: bool = False
    reply_text: str = ""
    status_code: int = 200
    error_kind: str | None = None
    executed: list[ActionResult] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    deferred_action_ids: list[str] = field(default_factory=list)
    persisted_seq: int | None = None

    def take_seq(self) -> int:
        seq = self.next_seq
        self.next_seq += 1
        return seq

    def fail(self, kind: str, text: str, *, status_code: int = 200, detail: str | None = None) -> None:
        self.reply_text = text
        self.status_code = status_code
        self.error_kind = kind
        self.errors.append({"kind": kind, "detail": detail})


class Orchestrator:
    def __init__(
        self,
        *,
        store: SessionStore,
        gateway: InferenceGateway,
        dispatcher: ActionDispatcher,
        emitter: EventEmitter,
        redis: Redis | None = None,
        cfg: Settings | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._emitter = emitter
        self._redis = redis
        self._cfg = cfg or settings
        self._sleep = sleep or asyncio.sleep

    async def handle_turn(self, session_id: str, user_text: str) -> AgentResponse:
        turn = _Turn(session_id=session_id)
        state = TurnState.LOAD_CONTEXT
        logger.info("turn: start session_id=%s", session_id)
        try:
            while state != TurnState.TERMINAL:
                if state in _CANCELLABLE_STATES:
                    await self._raise_if_cancelled(session_id)

                if state == TurnState.LOAD_CONTEXT:
                    state = await self._load_context(turn, user_text)
                elif state == TurnState.INFER:
                    state = await self._infer(turn)
                elif state == TurnState.DISPATCHING:
                    state = await self._dispatch(turn)
                elif state == TurnState.DONE:
                    state = self._finish(turn)
                elif state == TurnState.PERSIST:
                    state = self._persist(turn)
                elif state == TurnState.EMIT:
                    state = self._emit(turn)
                else:  # pragma: no cover
                    raise RuntimeError(f"unknown turn state: {state}")
        except (ConflictError, ConcurrentTurnError):
            self._store.discard(session_id)
            logger.info("turn: rejected concurrent turn session_id=%s", session_id)
            return AgentResponse(
                session_id=session_id,
                text=str(ConcurrentTurnError(session_id)),
                status_code=409,
                error_kind="concurrent_turn",
            )
        except StoreUnavailableError:
            self._store.discard(session_id)
            logger.error("turn: session store unavailable session_id=%s", session_id, exc_info=True)
            self._emitter.error_occurred(session_id, kind="store_unavailable")
            return AgentResponse(
                session_id=session_id,
                text=STORE_UNAVAILABLE,
                status_code=503,
                error_kind="store_unavailable",
            )
        except BaseException:
            # cancelled (CancelledError / TurnCancelledError) or crashed before PERSIST: nothing staged survives
            self._store.discard(session_id)
            raise

        logger.info(
            "turn: done session_id=%s status=%s turn_seq=%s tool_calls=%d",
            session_id,
            turn.status_code,
            turn.persisted_seq,
            turn.tool_calls,
        )
        return AgentResponse(
            session_id=session_id,
            text=turn.reply_text,
            status_code=turn.status_code,
            turn_seq=turn.persisted_seq,
            deferred_action_ids=turn.deferred_action_ids,
            error_kind=turn.error_kind,
        )

    async def _raise_if_cancelled(self, session_id: str) -> None:
        if self._redis is None:
            return
        try:
            canceled = await is_turn_canceled(self._redis, session_id)
        except RedisError:
            logger.warning("turn: cancel flag unreadable session_id=%s", session_id, exc_info=True)
            return
        if canceled:
            logger.info("turn: cancelled by caller session_id=%s", session_id)
            raise TurnCancelledError(session_id)

    # ---- LOAD_CONTEXT ----

    async def _load_context(self, turn: _Turn, user_text: str) -> TurnState:
        if self._redis is not None:
            # a mark left by an earlier turn must not cancel this one
            try:
                await clear_turn_cancel(self._redis, turn.session_id)
            except RedisError:
                logger.warning("turn: failed to clear cancel flag session_id=%s", turn.session_id, exc_info=True)

        session = self._store.load(turn.session_id)
        turn.is_new = session.is_new
        turn.next_seq = session.next_turn_seq

        attached = await self._attach_deferred_results(turn, session)

        turn.history = session.model_copy(update={"messages": [*session.messages, *attached]})
        turn.user_message = Message(role=MessageRole.USER, content=user_text, turn_seq=turn.take_seq())
        self._store.append_message(turn.session_id, turn.user_message)
        return TurnState.INFER

    async def _attach_deferred_results(self, turn: _Turn, session: Session) -> list[Message]:
        pending = [p for p in session.context.get(PENDING_ACTIONS_KEY) or [] if isinstance(p, dict)]
        attached: list[Message] = []
        for entry in pending:
            action_id = str(entry.get("action_id") or "")
            result = None
            if action_id:
                try:
                    result = await self._dispatcher.ledger.get(action_id)
                except RedisError:
                    logger.warning("turn: ledger unreadable for deferred action_id=%s", action_id, exc_info=True)
            if result is None:
                turn.pending_actions.append(entry)
                continue
            msg = Message(
                role=MessageRole.TOOL,
                content=tool_message_content(
                    action_id=action_id,
                    tool_name=str(entry.get("tool_name") or ""),
                    input=entry.get("input") or {},
                    result=result,
                ),
                turn_seq=turn.take_seq(),
            )
            self._store.append_message(turn.session_id, msg)
            attached.append(msg)
            turn.executed.append(result)
            logger.info(
                "turn: attached deferred result action_id=%s status=%s session_id=%s",
                action_id,
                result.status.value,
                turn.session_id,
            )
        turn.pending_changed = len(turn.pending_actions) != len(pending)
        return attached

    # ---- INFER ----

    async def _infer(self, turn: _Turn) -> TurnState:
        cfg = self._cfg
        attempt = 0
        while True:
            attempt += 1
            try:
                outcome = await asyncio.wait_for(
                    self._gateway.generate(turn.history, turn.user_message, tuple(turn.tool_results)),
                    timeout=cfg.inference_timeout_seconds,
                )
                break
            except InferenceRejected as exc:
                logger.info("turn: inference rejected session_id=%s: %s", turn.session_id, exc)
                turn.fail("inference_rejected", APOLOGY_REJECTED, detail=str(exc))
                return TurnState.DONE
            except asyncio.TimeoutError:
                error: Exception = InferenceUnavailable(
                    f"inference timed out after {cfg.inference_timeout_seconds:g}s"
                )
            except InferenceUnavailable as exc:
                error = exc

            if attempt >= cfg.inference_max_attempts:
                logger.error(
                    "turn: inference unavailable after %d attempts session_id=%s: %s",
                    attempt,
                    turn.session_id,
                    error,
                )
                turn.fail("inference_unavailable", APOLOGY_UNAVAILABLE, status_code=503, detail=str(error))
                return TurnState.DONE

            delay = backoff_delay(
                attempt, base=cfg.inference_retry_base_seconds, cap=cfg.inference_retry_max_seconds
            )
            logger.warning(
                "turn: inference attempt %d/%d failed session_id=%s (%s); retrying in %.2fs",
                attempt,
                cfg.inference_max_attempts,
                turn.session_id,
                error,
                delay,
            )
            await self._sleep(delay)

        if isinstance(outcome, FinalResponse):
            turn.reply_text = outcome.text
            return TurnState.DONE

        assert isinstance(outcome, ActionRequested)
        turn.pending_request = outcome.request
        return TurnState.DISPATCHING

    # ---- DISPATCHING ----

    async def _dispatch(self, turn: _Turn) -> TurnState:
        request = turn.pending_request
        turn.pending_request = None
        assert request is not None

        turn.tool_calls += 1
        if turn.tool_calls > self._cfg.max_tool_calls_per_turn:
            logger.warning(
                "turn: tool call limit (%d) reached session_id=%s",
                self._cfg.max_tool_calls_per_turn,
                turn.session_id,
            )
            turn.fail("tool_call_limit", APOLOGY_TOOL_LIMIT)
            return TurnState.DONE

        try:
            result = await self._dispatcher.ledger.get(request.action_id)
            if result is None:
                await self._dispatcher.enqueue(request)
        except RedisError as exc:
            logger.error(
                "turn: action dispatch failed action_id=%s session_id=%s",
                request.action_id,
                turn.session_id,
                exc_info=True,
            )
            turn.fail("dispatch_unavailable", APOLOGY_DISPATCH, status_code=503, detail=str(exc))
            return TurnState.DONE

        if result is None:
            # Enqueued: from here on the worker owns the action, so a failed
            # wait defers it like a timeout.
            try:
                result = await self._dispatcher.await_result(
                    request.action_id, self._cfg.action_await_timeout_seconds
                )
            except RedisError:
                logger.warning(
                    "turn: waiting for action_id=%s failed; deferring to next turn (session_id=%s)",
                    request.action_id,
                    turn.session_id,
                    exc_info=True,
                )

        if result is None:
            logger.info(
                "turn: action_id=%s not resolved within %.1fs; deferring to next turn (session_id=%s)",
                request.action_id,
                self._cfg.action_await_timeout_seconds,
                turn.session_id,
            )
            turn.pending_actions.append(
                {
                    "action_id": request.action_id,
                    "tool_name": request.tool_name,
                    "input": request.input,
                    "turn_seq": request.turn_seq,
                    "requested_at": datetime.now(UTC).isoformat(),
                }
            )
            turn.pending_changed = True
            turn.deferred_action_ids.append(request.action_id)
            turn.reply_text = STILL_PROCESSING
            turn.error_kind = "action_deferred"
            return TurnState.DONE

        msg = Message(
            role=MessageRole.TOOL,
            content=tool_message_content(
                action_id=request.action_id,
                tool_name=request.tool_name,
                input=request.input,
                result=result,
            ),
            turn_seq=turn.take_seq(),
        )
        self._store.append_message(turn.session_id, msg)
        turn.tool_results.append(msg)
        turn.executed.append(result)
        return TurnState.INFER

    # ---- DONE / PERSIST / EMIT ----

    def _finish(self, turn: _Turn) -> TurnState:
        reply = Message(role=MessageRole.AGENT, content=turn.reply_text, turn_seq=turn.take_seq())
        self._store.append_message(turn.session_id, reply)
        if turn.pending_changed:
            self._store.update_context(turn.session_id, {PENDING_ACTIONS_KEY: turn.pending_actions})
        return TurnState.PERSIST

    def _persist(self, turn: _Turn) -> TurnState:
        try:
            self._store.persist(turn.session_id)
        except ConflictError as exc:
            raise ConcurrentTurnError(turn.session_id) from exc
        turn.persisted_seq = turn.next_seq - 1
        return TurnState.EMIT

    def _emit(self, turn: _Turn) -> TurnState:
        sid = turn.session_id
        if turn.is_new:
            self._emitter.conversation_started(sid)
        for result in turn.executed:
            self._emitter.action_executed(sid, action_id=result.action_id, status=result.status.value)
            if result.status == ActionStatus.PERMANENTLY_FAILED:
                self._emitter.error_occurred(sid, kind="action_failed", detail=result.error_detail)
        for err in turn.errors:
            self._emitter.error_occurred(sid, kind=err["kind"], detail=err.get("detail"))
        return TurnState.TERMINAL


__all__ = ["Orchestrator", "PENDING_ACTIONS_KEY", "STILL_PROCESSING"]
