from __future__ import annotations

import asyncio
import fnmatch
import json
import time
from typing import Any, Callable

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from convoflow.db import get_db_session
from convoflow.deps import get_db, get_redis
from convoflow.errors import ToolExecutionError
from convoflow.models import Base
from convoflow.services.tool_registry import ToolSpec


def make_inmemory_sessionmaker() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )


def install_inmemory_db(app) -> sessionmaker[Session]:
    """
    Attach an in-memory SQLite database and an in-memory Redis to the FastAPI app.
    """

    SessionLocal = make_inmemory_sessionmaker()

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_db_session] = override_get_db

    redis = InMemoryRedis()
    app.state._test_redis = redis

    async def override_get_redis():
        return redis

    app.dependency_overrides[get_redis] = override_get_redis

    return SessionLocal


class InMemoryRedis:
    """
    Redis 的最小内存实现：字符串（NX / EX）、列表（含 BLMOVE / LREM）、
    有序集合、pub/sub。``clock`` 可注入，用来在测试里推进 TTL。
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._data: dict[str, str] = {}
        self._expires: dict[str, float] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._lists: dict[str, list[str]] = {}
        self._pubsub_channels: dict[str, set["asyncio.Queue[str]"]] = {}
        self.published: list[tuple[str, str]] = []

    def _purge(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expires.pop(key, None)

    async def get(self, key: str):
        self._purge(key)
        return self._data.get(key)

    async def set(
        self,
        key: str,
        value: str,
        ex: int | None = None,
        nx: bool = False,
        xx: bool = False,
    ):
        self._purge(key)
        if nx and key in self._data:
            return None
        if xx and key not in self._data:
            return None
        self._data[key] = str(value)
        if ex is not None:
            self._expires[key] = self._clock() + float(ex)
        else:
            self._expires.pop(key, None)
        return True

    async def ttl(self, key: str) -> int:
        self._purge(key)
        if key not in self._data:
            return -2
        deadline = self._expires.get(key)
        if deadline is None:
            return -1
        return int(deadline - self._clock())

    async def exists(self, *keys: str) -> int:
        for key in keys:
            self._purge(key)
        return sum(1 for key in keys if key in self._data)

    async def keys(self, pattern: str):
        return [k for k in list(self._data.keys()) if fnmatch.fnmatch(k, pattern)]

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if key in self._data:
                removed += 1
                self._data.pop(key, None)
                self._expires.pop(key, None)
            if key in self._lists:
                removed += 1
                self._lists.pop(key, None)
            if key in self._zsets:
                removed += 1
                self._zsets.pop(key, None)
        return removed

    # --- Sorted sets ---

    async def zadd(self, key: str, mapping: dict[str, float], nx: bool = False, xx: bool = False) -> int:
        z = self._zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if nx and member in z:
                continue
            if xx and member not in z:
                continue
            if member not in z:
                added += 1
            z[str(member)] = float(score)
        return added

    async def zrem(self, key: str, *members: str) -> int:
        z = self._zsets.get(key, {})
        removed = 0
        for m in members:
            if z.pop(str(m), None) is not None:
                removed += 1
        return removed

    async def zscore(self, key: str, member: str):
        val = self._zsets.get(key, {}).get(member)
        return None if val is None else float(val)

    async def zrangebyscore(self, key: str, min: Any, max: Any) -> list[str]:
        def _bound(value: Any) -> float:
            if value in ("-inf", float("-inf")):
                return float("-inf")
            if value in ("+inf", "inf", float("inf")):
                return float("inf")
            return float(value)

        lo, hi = _bound(min), _bound(max)
        items = sorted(self._zsets.get(key, {}).items(), key=lambda kv: kv[1])
        return [member for member, score in items if lo <= score <= hi]

    # --- Lists ---

    async def lpush(self, key: str, *values: str) -> int:
        lst = self._lists.setdefault(key, [])
        for value in values:
            lst.insert(0, str(value))
        return len(lst)

    async def rpush(self, key: str, *values: str) -> int:
        lst = self._lists.setdefault(key, [])
        lst.extend(str(v) for v in values)
        return len(lst)

    async def llen(self, key: str) -> int:
        return len(self._lists.get(key, []))

    async def lrem(self, key: str, count: int, value: str) -> int:
        lst = self._lists.get(key, [])
        removed = 0
        out: list[str] = []
        for item in lst:
            if item == value and (count == 0 or removed < abs(count)):
                removed += 1
                continue
            out.append(item)
        self._lists[key] = out
        return removed

    async def lmove(self, first_list: str, second_list: str, src: str = "LEFT", dest: str = "RIGHT"):
        source = self._lists.get(first_list, [])
        if not source:
            return None
        value = source.pop(0) if src.upper() == "LEFT" else source.pop()
        target = self._lists.setdefault(second_list, [])
        if dest.upper() == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    async def blmove(
        self,
        first_list: str,
        second_list: str,
        timeout: float,
        src: str = "LEFT",
        dest: str = "RIGHT",
    ):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + float(timeout)
        while True:
            value = await self.lmove(first_list, second_list, src, dest)
            if value is not None:
                return value
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(0.005)

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        lst = self._lists.get(key, [])
        if not lst:
            return []
        n = len(lst)
        s = int(start)
        e = int(stop)
        if s < 0:
            s = n + s
        if e < 0:
            e = n + e
        if s < 0:
            s = 0
        if s >= n:
            return []
        if e >= n:
            e = n - 1
        if e < s:
            return []
        return list(lst[s : e + 1])

    # --- PubSub ---

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((str(channel), str(message)))
        queues = list(self._pubsub_channels.get(str(channel), set()))
        delivered = 0

        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        for q in queues:
            # TestClient runs the app on another thread/loop.
            target_loop = getattr(q, "_loop", None)
            if (
                target_loop is not None
                and target_loop.is_running()
                and current_loop is not None
                and target_loop is not current_loop
            ):
                target_loop.call_soon_threadsafe(q.put_nowait, str(message))
            else:
                q.put_nowait(str(message))
            delivered += 1
        return delivered

    def pubsub(self):
        return _InMemoryPubSub(self)

    def published_json(self, channel: str) -> list[dict[str, Any]]:
        return [json.loads(msg) for ch, msg in self.published if ch == channel]


class _InMemoryPubSub:
    def __init__(self, redis: InMemoryRedis) -> None:
        self._redis = redis
        self._channels: set[str] = set()
        self._queue: asyncio.Queue[str] = asyncio.Queue()

    async def subscribe(self, *channels: str) -> None:
        for ch in channels:
            name = str(ch)
            self._channels.add(name)
            self._redis._pubsub_channels.setdefault(name, set()).add(self._queue)

    async def unsubscribe(self, *channels: str) -> None:
        targets = [str(c) for c in channels] if channels else list(self._channels)
        for ch in targets:
            self._channels.discard(ch)
            queues = self._redis._pubsub_channels.get(ch)
            if queues is not None:
                queues.discard(self._queue)
                if not queues:
                    self._redis._pubsub_channels.pop(ch, None)

    async def close(self) -> None:
        await self.unsubscribe()

    async def get_message(
        self, *, ignore_subscribe_messages: bool = True, timeout: float | None = None
    ):
        _ = ignore_subscribe_messages
        try:
            if timeout is None:
                data = await self._queue.get()
            elif timeout <= 0:
                data = self._queue.get_nowait()
            else:
                data = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except (asyncio.QueueEmpty, asyncio.TimeoutError):
            return None
        return {"type": "message", "data": data}


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


# --- inference / tool fakes ---


def final_completion(text: str) -> dict[str, Any]:
    return {"choices": [{"finish_reason": "stop", "message": {"role": "assistant", "content": text}}]}


def tool_call_completion(name: str, arguments: dict[str, Any], *, extra_calls: int = 0) -> dict[str, Any]:
    calls = [
        {
            "id": f"call_{idx}",
            "type": "function",
            "function": {"name": name, "arguments": json.dumps(arguments)},
        }
        for idx in range(1 + extra_calls)
    ]
    return {
        "choices": [
            {
                "finish_reason": "tool_calls",
                "message": {"role": "assistant", "content": None, "tool_calls": calls},
            }
        ]
    }


class ScriptedInferenceBackend:
    """
    Replays a script of completions. Each entry is a payload dict, an exception
    instance to raise, or a callable ``(payload) -> dict`` for dynamic replies.
    The last entry repeats when the script runs out.
    """

    def __init__(self, script: list[Any]) -> None:
        self.script = list(script)
        self.payloads: list[dict[str, Any]] = []

    async def complete(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.payloads.append(payload)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            result = step(payload)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        return step


class RecordingTool:
    """
    In-process tool that counts side effects. ``failures`` is a list of
    exceptions raised on successive attempts before succeeding.
    """

    def __init__(
        self,
        name: str = "create_ticket",
        *,
        input_schema: dict[str, Any] | None = None,
        failures: list[BaseException] | None = None,
        delay: float = 0.0,
        timeout_seconds: float | None = None,
        gate: asyncio.Event | None = None,
        on_invoke: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.spec = ToolSpec(
            name=name,
            description=f"{name} (test)",
            input_schema=input_schema
            or {
                "type": "object",
                "properties": {"subject": {"type": "string"}},
                "required": ["subject"],
            },
            timeout_seconds=timeout_seconds,
        )
        self.failures = list(failures or [])
        self.delay = delay
        self.gate = gate
        self.on_invoke = on_invoke
        self.calls: list[dict[str, Any]] = []
        self.idempotency_keys: list[str | None] = []
        self.side_effects = 0

    async def invoke(self, input: dict[str, Any], *, idempotency_key: str | None = None) -> Any:
        self.calls.append(dict(input))
        self.idempotency_keys.append(idempotency_key)
        if self.on_invoke is not None:
            self.on_invoke(input)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        self.side_effects += 1
        return {"ticket_id": f"T-{self.side_effects}", "subject": input.get("subject")}


def retryable(message: str = "backend 503") -> ToolExecutionError:
    return ToolExecutionError(message, retryable=True)


def non_retryable(message: str = "backend 400") -> ToolExecutionError:
    return ToolExecutionError(message, retryable=False)


__all__ = [
    "FakeClock",
    "InMemoryRedis",
    "RecordingTool",
    "ScriptedInferenceBackend",
    "final_completion",
    "install_inmemory_db",
    "make_inmemory_sessionmaker",
    "non_retryable",
    "retryable",
    "tool_call_completion",
]
