"""
Shared pytest configuration.

This file ensures the project root is on sys.path so that `import convoflow`
works consistently in all tests, and points the settings at throwaway
backends before anything imports them.
"""

import os
import sys
from pathlib import Path

import pytest

# Ensure project root is importable for test modules.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")
os.environ.setdefault("ACTION_TOOLS", "[]")

from convoflow.services.action_dispatcher import ActionDispatcher  # noqa: E402
from convoflow.services.action_queue import ActionQueue  # noqa: E402
from convoflow.services.event_emitter import EventEmitter  # noqa: E402
from convoflow.services.idempotency_ledger import IdempotencyLedger  # noqa: E402
from convoflow.services.inference_gateway import InferenceGateway  # noqa: E402
from convoflow.services.orchestrator import Orchestrator  # noqa: E402
from convoflow.services.session_store import SessionStore  # noqa: E402
from convoflow.services.tool_registry import ToolRegistry  # noqa: E402
from convoflow.settings import settings  # noqa: E402
from tests.utils import (  # noqa: E402
    InMemoryRedis,
    RecordingTool,
    ScriptedInferenceBackend,
    make_inmemory_sessionmaker,
)


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def session_factory():
    return make_inmemory_sessionmaker()


@pytest.fixture
def tool() -> RecordingTool:
    return RecordingTool()


@pytest.fixture
def registry(tool: RecordingTool) -> ToolRegistry:
    return ToolRegistry([tool])


@pytest.fixture
def ledger(redis: InMemoryRedis) -> IdempotencyLedger:
    return IdempotencyLedger(redis)


@pytest.fixture
def queue(redis: InMemoryRedis) -> ActionQueue:
    return ActionQueue(redis)


@pytest.fixture
def dispatcher(ledger, queue, registry) -> ActionDispatcher:
    return ActionDispatcher(ledger, queue, registry, sleep=_no_sleep, worker_id="test-worker")


@pytest.fixture
def turn_settings():
    """Fast settings for orchestrator tests (no real waiting)."""
    return settings.model_copy(
        update={
            "action_await_timeout_seconds": 2.0,
            "inference_timeout_seconds": 2.0,
            "inference_max_attempts": 3,
            "inference_retry_base_seconds": 0.0,
            "max_tool_calls_per_turn": 5,
        }
    )


@pytest.fixture
def make_orchestrator(session_factory, redis, dispatcher, registry, turn_settings):
    """
    Build an orchestrator for one turn (fresh DB session = fresh unit of work),
    the way the HTTP dependency does per request.
    """

    def _make(backend: ScriptedInferenceBackend, *, cfg=None) -> Orchestrator:
        return Orchestrator(
            store=SessionStore(session_factory()),
            gateway=InferenceGateway(backend, registry, persona="test persona"),
            dispatcher=dispatcher,
            emitter=EventEmitter(redis, channel="test:lifecycle"),
            redis=redis,
            cfg=cfg or turn_settings,
            sleep=_no_sleep,
        )

    return _make
