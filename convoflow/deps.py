from collections.abc import Iterator
from functools import lru_cache

from fastapi import Depends
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from .db import get_db_session
from .redis_client import get_redis_client
from .services.action_dispatcher import ActionDispatcher
from .services.action_queue import ActionQueue
from .services.event_emitter import EventEmitter
from .services.idempotency_ledger import IdempotencyLedger
from .services.inference_gateway import HttpInferenceBackend, InferenceBackend, InferenceGateway
from .services.orchestrator import Orchestrator
from .services.session_store import SessionStore
from .services.tool_registry import ToolRegistry, build_registry_from_settings


async def get_redis() -> Redis:
    """
    FastAPI dependency that provides the shared Redis client.
    Tests override it with an in-memory fake.
    """
    return get_redis_client()


def get_db() -> Iterator[Session]:
    """
    Provide a synchronous SQLAlchemy session (one per request, i.e. per turn).
    """
    yield from get_db_session()


@lru_cache(maxsize=1)
def get_tool_registry() -> ToolRegistry:
    return build_registry_from_settings()


@lru_cache(maxsize=1)
def get_inference_backend() -> InferenceBackend:
    return HttpInferenceBackend()


def get_ledger(redis: Redis = Depends(get_redis)) -> IdempotencyLedger:
    return IdempotencyLedger(redis)


def get_action_queue(redis: Redis = Depends(get_redis)) -> ActionQueue:
    return ActionQueue(redis)


def get_orchestrator(
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis),
    registry: ToolRegistry = Depends(get_tool_registry),
    backend: InferenceBackend = Depends(get_inference_backend),
) -> Orchestrator:
    ledger = IdempotencyLedger(redis)
    dispatcher = ActionDispatcher(ledger, ActionQueue(redis), registry)
    return Orchestrator(
        store=SessionStore(db),
        gateway=InferenceGateway(backend, registry),
        dispatcher=dispatcher,
        emitter=EventEmitter(redis),
        redis=redis,
    )
