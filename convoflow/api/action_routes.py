"""
动作结果与死信查询
"""

from typing import List

from fastapi import APIRouter, Depends, Query

from convoflow.deps import get_action_queue, get_ledger
from convoflow.errors import not_found
from convoflow.schemas import ActionResult, DeadLetter
from convoflow.services.action_queue import ActionQueue
from convoflow.services.idempotency_ledger import IdempotencyLedger

router = APIRouter(tags=["actions"], prefix="/v1/actions")


# 必须在 /{action_id} 之前注册
@router.get("/dead-letters", response_model=List[DeadLetter])
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=500),
    queue: ActionQueue = Depends(get_action_queue),
) -> List[DeadLetter]:
    return await queue.list_dead_letters(limit)


@router.get("/{action_id}", response_model=ActionResult)
async def get_action_result(
    action_id: str,
    ledger: IdempotencyLedger = Depends(get_ledger),
) -> ActionResult:
    result = await ledger.get(action_id)
    if result is None:
        raise not_found(
            f"action {action_id} has not resolved yet or is unknown",
            details={"action_id": action_id},
        )
    return result
