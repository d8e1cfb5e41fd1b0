"""
会话轮次路由
一轮对话的唯一入口 + 取消 + 转录查询
"""

from typing import List

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from convoflow.deps import get_db, get_orchestrator, get_redis
from convoflow.errors import StoreUnavailableError, TurnCancelledError, http_error, service_unavailable
from convoflow.schemas import AgentResponse, CancelResponse, TranscriptEntry, TurnRequest
from convoflow.services.orchestrator import Orchestrator
from convoflow.services.session_store import SessionStore
from convoflow.services.turn_cancel_service import mark_turn_canceled

router = APIRouter(tags=["sessions"], prefix="/v1/sessions")


@router.post("/{session_id}/turns", response_model=AgentResponse)
async def create_turn(
    session_id: str,
    payload: TurnRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """
    处理一条用户消息。HTTP 状态码跟随 AgentResponse.status_code（200 / 409 / 503），
    响应体始终包含可展示给用户的文本。
    """
    try:
        result = await orchestrator.handle_turn(session_id, payload.message)
    except TurnCancelledError as exc:
        raise http_error(
            status.HTTP_409_CONFLICT,
            error="turn_cancelled",
            message=str(exc),
            details={"session_id": session_id},
        )
    return JSONResponse(status_code=result.status_code, content=result.model_dump(mode="json"))


@router.post("/{session_id}/cancel", response_model=CancelResponse)
async def cancel_turn(
    session_id: str,
    redis: Redis = Depends(get_redis),
) -> CancelResponse:
    await mark_turn_canceled(redis, session_id)
    return CancelResponse(session_id=session_id, canceled=True)


@router.get("/{session_id}/transcript", response_model=List[TranscriptEntry])
def get_transcript(
    session_id: str,
    db: Session = Depends(get_db),
) -> List[TranscriptEntry]:
    try:
        return SessionStore(db).transcript(session_id)
    except StoreUnavailableError:
        raise service_unavailable("session store is temporarily unavailable")
