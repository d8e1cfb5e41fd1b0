"""
一轮对话的入口/出口 Schema
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class TurnState(str, Enum):
    LOAD_CONTEXT = "load_context"
    INFER = "infer"
    DISPATCHING = "dispatching"
    DONE = "done"
    PERSIST = "persist"
    EMIT = "emit"
    TERMINAL = "terminal"


class TurnRequest(BaseModel):
    message: str = Field(..., min_length=1, description="用户输入的文本")


class AgentResponse(BaseModel):
    """handle_turn 的返回值：用户可见的文本 + HTTP 风格状态码"""

    session_id: str
    text: str = Field(..., description="返回给用户的文本；内部失败时为致歉/处理中提示")
    status_code: int = Field(200, description="200 成功 / 409 并发轮次冲突 / 503 暂时性失败")
    turn_seq: Optional[int] = Field(None, description="本轮最后一条已持久化消息的 turn_seq")
    deferred_action_ids: list[str] = Field(default_factory=list, description="等待超时、将在下一轮附加结果的动作")
    error_kind: Optional[str] = Field(None, description="本轮降级的原因（如有）")


class CancelResponse(BaseModel):
    session_id: str
    canceled: bool


__all__ = ["AgentResponse", "CancelResponse", "TurnRequest", "TurnState"]
