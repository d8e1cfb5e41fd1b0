"""
会话与消息的领域模型。
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"
    TOOL = "tool"


class Message(BaseModel):
    """会话中的一条消息，追加后不可变"""

    model_config = ConfigDict(frozen=True)

    role: MessageRole = Field(..., description="user / agent / tool")
    content: Union[str, Dict[str, Any]] = Field(
        ..., description="文本内容，或 tool 消息携带的结构化 ActionResult"
    )
    turn_seq: int = Field(..., ge=1, description="会话内单调递增且不重复的序号")
    created_at: datetime = Field(default_factory=utcnow, description="创建时间")

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return str(self.content.get("text") or "")


class Session(BaseModel):
    """会话状态快照"""

    session_id: str = Field(..., description="不透明的会话 ID")
    messages: List[Message] = Field(default_factory=list, description="按 turn_seq 排序的消息")
    context: Dict[str, Any] = Field(default_factory=dict, description="跨轮次携带的结构化上下文")
    last_activity: Optional[datetime] = Field(None, description="最后一次成功追加消息的时间")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_new: bool = Field(False, description="存储中尚不存在该会话")

    @property
    def last_turn_seq(self) -> int:
        if not self.messages:
            return 0
        return max(m.turn_seq for m in self.messages)

    @property
    def next_turn_seq(self) -> int:
        return self.last_turn_seq + 1


class TranscriptEntry(BaseModel):
    """归档用的转录格式"""

    role: MessageRole
    content: Union[str, Dict[str, Any]]
    turn_seq: int
    created_at: datetime


__all__ = ["Message", "MessageRole", "Session", "TranscriptEntry", "utcnow"]
