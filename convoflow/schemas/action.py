"""
动作（tool-use）请求、结果与幂等账本的准入结果。
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, PrivateAttr

from .conversation import utcnow


class ActionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently-failed"


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def derive_action_id(*, session_id: str, turn_seq: int, tool_name: str, input: Dict[str, Any]) -> str:
    """
    Deterministic idempotency key: the same logical request (even when the
    model regenerates it) always maps to the same id.
    """
    material = "\x1f".join([session_id, str(int(turn_seq)), tool_name, canonical_json(input)])
    return "act_" + hashlib.sha256(material.encode("utf-8")).hexdigest()[:40]


class ActionRequest(BaseModel):
    action_id: str = Field(..., description="由 session_id + turn_seq + tool_name + 规范化输入派生")
    tool_name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    session_id: str
    turn_seq: int = Field(..., ge=1)

    @classmethod
    def build(
        cls,
        *,
        session_id: str,
        turn_seq: int,
        tool_name: str,
        input: Dict[str, Any] | None = None,
    ) -> "ActionRequest":
        payload = dict(input or {})
        return cls(
            action_id=derive_action_id(
                session_id=session_id, turn_seq=turn_seq, tool_name=tool_name, input=payload
            ),
            tool_name=tool_name,
            input=payload,
            session_id=session_id,
            turn_seq=turn_seq,
        )


class ActionResult(BaseModel):
    action_id: str
    status: ActionStatus
    output: Optional[Any] = None
    error_detail: Optional[str] = None
    attempt: int = Field(1, ge=0, description="实际执行的尝试次数")
    completed_at: datetime = Field(default_factory=utcnow)

    @property
    def ok(self) -> bool:
        return self.status == ActionStatus.SUCCEEDED


def tool_message_content(
    *,
    action_id: str,
    tool_name: str,
    input: Dict[str, Any] | None,
    result: ActionResult,
) -> Dict[str, Any]:
    """tool 消息的结构化内容：动作请求本身 + 权威结果"""
    return {
        "action_id": action_id,
        "tool_name": tool_name,
        "input": dict(input or {}),
        "status": result.status.value,
        "output": result.output,
        "error_detail": result.error_detail,
        "attempt": result.attempt,
    }


@dataclass(frozen=True)
class Admitted:
    """调用方获得该 action_id 的独占执行权"""

    action_id: str


@dataclass(frozen=True)
class AlreadyInFlight:
    """另一个执行者正在执行；调用方应等待/轮询，不得重复执行"""

    action_id: str


@dataclass(frozen=True)
class AlreadyResolved:
    action_id: str
    result: ActionResult


BeginOutcome = Union[Admitted, AlreadyInFlight, AlreadyResolved]


class ActionDelivery(BaseModel):
    """队列中的一次投递；同一个 ActionRequest 可能被投递多次"""

    delivery_id: str
    request: ActionRequest
    enqueued_at: datetime = Field(default_factory=utcnow)
    redeliveries: int = 0

    # 队列中的原始载荷；ack 时按原文 LREM
    _raw: Optional[str] = PrivateAttr(default=None)


class DeadLetter(BaseModel):
    delivery: ActionDelivery
    result: ActionResult
    dead_lettered_at: datetime = Field(default_factory=utcnow)


__all__ = [
    "ActionDelivery",
    "ActionRequest",
    "ActionResult",
    "ActionStatus",
    "Admitted",
    "AlreadyInFlight",
    "AlreadyResolved",
    "BeginOutcome",
    "DeadLetter",
    "canonical_json",
    "derive_action_id",
    "tool_message_content",
]
