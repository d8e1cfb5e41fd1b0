from .action import (
    ActionDelivery,
    ActionRequest,
    ActionResult,
    ActionStatus,
    Admitted,
    AlreadyInFlight,
    AlreadyResolved,
    BeginOutcome,
    DeadLetter,
    canonical_json,
    derive_action_id,
    tool_message_content,
)
from .conversation import Message, MessageRole, Session, TranscriptEntry
from .turn import AgentResponse, CancelResponse, TurnRequest, TurnState

__all__ = [
    "ActionDelivery",
    "ActionRequest",
    "ActionResult",
    "ActionStatus",
    "AgentResponse",
    "Admitted",
    "AlreadyInFlight",
    "AlreadyResolved",
    "BeginOutcome",
    "CancelResponse",
    "DeadLetter",
    "Message",
    "MessageRole",
    "Session",
    "TranscriptEntry",
    "TurnRequest",
    "TurnState",
    "canonical_json",
    "derive_action_id",
    "tool_message_content",
]
