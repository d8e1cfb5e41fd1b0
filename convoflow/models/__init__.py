from .base import Base, TimestampMixin
from .conversation import ConversationMessage, ConversationSession

__all__ = [
    "Base",
    "ConversationMessage",
    "ConversationSession",
    "TimestampMixin",
]
