from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, relationship

from convoflow.db.types import JSONCompat

from .base import Base, TimestampMixin, utcnow


class ConversationSession(TimestampMixin, Base):
    """
    一个会话的持久状态。

    - 首次收到某个 session_id 的消息时创建；
    - 仅由编排器修改，核心从不删除（归档/清理属于外部职责）。
    """

    __tablename__ = "conversation_sessions"

    session_id: Mapped[str] = Column(String(255), primary_key=True)
    context: Mapped[dict] = Column(JSONCompat, nullable=False, default=dict)
    # "metadata" is reserved on declarative classes.
    session_metadata: Mapped[dict] = Column("metadata", JSONCompat, nullable=False, default=dict)
    last_activity: Mapped[datetime | None] = Column(DateTime(timezone=True), nullable=True, default=utcnow)

    messages = relationship(
        "ConversationMessage",
        back_populates="session",
        order_by="ConversationMessage.turn_seq",
        lazy="noload",
    )


class ConversationMessage(TimestampMixin, Base):
    """
    会话内不可变的消息（append-only）。

    (session_id, turn_seq) 唯一：这是同一会话内"单写者"的乐观锁，
    并发的两个轮次写入同一 turn_seq 时只有一个能提交。
    """

    __tablename__ = "conversation_messages"
    __table_args__ = (
        UniqueConstraint("session_id", "turn_seq", name="uq_conversation_messages_session_seq"),
        Index("ix_conversation_messages_session_created", "session_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = Column(
        String(255),
        ForeignKey("conversation_sessions.session_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    turn_seq: Mapped[int] = Column(Integer, nullable=False)
    role: Mapped[str] = Column(String(16), nullable=False)
    content: Mapped[dict] = Column(JSONCompat, nullable=False, default=dict)

    session = relationship("ConversationSession", back_populates="messages")


__all__ = ["ConversationMessage", "ConversationSession"]
