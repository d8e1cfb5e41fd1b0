from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from convoflow.errors import ConflictError, StoreUnavailableError
from convoflow.logging_config import logger
from convoflow.models import ConversationMessage, ConversationSession
from convoflow.schemas import Message, MessageRole, Session, TranscriptEntry


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; everything we write is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _encode_content(content: str | dict[str, Any]) -> dict[str, Any]:
    if isinstance(content, str):
        return {"text": content}
    return {"tool": dict(content)}


def _decode_content(stored: Mapping[str, Any] | None) -> str | dict[str, Any]:
    stored = stored or {}
    if "tool" in stored and isinstance(stored["tool"], dict):
        return dict(stored["tool"])
    return str(stored.get("text") or "")


def _row_to_message(row: ConversationMessage) -> Message:
    return Message(
        role=MessageRole(row.role),
        content=_decode_content(row.content),
        turn_seq=int(row.turn_seq),
        created_at=_as_utc(row.created_at),
    )


class SessionStore:
    """
    会话存储：一个轮次一个实例（包装一个 SQLAlchemy Session 作为 unit of work）。

    - append_message / update_context 只在当前事务内暂存；
    - persist 在单个事务内提交本轮的全部写入；
    - (session_id, turn_seq) 唯一约束充当乐观锁：并发轮次中后提交者得到 ConflictError，
      且不会留下部分写入。
    """

    def __init__(self, db: DBSession) -> None:
        self._db = db
        self._staged: dict[str, list[Message]] = {}
        # Pending rows are not in the identity map until flushed, so keep them here.
        self._rows: dict[str, ConversationSession] = {}

    def _session_row(self, session_id: str) -> ConversationSession:
        row = self._rows.get(session_id)
        if row is not None:
            return row
        row = self._db.get(ConversationSession, session_id)
        if row is None:
            row = ConversationSession(
                session_id=session_id,
                context={},
                session_metadata={},
                last_activity=None,
                created_at=datetime.now(UTC),
            )
            self._db.add(row)
        self._rows[session_id] = row
        return row

    def _committed_messages(self, session_id: str) -> list[ConversationMessage]:
        stmt = (
            select(ConversationMessage)
            .where(ConversationMessage.session_id == session_id)
            .order_by(ConversationMessage.turn_seq.asc())
        )
        return list(self._db.execute(stmt).scalars().all())

    def load(self, session_id: str) -> Session:
        """Return the session, or an empty one when it does not exist yet."""
        try:
            row = self._rows.get(session_id) or self._db.get(ConversationSession, session_id)
            committed = self._committed_messages(session_id)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to load session {session_id}") from exc
        if row is not None:
            self._rows[session_id] = row

        messages = [_row_to_message(m) for m in committed]
        messages.extend(self._staged.get(session_id, []))
        messages.sort(key=lambda m: m.turn_seq)

        if row is None:
            return Session(session_id=session_id, messages=messages, is_new=True)
        return Session(
            session_id=session_id,
            messages=messages,
            context=dict(row.context or {}),
            last_activity=_as_utc(row.last_activity),
            metadata=dict(row.session_metadata or {}),
            is_new=row in self._db.new,
        )

    def append_message(self, session_id: str, message: Message) -> None:
        staged = self._staged.setdefault(session_id, [])
        if any(m.turn_seq == message.turn_seq for m in staged):
            raise ConflictError(session_id, message.turn_seq)
        try:
            exists = self._db.execute(
                select(ConversationMessage.id).where(
                    ConversationMessage.session_id == session_id,
                    ConversationMessage.turn_seq == message.turn_seq,
                )
            ).first()
            if exists is not None:
                raise ConflictError(session_id, message.turn_seq)

            row = self._session_row(session_id)
            self._db.add(
                ConversationMessage(
                    session=row,
                    session_id=session_id,
                    turn_seq=message.turn_seq,
                    role=message.role.value,
                    content=_encode_content(message.content),
                    created_at=message.created_at,
                )
            )
            row.last_activity = datetime.now(UTC)
        except IntegrityError as exc:
            # autoflush hit a row another turn committed first
            raise ConflictError(session_id, message.turn_seq) from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to stage message for session {session_id}") from exc
        staged.append(message)

    def update_context(self, session_id: str, mapping: Mapping[str, Any]) -> None:
        """Shallow merge: new keys overwrite, other keys are preserved."""
        try:
            row = self._session_row(session_id)
        except IntegrityError as exc:
            raise ConflictError(session_id) from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to update context for session {session_id}") from exc
        merged = dict(row.context or {})
        merged.update(dict(mapping))
        # Reassign so the JSON column is marked dirty.
        row.context = merged

    def persist(self, session_id: str) -> None:
        try:
            self._db.commit()
        except IntegrityError as exc:
            self._db.rollback()
            self._forget(session_id)
            logger.info("session_store: concurrent turn lost the race (session_id=%s)", session_id)
            raise ConflictError(session_id) from exc
        except SQLAlchemyError as exc:
            self._db.rollback()
            self._forget(session_id)
            logger.error("session_store: persist failed (session_id=%s)", session_id, exc_info=True)
            raise StoreUnavailableError(f"failed to persist session {session_id}") from exc
        self._staged.pop(session_id, None)

    def _forget(self, session_id: str) -> None:
        self._staged.pop(session_id, None)
        self._rows.pop(session_id, None)

    def discard(self, session_id: str) -> None:
        """Drop everything staged for the session without committing."""
        self._forget(session_id)
        try:
            self._db.rollback()
        except SQLAlchemyError:
            logger.debug("session_store: rollback on discard failed (session_id=%s)", session_id, exc_info=True)

    def transcript(self, session_id: str) -> list[TranscriptEntry]:
        try:
            committed = self._committed_messages(session_id)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to read transcript for session {session_id}") from exc
        return [
            TranscriptEntry(
                role=MessageRole(m.role),
                content=_decode_content(m.content),
                turn_seq=int(m.turn_seq),
                created_at=_as_utc(m.created_at),
            )
            for m in committed
        ]


__all__ = ["SessionStore"]
