from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False, default=utcnow)


__all__ = ["Base", "TimestampMixin", "utcnow"]
