from __future__ import annotations

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONCompat = JSON().with_variant(JSONB(), "postgresql")

__all__ = ["JSONCompat"]
