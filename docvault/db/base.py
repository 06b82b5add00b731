"""
DocVault Database Base — SQLAlchemy declarative base, column types and mixins.

Provides:
- Base: SQLAlchemy declarative base for all models
- UTCDateTime: timezone-aware datetimes normalized to UTC on every backend
- TimestampMixin: created_at, updated_at
- SoftDeleteMixin: deleted_at
- new_id(): string UUID primary keys
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Column
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import DateTime, TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime normalized to UTC (SQLite returns naive values)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value: Any, dialect):
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
        return value


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all DocVault models."""
    pass


class TimestampMixin:
    """Adds created_at and updated_at columns."""
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class SoftDeleteMixin:
    """Adds deleted_at. Rows with a value are invisible to every store query."""
    deleted_at = Column(UTCDateTime, nullable=True, index=True)
