"""
Declarative base and shared column mixins.
"""

from sqlalchemy import Column, DateTime, Enum
from sqlalchemy.orm import DeclarativeBase

from app.core.clock import utcnow


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    # Python-side defaults keep microsecond precision on every backend
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


def enum_column(enum_cls, **kwargs) -> Column:
    """String-backed enum column; portable across PostgreSQL and SQLite."""
    return Column(
        Enum(enum_cls, native_enum=False, length=30, values_callable=lambda e: [m.value for m in e]),
        **kwargs,
    )
