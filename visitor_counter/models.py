"""SQLAlchemy ORM models for the visitor counter."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, String, func, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class Counter(Base):
    """One named counter, e.g. ``example.com-visitors-19-10-2026``."""

    __tablename__ = "counters"
    __table_args__ = (CheckConstraint("value >= 0", name="non_negative_value"),)

    id: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        server_default=text("0"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
