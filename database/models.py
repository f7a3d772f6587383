"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - Composite primary key (customer_id, journey_id): one location per pair.
  - Lock state lives on the same row as the position so a single
    conditional UPDATE both checks and takes the lock.
  - SQLite returns naive datetimes; everything stored is UTC.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, Index
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from models.schemas import JourneyLocation


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ──────────────────────────────────────────────────────────────
#  Journey locations
# ──────────────────────────────────────────────────────────────

class JourneyLocationRow(Base):
    __tablename__ = "journey_locations"

    customer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    journey_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), default="")

    current_step_id: Mapped[str] = mapped_column(String(64), nullable=False)
    step_entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    locked: Mapped[bool] = mapped_column(Boolean, default=False)
    lock_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    message_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_journey_locations_step", "journey_id", "current_step_id"),
        Index("ix_journey_locations_locked", "locked", "locked_at"),
    )

    def to_model(self) -> JourneyLocation:
        return JourneyLocation(
            customer_id=self.customer_id,
            journey_id=self.journey_id,
            owner_id=self.owner_id or "",
            current_step_id=self.current_step_id,
            step_entered_at=_aware(self.step_entered_at),
            locked=bool(self.locked),
            lock_token=self.lock_token,
            locked_at=_aware(self.locked_at),
            message_sent=bool(self.message_sent),
            finalized_at=_aware(self.finalized_at),
        )

    def apply(self, location: JourneyLocation) -> None:
        self.owner_id = location.owner_id
        self.current_step_id = location.current_step_id
        self.step_entered_at = location.step_entered_at
        self.locked = location.locked
        self.lock_token = location.lock_token
        self.locked_at = location.locked_at
        self.message_sent = location.message_sent
        self.finalized_at = location.finalized_at
