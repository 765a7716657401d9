from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""


class Schedule(Base):
    """A versioned, date-anchored plan.

    `version` is the optimistic concurrency counter. It only ever moves by
    exactly one, inside the compare-and-swap performed by a successful commit.
    """

    __tablename__ = "schedules"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id, index=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False, default="Training plan")
    timezone: Mapped[str] = mapped_column(String, nullable=False, default="Europe/Paris")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    items: Mapped[list[ScheduledItem]] = relationship(
        back_populates="schedule",
        order_by="ScheduledItem.date",
        cascade="all, delete-orphan",
    )


class ScheduledItem(Base):
    """One dated entry of a schedule.

    Dates are plain `YYYY-MM-DD` strings and unique per schedule.
    Items are never deleted by the change pipeline, only their status moves.
    """

    __tablename__ = "scheduled_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id, index=True)
    schedule_id: Mapped[str] = mapped_column(String, ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False)

    date: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    item_type: Mapped[str] = mapped_column(String, nullable=False, default="run")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="scheduled")  # scheduled, cancelled, completed
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    week: Mapped[int | None] = mapped_column(Integer, nullable=True)  # display only

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    schedule: Mapped[Schedule] = relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("schedule_id", "date", name="uq_scheduled_items_schedule_date"),
        Index("idx_scheduled_items_schedule_date", "schedule_id", "date"),
    )


class PreviewSetRecord(Base):
    """Persisted, single-use, TTL-bound preview set.

    `payload` holds the serialized PreviewSet; `preview_hash` is duplicated
    into its own column so the commit path can compare without trusting the
    payload.
    """

    __tablename__ = "preview_sets"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    proposal_id: Mapped[str] = mapped_column(String, nullable=False)
    plan_id: Mapped[str] = mapped_column(String, ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_version: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    preview_hash: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class ClarificationRecord(Base):
    """Pending (or answered) date disambiguation for one conversation turn."""

    __tablename__ = "clarification_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    plan_id: Mapped[str] = mapped_column(String, ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False, index=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    options: Mapped[list] = mapped_column(JSON, nullable=False)
    detected_phrase: Mapped[str] = mapped_column(String, nullable=False)  # normalized
    original_message: Mapped[str] = mapped_column(Text, nullable=False)
    resolved_dates: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    selected_date: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class InterventionRecord(Base):
    """A coaching intervention waiting for the user's answer."""

    __tablename__ = "pending_interventions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    plan_id: Mapped[str] = mapped_column(String, ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False, index=True)
    state: Mapped[dict] = mapped_column(JSON, nullable=False)
    modifications: Mapped[list] = mapped_column(JSON, nullable=False)
    original_message: Mapped[str] = mapped_column(Text, nullable=False)
    scope_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class ScheduleRevision(Base):
    """Append-only audit row written by every successful commit."""

    __tablename__ = "schedule_revisions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    schedule_id: Mapped[str] = mapped_column(String, ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False, index=True)
    preview_id: Mapped[str] = mapped_column(String, nullable=False)
    from_version: Mapped[int] = mapped_column(Integer, nullable=False)
    to_version: Mapped[int] = mapped_column(Integer, nullable=False)
    affected_start: Mapped[str | None] = mapped_column(String, nullable=True)
    affected_end: Mapped[str | None] = mapped_column(String, nullable=True)
    deltas: Mapped[list] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
