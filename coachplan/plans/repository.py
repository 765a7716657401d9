"""Repository functions for schedules and transient pipeline records.

Single responsibility: database operations only. Callers own the session
and therefore the transaction boundary.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from coachplan.db.models import (
    ClarificationRecord,
    InterventionRecord,
    PreviewSetRecord,
    Schedule,
    ScheduledItem,
    ScheduleRevision,
)
from coachplan.plans.types import ItemSnapshot, Modification, PreviewSet, ScheduleSnapshot

PENDING_DATE_PREFIX = "pending:"


class ItemWriteError(RuntimeError):
    """Raised when a previewed item is missing at write time."""


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def is_expired(expires_at: datetime, now: datetime) -> bool:
    return as_utc(expires_at) <= as_utc(now)


def _item_snapshot(item: ScheduledItem) -> ItemSnapshot:
    return ItemSnapshot(
        id=item.id,
        date=item.date,
        title=item.title,
        status=item.status,
        item_type=item.item_type,
        description=item.description,
        duration_minutes=item.duration_minutes,
        distance_km=item.distance_km,
        tags=tuple(item.tags or ()),
    )


# Schedules


def get_schedule_snapshot(session: Session, plan_id: str) -> ScheduleSnapshot | None:
    """Read a schedule and its items as an immutable snapshot."""
    schedule = session.get(Schedule, plan_id)
    if schedule is None:
        return None
    items = session.execute(
        select(ScheduledItem).where(ScheduledItem.schedule_id == plan_id).order_by(ScheduledItem.date)
    ).scalars()
    return ScheduleSnapshot(
        id=schedule.id,
        version=schedule.version,
        timezone=schedule.timezone,
        items=[_item_snapshot(item) for item in items],
    )


def get_current_version(session: Session, plan_id: str) -> int | None:
    return session.execute(select(Schedule.version).where(Schedule.id == plan_id)).scalar_one_or_none()


def compare_and_swap_version(session: Session, plan_id: str, expected_version: int, now: datetime) -> bool:
    """Increment the schedule version by one iff it still equals expected_version.

    Returns:
        True when exactly one row was updated
    """
    result = session.execute(
        update(Schedule)
        .where(Schedule.id == plan_id, Schedule.version == expected_version)
        .values(version=Schedule.version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def apply_item_changes(session: Session, plan_id: str, modifications: Sequence[Modification], now: datetime) -> None:
    """Write every modification's `after` delta to its item.

    Date moves go through a temporary placeholder date first so that swaps
    and chains of moves never trip the per-schedule date uniqueness
    constraint mid-flush.
    """
    targets = [modification for modification in modifications if modification.operation != "add"]
    rows = {
        row.id: row
        for row in session.execute(
            select(ScheduledItem).where(
                ScheduledItem.schedule_id == plan_id,
                ScheduledItem.id.in_([modification.target.item_id for modification in targets]),
            )
        ).scalars()
    }

    for modification in targets:
        row = rows.get(modification.target.item_id)
        if row is None or row.date != modification.target.date:
            raise ItemWriteError(f"Item {modification.target.item_id} is no longer on {modification.target.date}")
        if modification.after.date is not None and modification.after.date != row.date:
            row.date = f"{PENDING_DATE_PREFIX}{row.id}"
    session.flush()

    for modification in targets:
        row = rows[modification.target.item_id]
        for field, value in modification.after.changes().items():
            setattr(row, field, list(value) if field == "tags" else value)
        row.updated_at = now

    for modification in modifications:
        if modification.operation != "add":
            continue
        changes = modification.after.changes()
        session.add(
            ScheduledItem(
                id=modification.target.item_id,
                schedule_id=plan_id,
                date=changes.pop("date", modification.target.date),
                title=changes.pop("title", "Workout"),
                status=changes.pop("status", "scheduled"),
                tags=list(changes.pop("tags", [])),
                updated_at=now,
                **changes,
            )
        )
    session.flush()


def record_revision(
    session: Session,
    *,
    preview: PreviewSet,
    from_version: int,
    to_version: int,
) -> ScheduleRevision:
    """Append the audit row for a successful commit."""
    revision = ScheduleRevision(
        schedule_id=preview.plan_id,
        preview_id=preview.preview_id,
        from_version=from_version,
        to_version=to_version,
        affected_start=preview.affected_date_range.start,
        affected_end=preview.affected_date_range.end,
        deltas=[
            {
                "item_id": modification.target.item_id,
                "operation": modification.operation,
                "before": modification.before.model_dump(mode="json") if modification.before else None,
                "after": modification.after.changes(),
                "reason": modification.reason,
            }
            for modification in preview.modifications
        ],
    )
    session.add(revision)
    session.flush()
    return revision


def list_revisions(session: Session, plan_id: str) -> list[ScheduleRevision]:
    return list(
        session.execute(
            select(ScheduleRevision)
            .where(ScheduleRevision.schedule_id == plan_id)
            .order_by(ScheduleRevision.to_version)
        ).scalars()
    )


# Preview sets


def save_preview(session: Session, preview: PreviewSet) -> PreviewSetRecord:
    record = PreviewSetRecord(
        id=preview.preview_id,
        proposal_id=preview.proposal_id,
        plan_id=preview.plan_id,
        plan_version=preview.plan_version,
        payload=preview.model_dump(mode="json"),
        preview_hash=preview.preview_hash,
        created_at=preview.created_at,
        expires_at=preview.expires_at,
    )
    session.add(record)
    session.flush()
    logger.info(
        "Preview set stored",
        preview_id=preview.preview_id,
        plan_id=preview.plan_id,
        plan_version=preview.plan_version,
        items=len(preview.affected_item_ids),
    )
    return record


def get_preview_record(session: Session, preview_id: str) -> PreviewSetRecord | None:
    """Stored preview by id, expired or not. Expiry is the caller's decision."""
    return session.get(PreviewSetRecord, preview_id)


def get_preview(session: Session, preview_id: str) -> PreviewSet | None:
    record = get_preview_record(session, preview_id)
    return PreviewSet.model_validate(record.payload) if record else None


def delete_preview(session: Session, preview_id: str) -> None:
    session.execute(delete(PreviewSetRecord).where(PreviewSetRecord.id == preview_id))


# Clarifications


def save_clarification(
    session: Session,
    *,
    plan_id: str,
    question: str,
    options: list[dict],
    detected_phrase: str,
    original_message: str,
    resolved_dates: dict[str, str],
    now: datetime,
    ttl_minutes: int,
) -> ClarificationRecord:
    record = ClarificationRecord(
        plan_id=plan_id,
        question=question,
        options=options,
        detected_phrase=detected_phrase,
        original_message=original_message,
        resolved_dates=dict(resolved_dates),
        created_at=now,
        expires_at=now + timedelta(minutes=ttl_minutes),
    )
    session.add(record)
    session.flush()
    return record


def get_clarification(session: Session, clarification_id: str, *, plan_id: str, now: datetime) -> ClarificationRecord | None:
    """Live clarification for this plan, or None when unknown or expired."""
    record = session.get(ClarificationRecord, clarification_id)
    if record is None or record.plan_id != plan_id or is_expired(record.expires_at, now):
        return None
    return record


def mark_clarification_resolved(session: Session, record: ClarificationRecord, selected_date: str) -> None:
    """Remember the answer so a repeated submission does not ask again."""
    record.selected_date = selected_date
    record.resolved_dates = {**(record.resolved_dates or {}), record.detected_phrase: selected_date}
    session.flush()


def delete_clarifications_for_plan(session: Session, plan_id: str) -> int:
    result = session.execute(delete(ClarificationRecord).where(ClarificationRecord.plan_id == plan_id))
    return result.rowcount


# Interventions


def save_intervention(
    session: Session,
    *,
    plan_id: str,
    state: dict,
    modifications: list[dict],
    original_message: str,
    scope_days: int | None,
    confirmed: bool,
    now: datetime,
    ttl_minutes: int,
) -> InterventionRecord:
    record = InterventionRecord(
        plan_id=plan_id,
        state=state,
        modifications=modifications,
        original_message=original_message,
        scope_days=scope_days,
        confirmed=confirmed,
        created_at=now,
        expires_at=now + timedelta(minutes=ttl_minutes),
    )
    session.add(record)
    session.flush()
    return record


def get_intervention(session: Session, intervention_id: str, *, plan_id: str, now: datetime) -> InterventionRecord | None:
    record = session.get(InterventionRecord, intervention_id)
    if record is None or record.plan_id != plan_id or is_expired(record.expires_at, now):
        return None
    return record


def delete_intervention(session: Session, intervention_id: str) -> None:
    session.execute(delete(InterventionRecord).where(InterventionRecord.id == intervention_id))


# Housekeeping


def purge_expired(session: Session, now: datetime) -> dict[str, int]:
    """Delete every expired preview, clarification and intervention.

    Returns:
        Number of deleted rows per record kind
    """
    counts = {}
    for name, model in (
        ("previews", PreviewSetRecord),
        ("clarifications", ClarificationRecord),
        ("interventions", InterventionRecord),
    ):
        result = session.execute(delete(model).where(model.expires_at <= now))
        counts[name] = result.rowcount
    if any(counts.values()):
        logger.info("Purged expired pipeline records", **counts)
    return counts
