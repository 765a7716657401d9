"""Safety invariants for schedule change sets.

Pure predicates: no I/O, no clock. "today" is passed in.

Enforced invariants:
- every target exists at its stated date
- completed items are immutable, for every operation
- `before` snapshots match the canonical item
- past items may be cancelled freely; any other change to the past needs
  explicit confirmation
- item dates stay unique
- no two hard sessions, and no two long runs, on consecutive days
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from coachplan.dates.resolver import add_days, format_display, is_iso_date
from coachplan.plans.types import ItemSnapshot, Modification, ValidationIssue, ValidationResult

TARGET_NOT_FOUND = "TARGET_NOT_FOUND"
COMPLETED_IMMUTABLE = "COMPLETED_IMMUTABLE"
STALE_SNAPSHOT = "STALE_SNAPSHOT"
INVALID_DATE = "INVALID_DATE"
RESTORE_REQUIRES_CANCELLED = "RESTORE_REQUIRES_CANCELLED"
DATE_COLLISION = "DATE_COLLISION"
BACK_TO_BACK_HARD_SESSIONS = "BACK_TO_BACK_HARD_SESSIONS"
BACK_TO_BACK_LONG_RUNS = "BACK_TO_BACK_LONG_RUNS"
PAST_REQUIRES_CONFIRMATION = "PAST_REQUIRES_CONFIRMATION"

WORKOUT_MISMATCH = "workout_mismatch"
VERSION_MISMATCH = "version_mismatch"


def _new_item(modification: Modification) -> ItemSnapshot:
    changes = modification.after.changes()
    return ItemSnapshot.model_validate(
        {
            "id": modification.target.item_id,
            "date": changes.pop("date", modification.target.date),
            "title": changes.pop("title", "Workout"),
            "status": changes.pop("status", "scheduled"),
            **changes,
        }
    )


def apply_modifications(items: Iterable[ItemSnapshot], modifications: Sequence[Modification]) -> list[ItemSnapshot]:
    """Schedule as it would exist after applying every modification.

    Deltas are absolute, so the result does not depend on modification
    order. Modifications whose target id is unknown are ignored here; the
    existence rule reports them.
    """
    by_id = {item.id: item for item in items}
    for modification in modifications:
        if modification.operation == "add":
            by_id[modification.target.item_id] = _new_item(modification)
            continue
        current = by_id.get(modification.target.item_id)
        if current is None:
            continue
        by_id[current.id] = ItemSnapshot.model_validate({**current.model_dump(), **modification.after.changes()})
    return sorted(by_id.values(), key=lambda item: item.date)


def find_adjacency_conflicts(items: Iterable[ItemSnapshot], touched_ids: set[str]) -> list[ValidationIssue]:
    """Pairs of consecutive-day hard sessions or long runs involving a touched item.

    Cancelled items do not count. Only pairs on exactly adjacent dates are
    compared; pairs that exist without any touched item are left alone.
    """
    active = {item.date: item for item in items if item.status != "cancelled"}
    issues: list[ValidationIssue] = []
    for iso_date in sorted(active):
        first = active[iso_date]
        second = active.get(add_days(iso_date, 1))
        if second is None or not ({first.id, second.id} & touched_ids):
            continue
        pair = f"{first.title} ({format_display(first.date)}) and {second.title} ({format_display(second.date)})"
        if first.is_hard and second.is_hard:
            issues.append(
                ValidationIssue(
                    code=BACK_TO_BACK_HARD_SESSIONS,
                    message=f"This would create back-to-back hard sessions: {pair}",
                    date=first.date,
                )
            )
        if first.is_long_run and second.is_long_run:
            issues.append(
                ValidationIssue(
                    code=BACK_TO_BACK_LONG_RUNS,
                    message=f"This would create back-to-back long runs: {pair}",
                    date=first.date,
                )
            )
    return issues


def _snapshot_matches(before: ItemSnapshot, canonical: ItemSnapshot) -> bool:
    return (before.status, before.date, before.title) == (canonical.status, canonical.date, canonical.title)


def _check_target(
    modification: Modification,
    canonical: ItemSnapshot | None,
    *,
    today: str,
    errors: list[ValidationIssue],
    warnings: list[ValidationIssue],
) -> bool:
    """Per-modification rules. Returns True when the change needs confirmation."""
    target = modification.target
    completed = (modification.before is not None and modification.before.status == "completed") or (
        canonical is not None and canonical.status == "completed"
    )
    if completed:
        title = canonical.title if canonical else modification.before.title
        errors.append(
            ValidationIssue(
                code=COMPLETED_IMMUTABLE,
                message=f"Cannot modify completed workout: {title} on {format_display(target.date)}",
                item_id=target.item_id,
                date=target.date,
            )
        )
        return False

    if canonical is None or canonical.date != target.date:
        errors.append(
            ValidationIssue(
                code=TARGET_NOT_FOUND,
                message=f"Target workout does not exist: {target.item_id} on {target.date}",
                item_id=target.item_id,
                date=target.date,
            )
        )
        return False

    if modification.before is None or not _snapshot_matches(modification.before, canonical):
        errors.append(
            ValidationIssue(
                code=STALE_SNAPSHOT,
                message=f"{canonical.title} on {format_display(target.date)} changed since this change was drafted",
                item_id=target.item_id,
                date=target.date,
            )
        )
        return False

    new_date = modification.after.date
    if new_date is not None and not is_iso_date(new_date):
        errors.append(
            ValidationIssue(
                code=INVALID_DATE,
                message=f"Invalid destination date: {new_date!r}",
                item_id=target.item_id,
                date=target.date,
            )
        )
        return False

    if modification.operation == "restore" and canonical.status != "cancelled":
        errors.append(
            ValidationIssue(
                code=RESTORE_REQUIRES_CANCELLED,
                message=f"Cannot restore {canonical.title} on {format_display(target.date)} - it was not cancelled",
                item_id=target.item_id,
                date=target.date,
            )
        )
        return False

    if modification.operation == "cancel":
        # Cancelling a past item is a harmless retroactive no-show.
        return False

    touches_past = target.date < today or (new_date is not None and new_date < today)
    if touches_past:
        warnings.append(
            ValidationIssue(
                code=PAST_REQUIRES_CONFIRMATION,
                message=f"Past workout modification requires explicit confirmation: {canonical.title} on {format_display(target.date)}",
                item_id=target.item_id,
                date=target.date,
            )
        )
    return touches_past


def _check_new_item(modification: Modification, errors: list[ValidationIssue]) -> None:
    new_date = modification.after.date or modification.target.date
    if not is_iso_date(new_date):
        errors.append(
            ValidationIssue(
                code=INVALID_DATE,
                message=f"Invalid date for new workout: {new_date!r}",
                item_id=modification.target.item_id,
            )
        )


def _date_collisions(items: Sequence[ItemSnapshot]) -> list[ValidationIssue]:
    seen: dict[str, ItemSnapshot] = {}
    issues: list[ValidationIssue] = []
    for item in items:
        other = seen.get(item.date)
        if other is not None:
            issues.append(
                ValidationIssue(
                    code=DATE_COLLISION,
                    message=f"{item.title} and {other.title} would both be on {format_display(item.date)}",
                    item_id=item.id,
                    date=item.date,
                )
            )
        else:
            seen[item.date] = item
    return issues


def validate_preview(
    modifications: Sequence[Modification],
    items: Sequence[ItemSnapshot],
    *,
    today: str,
    confirmed: bool = False,
) -> ValidationResult:
    """Check a change set against the canonical schedule.

    Args:
        modifications: Proposed change set
        items: Canonical schedule items
        today: Reference date (YYYY-MM-DD) in the schedule's timezone
        confirmed: The user explicitly confirmed changes to past items

    Returns:
        ValidationResult with stable error and warning codes
    """
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
    needs_confirmation = False
    canonical = {item.id: item for item in items}

    for modification in modifications:
        if modification.operation == "add":
            _check_new_item(modification, errors)
            continue
        needs_confirmation |= _check_target(
            modification,
            canonical.get(modification.target.item_id),
            today=today,
            errors=errors,
            warnings=warnings,
        )

    if not errors:
        post = apply_modifications(items, modifications)
        errors.extend(_date_collisions(post))
        touched = {modification.target.item_id for modification in modifications}
        errors.extend(find_adjacency_conflicts(post, touched))

    return ValidationResult(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        requires_confirmation=needs_confirmation and not confirmed,
    )


def validate_commit(
    preview_item_ids: Iterable[str],
    confirmed_item_ids: Iterable[str],
    preview_version: int,
    current_version: int,
) -> ValidationResult:
    """Commit-time re-check: exact id-set equality and unchanged version."""
    errors: list[ValidationIssue] = []

    preview_ids = set(preview_item_ids)
    confirmed_ids = set(confirmed_item_ids)
    if preview_ids != confirmed_ids:
        missing = sorted(preview_ids - confirmed_ids)
        unexpected = sorted(confirmed_ids - preview_ids)
        errors.append(
            ValidationIssue(
                code=WORKOUT_MISMATCH,
                message=f"Preview/commit mismatch: missing={missing} unexpected={unexpected}",
            )
        )

    if preview_version != current_version:
        errors.append(
            ValidationIssue(
                code=VERSION_MISMATCH,
                message=(
                    f"Version mismatch: preview was for v{preview_version}, but plan is now v{current_version}. "
                    "Please refresh and preview again."
                ),
            )
        )

    return ValidationResult(valid=not errors, errors=errors)
