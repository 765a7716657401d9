"""Preview set construction.

Turns a drafted intent into concrete per-item Modifications against one
schedule snapshot, then packages a validated change set into a PreviewSet:
hashed over (sorted modification identities, plan id, plan version) and
time-boxed by the configured TTL.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from collections import Counter
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from coachplan.config.settings import settings
from coachplan.dates.resolver import DateRange, DateResolver, normalize_phrase
from coachplan.plans.intent import (
    AddIntent,
    CancelIntent,
    DraftedIntent,
    ModifyIntent,
    NoChangeIntent,
    RescheduleIntent,
    RestoreIntent,
    SwapIntent,
)
from coachplan.plans.safety import apply_modifications, find_adjacency_conflicts
from coachplan.plans.types import (
    DateRangeSummary,
    ItemDelta,
    ItemSnapshot,
    Modification,
    ModificationTarget,
    PreviewSet,
    PreviewSummary,
    ScheduleSnapshot,
    ValidationIssue,
    ValidationResult,
)

UNRESOLVED_SCOPE = "UNRESOLVED_SCOPE"
TARGET_NOT_FOUND = "TARGET_NOT_FOUND"


class ResolvedChanges(BaseModel):
    """Concrete modifications for one intent, plus anything that could not be resolved."""

    modifications: list[Modification] = Field(default_factory=list)
    issues: list[ValidationIssue] = Field(default_factory=list)
    scope: DateRange | None = None

    @property
    def scope_days(self) -> int | None:
        return self.scope.day_count if self.scope else None


def compute_preview_hash(modifications: Sequence[Modification], plan_id: str, plan_version: int) -> str:
    """SHA-256 over sorted modification identities, plan id and plan version.

    Order-independent in the modifications; any change to a target, a delta,
    the plan or its version changes the digest.
    """
    payload = json.dumps(
        {
            "modifications": sorted(modification.identity() for modification in modifications),
            "plan_id": plan_id,
            "plan_version": plan_version,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _normalize_value(value):
    return tuple(value) if isinstance(value, list) else value


def is_no_op(modification: Modification) -> bool:
    """True when applying the modification would leave its item unchanged.

    `add` is never a no-op. `restore` is never filtered either: restoring an
    item that is not cancelled is a validation error, not a silent skip. Nor
    is anything touching a completed item, which validation must reject.
    """
    if modification.operation in {"add", "restore"} or modification.before is None:
        return False
    if modification.before.status == "completed":
        return False
    changes = modification.after.changes()
    return all(getattr(modification.before, field) == _normalize_value(value) for field, value in changes.items())


def filter_no_op_modifications(modifications: Sequence[Modification]) -> list[Modification]:
    return [modification for modification in modifications if not is_no_op(modification)]


class PreviewSetResolver:
    """Builds preview sets for one schedule snapshot on one reference date.

    Args:
        snapshot: Canonical schedule at the version the preview will carry
        resolver: DateResolver fixed to the request's "today"
        resolved_dates: Clarified phrases from earlier turns, keyed by
            normalized phrase
    """

    def __init__(
        self,
        snapshot: ScheduleSnapshot,
        resolver: DateResolver,
        resolved_dates: Mapping[str, str] | None = None,
    ) -> None:
        self.snapshot = snapshot
        self.resolver = resolver
        self.resolved_dates = {normalize_phrase(key): value for key, value in (resolved_dates or {}).items()}

    def resolve_scope(self, phrase: str) -> DateRange | None:
        """Resolve a cancel scope phrase to an inclusive date range.

        Range phrases ("next week") win; otherwise the phrase is resolved as
        a single day, consulting earlier clarifications for bare weekdays.
        """
        date_range = self.resolver.resolve_relative_range(phrase)
        if date_range is not None:
            return date_range

        iso_date = self.resolved_dates.get(normalize_phrase(phrase))
        if iso_date is None:
            resolution = self.resolver.resolve_relative_phrase(phrase)
            if resolution.is_ambiguous:
                return None
            iso_date = resolution.iso_date
        return DateRange(start=iso_date, end=iso_date, display=self.resolver.format_display(iso_date), day_count=1)

    def _find(self, *, item_id: str | None = None, iso_date: str | None = None) -> ItemSnapshot | None:
        if item_id is not None:
            item = self.snapshot.item_by_id(item_id)
            if item is not None and (iso_date is None or item.date == iso_date):
                return item
            return None
        return self.snapshot.item_on(iso_date) if iso_date else None

    @staticmethod
    def _not_found(item_id: str | None, iso_date: str | None) -> ValidationIssue:
        where = iso_date or "unknown date"
        return ValidationIssue(
            code=TARGET_NOT_FOUND,
            message=f"No workout found on {where}" if item_id is None else f"Workout {item_id} not found on {where}",
            item_id=item_id,
            date=iso_date,
        )

    @staticmethod
    def _modification(item: ItemSnapshot, operation: str, after: ItemDelta, reason: str | None) -> Modification:
        return Modification(
            target=ModificationTarget(item_id=item.id, date=item.date),
            operation=operation,
            before=item,
            after=after,
            reason=reason,
        )

    def _targets(self, target_ids: Sequence[str], target_dates: Sequence[str], issues: list[ValidationIssue]) -> list[ItemSnapshot]:
        found: dict[str, ItemSnapshot] = {}
        for item_id in target_ids:
            item = self._find(item_id=item_id)
            if item is None:
                issues.append(self._not_found(item_id, None))
            else:
                found[item.id] = item
        for iso_date in target_dates:
            item = self._find(iso_date=iso_date)
            if item is None:
                issues.append(self._not_found(None, iso_date))
            else:
                found[item.id] = item
        return sorted(found.values(), key=lambda item: item.date)

    def _resolve_cancel(self, intent: CancelIntent, result: ResolvedChanges) -> None:
        selected: dict[str, ItemSnapshot] = {}
        if intent.scope:
            scope = self.resolve_scope(intent.scope)
            if scope is None:
                result.issues.append(
                    ValidationIssue(code=UNRESOLVED_SCOPE, message=f'Could not resolve "{intent.scope}" to dates')
                )
                return
            result.scope = scope
            in_scope = set(self.resolver.dates_between(scope.start, scope.end))
            for item in self.snapshot.items:
                if item.date in in_scope and item.status == "scheduled":
                    selected[item.id] = item
        for item in self._targets(intent.target_ids, intent.target_dates, result.issues):
            selected[item.id] = item

        for item in sorted(selected.values(), key=lambda item: item.date):
            result.modifications.append(
                self._modification(item, "cancel", ItemDelta(status="cancelled"), intent.reasoning)
            )

    def _resolve_single(self, intent: RescheduleIntent | ModifyIntent, result: ResolvedChanges) -> None:
        item = self._find(item_id=intent.target_id, iso_date=intent.target_date)
        if item is None:
            result.issues.append(self._not_found(intent.target_id, intent.target_date))
            return
        if isinstance(intent, RescheduleIntent):
            after = ItemDelta(date=intent.new_date)
        else:
            after = ItemDelta.model_validate(intent.changes.model_dump(exclude_none=True))
        result.modifications.append(self._modification(item, intent.operation, after, intent.reasoning))

    def _resolve_swap(self, intent: SwapIntent, result: ResolvedChanges) -> None:
        first = self._find(iso_date=intent.first_date)
        second = self._find(iso_date=intent.second_date)
        if first is None:
            result.issues.append(self._not_found(None, intent.first_date))
        if second is None:
            result.issues.append(self._not_found(None, intent.second_date))
        if first is None or second is None:
            return
        result.modifications.append(self._modification(first, "swap", ItemDelta(date=second.date), intent.reasoning))
        result.modifications.append(self._modification(second, "swap", ItemDelta(date=first.date), intent.reasoning))

    def _resolve_add(self, intent: AddIntent, result: ResolvedChanges) -> None:
        new_id = str(uuid.uuid4())
        result.modifications.append(
            Modification(
                target=ModificationTarget(item_id=new_id, date=intent.date),
                operation="add",
                before=None,
                after=ItemDelta(
                    status="scheduled",
                    date=intent.date,
                    title=intent.title,
                    item_type=intent.item_type,
                    description=intent.description,
                    duration_minutes=intent.duration_minutes,
                    distance_km=intent.distance_km,
                    tags=tuple(intent.tags),
                ),
                reason=intent.reasoning,
            )
        )

    def _resolve_restore(self, intent: RestoreIntent, result: ResolvedChanges) -> None:
        for item in self._targets(intent.target_ids, intent.target_dates, result.issues):
            result.modifications.append(
                self._modification(item, "restore", ItemDelta(status="scheduled"), intent.reasoning)
            )

    def resolve_modifications(self, intent: DraftedIntent) -> ResolvedChanges:
        """Expand an intent into one Modification per affected item.

        Content is preserved unless the intent explicitly changes it.
        """
        result = ResolvedChanges()
        if isinstance(intent, CancelIntent):
            self._resolve_cancel(intent, result)
        elif isinstance(intent, RescheduleIntent | ModifyIntent):
            self._resolve_single(intent, result)
        elif isinstance(intent, SwapIntent):
            self._resolve_swap(intent, result)
        elif isinstance(intent, AddIntent):
            self._resolve_add(intent, result)
        elif isinstance(intent, RestoreIntent):
            self._resolve_restore(intent, result)
        elif not isinstance(intent, NoChangeIntent):
            raise TypeError(f"Unsupported intent: {type(intent).__name__}")
        return result

    def _warnings(self, modifications: Sequence[Modification], validation: ValidationResult | None) -> list[str]:
        warnings: list[str] = []
        today = self.resolver.today
        for modification in modifications:
            before = modification.before
            if before is None:
                continue
            where = f"{before.title} on {self.resolver.format_display(before.date)}"
            if before.status == "completed":
                warnings.append(f"{where} is already completed and cannot be changed")
            elif before.date < today and modification.operation != "cancel":
                warnings.append(f"{where} is in the past; changing it needs explicit confirmation")

        post = apply_modifications(self.snapshot.items, modifications)
        touched = {modification.target.item_id for modification in modifications}
        warnings.extend(issue.message for issue in find_adjacency_conflicts(post, touched))

        if validation is not None:
            warnings.extend(issue.message for issue in [*validation.errors, *validation.warnings])
        return list(dict.fromkeys(warnings))

    @staticmethod
    def _summary(modifications: Sequence[Modification]) -> PreviewSummary:
        by_operation = Counter(modification.operation for modification in modifications)
        by_status_change: Counter[str] = Counter()
        for modification in modifications:
            before_status = modification.before.status if modification.before else "new"
            after_status = modification.after.status or before_status
            if after_status != before_status:
                by_status_change[f"{before_status}->{after_status}"] += 1
        return PreviewSummary(
            total_items=len(modifications),
            by_operation=dict(by_operation),
            by_status_change=dict(by_status_change),
        )

    def build_preview_set(
        self,
        modifications: Sequence[Modification],
        *,
        now: datetime,
        validation: ValidationResult | None = None,
        proposal_id: str | None = None,
    ) -> PreviewSet:
        """Package a change set as a committable PreviewSet.

        Args:
            modifications: Non-empty, validated change set
            now: Creation instant (timezone-aware)
            validation: Validator outcome whose messages are surfaced as warnings
            proposal_id: Id of the conversational proposal, generated if missing

        Returns:
            PreviewSet expiring `preview_ttl_minutes` after `now`
        """
        if not modifications:
            raise ValueError("Cannot build a preview set without modifications")

        affected_ids = list(dict.fromkeys(modification.target.item_id for modification in modifications))
        dates = sorted(
            {modification.target.date for modification in modifications}
            | {modification.after.date for modification in modifications if modification.after.date}
        )
        today = self.resolver.today
        requires_confirmation = len(affected_ids) >= 2 or any(
            modification.operation == "cancel" and modification.target.date >= today for modification in modifications
        )

        return PreviewSet(
            preview_id=str(uuid.uuid4()),
            proposal_id=proposal_id or str(uuid.uuid4()),
            plan_id=self.snapshot.id,
            plan_version=self.snapshot.version,
            modifications=list(modifications),
            affected_item_ids=affected_ids,
            affected_date_range=DateRangeSummary(
                start=dates[0],
                end=dates[-1],
                display=self.resolver.format_display(dates[0])
                if dates[0] == dates[-1]
                else self.resolver.format_range(dates[0], dates[-1]),
            ),
            summary=self._summary(modifications),
            warnings=self._warnings(modifications, validation),
            requires_confirmation=requires_confirmation,
            preview_hash=compute_preview_hash(modifications, self.snapshot.id, self.snapshot.version),
            created_at=now,
            expires_at=now + timedelta(minutes=settings.preview_ttl_minutes),
        )
