"""Types for schedule change sets.

A change set is a list of Modifications, each targeting exactly one item by
id and date, carrying a `before` snapshot of the canonical item and an
`after` delta holding only the fields that change.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from coachplan.dates.resolver import day_name

ItemStatus = Literal["scheduled", "cancelled", "completed"]
Operation = Literal["cancel", "reschedule", "modify", "swap", "add", "restore"]

HARD_KEYWORDS = ("interval", "tempo", "threshold", "race pace", "race-pace")
LONG_RUN_KEYWORDS = ("long run", "long-run", "long_run")


class ItemSnapshot(BaseModel):
    """Immutable copy of one scheduled item as seen at a point in time."""

    model_config = ConfigDict(frozen=True)

    id: str
    date: str
    title: str
    status: ItemStatus = "scheduled"
    item_type: str = "run"
    description: str | None = None
    duration_minutes: int | None = None
    distance_km: float | None = None
    tags: tuple[str, ...] = ()

    @property
    def weekday(self) -> str:
        return day_name(self.date)

    def _text(self) -> str:
        return " ".join([self.title, self.item_type, *self.tags]).lower()

    @property
    def is_hard(self) -> bool:
        """Interval, tempo, threshold or race-pace session."""
        text = self._text()
        return "hard" in self.tags or any(keyword in text for keyword in HARD_KEYWORDS)

    @property
    def is_long_run(self) -> bool:
        text = self._text()
        return any(keyword in text for keyword in LONG_RUN_KEYWORDS)


class ItemDelta(BaseModel):
    """Fields an operation sets on its target. None means unchanged."""

    status: ItemStatus | None = None
    date: str | None = None
    title: str | None = None
    item_type: str | None = None
    description: str | None = None
    duration_minutes: int | None = None
    distance_km: float | None = None
    tags: tuple[str, ...] | None = None

    def changes(self) -> dict:
        return self.model_dump(exclude_none=True, mode="json")


class ModificationTarget(BaseModel):
    item_id: str
    date: str


class Modification(BaseModel):
    """One proposed change to one item.

    For `add`, `before` is None and `target.item_id` is the id the new item
    will be created with.
    """

    target: ModificationTarget
    operation: Operation
    before: ItemSnapshot | None = None
    after: ItemDelta = Field(default_factory=ItemDelta)
    reason: str | None = None

    def identity(self) -> str:
        """Stable string identity used for hashing a change set."""
        return f"{self.operation}:{self.target.item_id}:{self.target.date}:{self.after.model_dump_json(exclude_none=True)}"


class ValidationIssue(BaseModel):
    """A single invariant violation or warning with a stable code."""

    code: str
    message: str
    item_id: str | None = None
    date: str | None = None


class ValidationResult(BaseModel):
    """Outcome of checking a change set against the safety invariants.

    Attributes:
        valid: No errors
        errors: Violations that always block
        warnings: Soft issues; those with `requires_confirmation` block until
            the draft is re-submitted with explicit confirmation
        requires_confirmation: True when unconfirmed blocking warnings exist
    """

    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    requires_confirmation: bool = False

    @property
    def can_proceed(self) -> bool:
        return self.valid and not self.requires_confirmation


class DateRangeSummary(BaseModel):
    start: str
    end: str
    display: str


class PreviewSummary(BaseModel):
    total_items: int
    by_operation: dict[str, int] = Field(default_factory=dict)
    by_status_change: dict[str, int] = Field(default_factory=dict)


class PreviewSet(BaseModel):
    """A committable, hashed, time-boxed change set.

    Single-use: deleted by the commit that applies it.
    """

    preview_id: str
    proposal_id: str
    plan_id: str
    plan_version: int
    modifications: list[Modification]
    affected_item_ids: list[str]
    affected_date_range: DateRangeSummary
    summary: PreviewSummary
    warnings: list[str] = Field(default_factory=list)
    requires_confirmation: bool
    preview_hash: str
    created_at: datetime
    expires_at: datetime

    @property
    def modification_item_ids(self) -> list[str]:
        """Target ids of the hashed modifications, in first-seen order."""
        return list(dict.fromkeys(modification.target.item_id for modification in self.modifications))


class ScheduleSnapshot(BaseModel):
    """Read-only view of a schedule and its items at one version."""

    id: str
    version: int
    timezone: str
    items: list[ItemSnapshot]

    def item_by_id(self, item_id: str) -> ItemSnapshot | None:
        return next((item for item in self.items if item.id == item_id), None)

    def item_on(self, iso_date: str) -> ItemSnapshot | None:
        return next((item for item in self.items if item.date == iso_date), None)
