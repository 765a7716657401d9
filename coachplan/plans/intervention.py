"""Coaching intervention gate for destructive multi-item cancellations.

State machine:
    NO_INTERVENTION -> proceed to preview
    PENDING         -> stop this turn, ask the user to pick an alternative
    RESOLVED        -> chosen alternative rewritten into operations, which
                       re-enter validation

Only upcoming `cancel` operations are evaluated. Thresholds are fixed:
2-3 simultaneous cancellations, or a cancellation range of 7+ days.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field

from coachplan.coach.errors import InterventionResolutionError
from coachplan.dates.resolver import add_days, day_of_week, days_between, format_display
from coachplan.plans.types import ItemDelta, ItemSnapshot, Modification

MULTIPLE_CANCELLATIONS_MIN = 2
MULTIPLE_CANCELLATIONS_MAX = 3
LONG_RANGE_DAYS = 7

EASY_RUN_MINUTES = 30
REDUCED_INTENSITY_FACTOR = 0.6

ReplyChoice = Literal["A", "B", "proceed", "unknown"]


class InterventionStatus(StrEnum):
    NO_INTERVENTION = "NO_INTERVENTION"
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


class InterventionReason(StrEnum):
    MULTIPLE_CANCELLATIONS = "MULTIPLE_CANCELLATIONS"
    LONG_RANGE = "LONG_RANGE"


class Alternative(BaseModel):
    """One option offered to the user. `key` is what they can reply with."""

    key: Literal["A", "B", "C"]
    action: str
    label: str


class InterventionState(BaseModel):
    status: InterventionStatus = InterventionStatus.NO_INTERVENTION
    requires_intervention: bool = False
    reason: InterventionReason | None = None
    questions: list[str] = Field(default_factory=list)
    alternatives: list[Alternative] = Field(default_factory=list)
    resolved: bool = False
    choice: ReplyChoice | None = None


class InterventionResolution(BaseModel):
    state: InterventionState
    modifications: list[Modification]


MULTIPLE_CANCELLATION_ALTERNATIVES = [
    Alternative(key="A", action="convert_to_easy", label="Convert them to easy runs instead"),
    Alternative(key="B", action="reschedule_within_week", label="Move them to free days in the same week"),
    Alternative(key="C", action="proceed", label="Cancel them as planned"),
]

LONG_RANGE_ALTERNATIVES = [
    Alternative(key="A", action="recovery_week", label="Turn this period into a recovery week"),
    Alternative(key="B", action="reduced_intensity", label="Keep the sessions at reduced intensity"),
    Alternative(key="C", action="proceed", label="Cancel them as planned"),
]

_ACTION_KEYWORDS = {
    "convert_to_easy": ("easy", "convert"),
    "reschedule_within_week": ("reschedule", "move", "another day", "other days"),
    "recovery_week": ("recovery",),
    "reduced_intensity": ("reduce", "reduced", "lighter", "intensity"),
}

_PROCEED_KEYWORDS = ("proceed", "as planned", "yes", "continue", "go ahead", "cancel anyway", "cancel them")

_OPTION_ONLY_RE = re.compile(r"^(?:option\s+|choice\s+)?\(?([abc])\)?$")
_OPTION_ANYWHERE_RE = re.compile(r"\b(?:option|choice)\s+([abc])\b")


def _upcoming_cancellations(modifications: Sequence[Modification], today: str) -> list[Modification]:
    return [m for m in modifications if m.operation == "cancel" and m.target.date >= today]


def _describe(modifications: Sequence[Modification]) -> str:
    parts = []
    for modification in modifications:
        title = modification.before.title if modification.before else "session"
        parts.append(f"{title} on {format_display(modification.target.date)}")
    return ", ".join(parts)


def evaluate(
    modifications: Sequence[Modification],
    *,
    today: str,
    scope_days: int | None = None,
) -> InterventionState:
    """Decide whether a change set must stop for a coaching intervention.

    Args:
        modifications: Validated change set
        today: Reference date (YYYY-MM-DD)
        scope_days: Day count of the requested scope, when the user asked
            for a range ("next 2 weeks"); widens the measured span

    Returns:
        InterventionState, PENDING with alternatives or NO_INTERVENTION
    """
    cancels = _upcoming_cancellations(modifications, today)
    count = len(cancels)
    if count <= 1:
        return InterventionState()

    if MULTIPLE_CANCELLATIONS_MIN <= count <= MULTIPLE_CANCELLATIONS_MAX:
        return InterventionState(
            status=InterventionStatus.PENDING,
            requires_intervention=True,
            reason=InterventionReason.MULTIPLE_CANCELLATIONS,
            questions=[
                f"You're about to cancel {count} sessions ({_describe(cancels)}). "
                "Missing several sessions at once can set your training back. What would you like to do?"
            ],
            alternatives=list(MULTIPLE_CANCELLATION_ALTERNATIVES),
        )

    dates = sorted(m.target.date for m in cancels)
    span = max(scope_days or 0, days_between(dates[0], dates[-1]) + 1)
    if span >= LONG_RANGE_DAYS:
        return InterventionState(
            status=InterventionStatus.PENDING,
            requires_intervention=True,
            reason=InterventionReason.LONG_RANGE,
            questions=[
                f"You're about to cancel {count} sessions across {span} days "
                f"({format_display(dates[0])} to {format_display(dates[-1])}). "
                "A long break loses fitness quickly. What would you like to do?"
            ],
            alternatives=list(LONG_RANGE_ALTERNATIVES),
        )

    return InterventionState()


def _has_keyword(text: str, keyword: str) -> bool:
    return re.search(rf"\b{re.escape(keyword)}\b", text) is not None


def classify_reply(text: str, state: InterventionState | None = None) -> ReplyChoice:
    """Classify a free-text reply to an intervention by keyword.

    An explicit option letter wins. Otherwise alternative keywords are tried,
    then agreement keywords. Anything matching nothing, or more than one
    alternative, is "unknown".
    """
    normalized = re.sub(r"[^\w\s-]", " ", text.lower())
    normalized = re.sub(r"\s+", " ", normalized).strip()
    if not normalized:
        return "unknown"

    match = _OPTION_ONLY_RE.match(normalized) or _OPTION_ANYWHERE_RE.search(normalized)
    if match:
        letter = match.group(1).upper()
        return "proceed" if letter == "C" else letter

    alternatives = state.alternatives if state and state.alternatives else [
        *MULTIPLE_CANCELLATION_ALTERNATIVES,
        *LONG_RANGE_ALTERNATIVES,
    ]
    matched = {
        alternative.key
        for alternative in alternatives
        if any(_has_keyword(normalized, keyword) for keyword in _ACTION_KEYWORDS.get(alternative.action, ()))
    }
    if len(matched) == 1:
        return matched.pop()
    if len(matched) > 1:
        return "unknown"

    if any(_has_keyword(normalized, keyword) for keyword in _PROCEED_KEYWORDS):
        return "proceed"
    return "unknown"


def _easy_delta(before: ItemSnapshot, title: str, tag: str, description: str) -> ItemDelta:
    duration = EASY_RUN_MINUTES if before.duration_minutes is None else min(before.duration_minutes, EASY_RUN_MINUTES)
    return ItemDelta(title=title, item_type="run", description=description, duration_minutes=duration, tags=(tag,))


def _reduced_delta(before: ItemSnapshot) -> ItemDelta:
    return ItemDelta(
        title="Reduced-Intensity Run",
        item_type="run",
        description=f"Reduced-intensity version of {before.title}",
        duration_minutes=round(before.duration_minutes * REDUCED_INTENSITY_FACTOR) if before.duration_minutes else None,
        distance_km=round(before.distance_km * REDUCED_INTENSITY_FACTOR, 1) if before.distance_km else None,
        tags=("easy",),
    )


def _rewrite_as_modify(modification: Modification, after: ItemDelta, reason: str) -> Modification:
    return Modification(
        target=modification.target,
        operation="modify",
        before=modification.before,
        after=after,
        reason=reason,
    )


def _free_day_in_week(
    original: str,
    *,
    today: str,
    occupied: set[str],
) -> str | None:
    monday = add_days(original, -day_of_week(original))
    candidates = [
        candidate
        for candidate in (add_days(monday, offset) for offset in range(7))
        if candidate >= today and candidate not in occupied
    ]
    if not candidates:
        return None
    # Nearest first; on a tie prefer the later day.
    return min(candidates, key=lambda candidate: (abs(days_between(original, candidate)), -days_between(original, candidate)))


def _reschedule_within_week(
    cancels: Sequence[Modification],
    items: Sequence[ItemSnapshot],
    today: str,
) -> list[Modification]:
    occupied = {item.date for item in items}
    rewritten = []
    for modification in cancels:
        new_date = _free_day_in_week(modification.target.date, today=today, occupied=occupied)
        if new_date is None:
            raise InterventionResolutionError(
                code="no_free_day",
                message=f"No free day left in the week of {format_display(modification.target.date)} to move this session to",
            )
        occupied.add(new_date)
        rewritten.append(
            Modification(
                target=modification.target,
                operation="reschedule",
                before=modification.before,
                after=ItemDelta(date=new_date),
                reason="Moved within the week instead of cancelling",
            )
        )
    return rewritten


def resolve(
    state: InterventionState,
    choice: ReplyChoice,
    modifications: Sequence[Modification],
    items: Sequence[ItemSnapshot],
    *,
    today: str,
) -> InterventionResolution:
    """Apply the user's choice to a PENDING intervention.

    "proceed" carries the original operations through unchanged. A or B
    rewrites every upcoming cancellation into the chosen alternative; other
    modifications are kept as they were.

    Raises:
        InterventionResolutionError: choice is "unknown", or the alternative
            cannot be applied to this schedule
    """
    if choice == "unknown":
        raise InterventionResolutionError(code="unknown_choice", message="Reply did not pick an alternative")

    resolved_state = state.model_copy(update={"status": InterventionStatus.RESOLVED, "resolved": True, "choice": choice})
    if choice == "proceed":
        return InterventionResolution(state=resolved_state, modifications=list(modifications))

    action = next((alternative.action for alternative in state.alternatives if alternative.key == choice), None)
    cancels = _upcoming_cancellations(modifications, today)
    cancel_ids = {id(m) for m in cancels}
    untouched = [m for m in modifications if id(m) not in cancel_ids]

    if action == "convert_to_easy":
        rewritten = [
            _rewrite_as_modify(
                m,
                _easy_delta(m.before, "Easy Run", "easy", "Easy aerobic run at conversational pace"),
                "Converted to an easy run instead of cancelling",
            )
            for m in cancels
        ]
    elif action == "recovery_week":
        rewritten = [
            _rewrite_as_modify(
                m,
                _easy_delta(m.before, "Recovery Run", "recovery", "Short recovery run, very easy effort"),
                "Recovery week instead of cancelling",
            )
            for m in cancels
        ]
    elif action == "reduced_intensity":
        rewritten = [
            _rewrite_as_modify(m, _reduced_delta(m.before), "Reduced intensity instead of cancelling") for m in cancels
        ]
    elif action == "reschedule_within_week":
        rewritten = _reschedule_within_week(cancels, items, today)
    else:
        raise InterventionResolutionError(code="unknown_choice", message=f"Option {choice} is not available here")

    return InterventionResolution(state=resolved_state, modifications=[*untouched, *rewritten])
