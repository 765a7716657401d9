"""User-facing text for pipeline responses.

Presentation only: dates are rendered with the short UK display form and
nothing produced here is ever parsed back.
"""

from __future__ import annotations

from coachplan.dates.resolver import day_name, format_display
from coachplan.plans.intervention import InterventionState
from coachplan.plans.types import Modification, PreviewSet, ValidationResult


def _when(iso_date: str) -> str:
    return f"{day_name(iso_date)} {format_display(iso_date)}"


def _field_changes(modification: Modification) -> str:
    changes = modification.after.changes()
    parts = []
    if "title" in changes:
        parts.append(f'now "{changes["title"]}"')
    if "duration_minutes" in changes:
        parts.append(f"{changes['duration_minutes']} min")
    if "distance_km" in changes:
        parts.append(f"{changes['distance_km']} km")
    if "description" in changes and not parts:
        parts.append("new description")
    return ", ".join(parts)


def describe_modification(modification: Modification) -> str:
    """One bullet line, e.g. '- Tuesday 10 Feb 26: Cancel "Tempo Run"'."""
    title = modification.before.title if modification.before else modification.after.title
    line = f"- {_when(modification.target.date)}: "
    operation = modification.operation
    if operation == "cancel":
        return line + f'Cancel "{title}"'
    if operation in {"reschedule", "swap"}:
        return line + f'Move "{title}" to {_when(modification.after.date)}'
    if operation == "modify":
        detail = _field_changes(modification)
        return line + f'Update "{title}"' + (f" ({detail})" if detail else "")
    if operation == "add":
        return line + f'Add "{title}"'
    return line + f'Restore "{title}"'


def preview_message(preview: PreviewSet) -> str:
    count = len(preview.affected_item_ids)
    lines = [f"Here's what will change ({count} workout{'s' if count != 1 else ''}):"]
    lines.extend(describe_modification(modification) for modification in preview.modifications)
    if preview.warnings:
        lines.append("")
        lines.append("Heads up:")
        lines.extend(f"- {warning}" for warning in preview.warnings)
    lines.append("")
    lines.append("Confirm to apply these changes." if preview.requires_confirmation else "Apply these changes?")
    return "\n".join(lines)


def validation_failure_message(result: ValidationResult) -> str:
    lines = ["I can't make that change:"]
    lines.extend(f"- {issue.message}" for issue in result.errors)
    return "\n".join(lines)


def confirmation_message(result: ValidationResult) -> str:
    lines = ["This touches workouts in the past:"]
    lines.extend(f"- {issue.message}" for issue in result.warnings)
    lines.append("Send the request again with confirmation if you really want to change them.")
    return "\n".join(lines)


def intervention_message(state: InterventionState) -> str:
    lines = list(state.questions)
    lines.extend(f"{alternative.key}) {alternative.label}" for alternative in state.alternatives)
    lines.append("Reply with A, B or C.")
    return "\n".join(lines)
