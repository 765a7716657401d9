"""Drafted change intents.

The intent drafter is untrusted. Its output is parsed into one of these
variants, discriminated by `operation`; anything that does not match a
known variant is rejected, never coerced.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from coachplan.dates.resolver import is_iso_date


def _check_iso_date(value: str) -> str:
    if not is_iso_date(value):
        raise ValueError(f"expected a YYYY-MM-DD calendar date, got {value!r}")
    return value


IsoDate = Annotated[str, AfterValidator(_check_iso_date)]


class _IntentBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    requires_clarification: bool = False
    clarification_question: str | None = None
    reasoning: str | None = None


class _SingleTarget(_IntentBase):
    target_id: str | None = None
    target_date: IsoDate | None = None

    @model_validator(mode="after")
    def _require_target(self):
        if self.target_id is None and self.target_date is None:
            raise ValueError("target_id or target_date is required")
        return self


class ContentChange(BaseModel):
    """Explicit content edits. Fields left as None keep their current value."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    item_type: str | None = None
    description: str | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    distance_km: float | None = Field(default=None, ge=0)
    tags: list[str] | None = None


class CancelIntent(_IntentBase):
    """Cancel by scope phrase ("next week", "today") or by explicit targets."""

    operation: Literal["cancel"]
    scope: str | None = None
    target_dates: list[IsoDate] = Field(default_factory=list)
    target_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _require_selection(self):
        if not (self.scope or self.target_dates or self.target_ids):
            raise ValueError("cancel needs a scope, target_dates or target_ids")
        return self


class RescheduleIntent(_SingleTarget):
    operation: Literal["reschedule"]
    new_date: IsoDate


class ModifyIntent(_SingleTarget):
    operation: Literal["modify"]
    changes: ContentChange


class SwapIntent(_IntentBase):
    operation: Literal["swap"]
    first_date: IsoDate
    second_date: IsoDate

    @model_validator(mode="after")
    def _distinct_dates(self):
        if self.first_date == self.second_date:
            raise ValueError("swap needs two different dates")
        return self


class AddIntent(_IntentBase):
    operation: Literal["add"]
    date: IsoDate
    title: str = Field(min_length=1)
    item_type: str = "run"
    description: str | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    distance_km: float | None = Field(default=None, ge=0)
    tags: list[str] = Field(default_factory=list)


class RestoreIntent(_IntentBase):
    operation: Literal["restore"]
    target_dates: list[IsoDate] = Field(default_factory=list)
    target_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _require_selection(self):
        if not (self.target_dates or self.target_ids):
            raise ValueError("restore needs target_dates or target_ids")
        return self


class NoChangeIntent(_IntentBase):
    """The message asks nothing of the schedule (question, chit-chat)."""

    operation: Literal["none"]
    message: str | None = None


DraftedIntent = Annotated[
    CancelIntent | RescheduleIntent | ModifyIntent | SwapIntent | AddIntent | RestoreIntent | NoChangeIntent,
    Field(discriminator="operation"),
]
