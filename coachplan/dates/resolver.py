"""Deterministic calendar-date resolution.

Single authority for "today" and for every piece of date arithmetic in the
change pipeline.

Invariants:
- Dates cross every boundary as plain `YYYY-MM-DD` strings.
- "today" is computed once per request from the schedule timezone and then
  injected; resolution logic never reads the wall clock.
- Arithmetic is anchored at 12:00 UTC of the given date so daylight-saving
  transitions and midnight rounding never move a whole-day offset.
- A bare weekday is always ambiguous. No distance heuristic is applied.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from coachplan.config.settings import settings

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

WEEKDAY_ABBREVIATIONS = {
    "mon": "monday",
    "tue": "tuesday",
    "tues": "tuesday",
    "wed": "wednesday",
    "thu": "thursday",
    "thur": "thursday",
    "thurs": "thursday",
    "fri": "friday",
    "sat": "saturday",
    "sun": "sunday",
    "mons": "monday",
    "weds": "wednesday",
    "fris": "friday",
    "sats": "saturday",
    "suns": "sunday",
}

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_WEEKDAY_GROUP = "(" + "|".join(WEEKDAYS) + ")"
_NEXT_WEEKDAY_RE = re.compile(rf"^next\s+{_WEEKDAY_GROUP}$")
_LAST_WEEKDAY_RE = re.compile(rf"^last\s+{_WEEKDAY_GROUP}$")
_THIS_WEEKDAY_RE = re.compile(rf"^this\s+{_WEEKDAY_GROUP}$")
_NEXT_N_RE = re.compile(r"^next\s+(\d+)\s+(day|days|week|weeks)$")

_MIDDAY = time(12, 0, tzinfo=timezone.utc)


class DateOption(BaseModel):
    """One candidate date offered to the user during clarification."""

    iso_date: str
    display_date: str
    label: str


class DateResolution(BaseModel):
    """Outcome of resolving a single relative day phrase.

    Exactly one of `iso_date` (resolved) or `is_ambiguous` (needs a
    clarification turn) is meaningful.
    """

    iso_date: str | None = None
    display_date: str | None = None
    is_ambiguous: bool = False
    question: str | None = None
    options: list[DateOption] = Field(default_factory=list)


class DateRange(BaseModel):
    """Inclusive calendar range resolved from a range phrase."""

    start: str
    end: str
    display: str
    day_count: int


def is_iso_date(value: object) -> bool:
    """True iff value is a real calendar date written as YYYY-MM-DD."""
    if not isinstance(value, str) or not _ISO_DATE_RE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _anchor(iso_date: str) -> datetime:
    if not is_iso_date(iso_date):
        raise ValueError(f"Not a calendar date: {iso_date!r}")
    return datetime.combine(date.fromisoformat(iso_date), _MIDDAY)


def add_days(iso_date: str, days: int) -> str:
    """Add whole days to an ISO date."""
    return (_anchor(iso_date) + timedelta(days=days)).date().isoformat()


def day_of_week(iso_date: str) -> int:
    """Weekday index of an ISO date, Monday=0 ... Sunday=6."""
    return _anchor(iso_date).weekday()


def day_name(iso_date: str) -> str:
    """Capitalised weekday name, e.g. "Tuesday"."""
    return WEEKDAYS[day_of_week(iso_date)].capitalize()


def days_between(start: str, end: str) -> int:
    """Signed whole-day distance from start to end."""
    return (_anchor(end) - _anchor(start)).days


def today_iso(tz_name: str | None = None, now: datetime | None = None) -> str:
    """Today's calendar date in the given IANA timezone.

    Converts the current instant into the zone rather than reading naive
    local time, so a server in UTC still answers "today" for a user in Paris.
    """
    zone = ZoneInfo(tz_name or settings.default_timezone)
    instant = now or datetime.now(timezone.utc)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(zone).date().isoformat()


def normalize_phrase(phrase: str) -> str:
    """Canonicalize a date phrase for matching and for clarification keys.

    Lower-cases, drops commas and apostrophes, expands weekday abbreviations
    and strips plural/possessive weekday endings ("Tues's" -> "tuesday").
    """
    normalized = phrase.lower().strip()
    normalized = re.sub(r"['’]s\b", "", normalized)
    normalized = re.sub(r"[',’]", "", normalized)
    normalized = re.sub(r"\s+", " ", normalized)

    for abbreviation, full in WEEKDAY_ABBREVIATIONS.items():
        normalized = re.sub(rf"\b{abbreviation}\b", full, normalized)

    for weekday in WEEKDAYS:
        normalized = re.sub(rf"\b{weekday}s\b", weekday, normalized)

    return normalized.strip()


def format_display(iso_date: str) -> str:
    """Short UK display form, e.g. "7 Feb 26". Output only, never parsed back."""
    anchored = _anchor(iso_date)
    return f"{anchored.day} {anchored.strftime('%b')} {anchored.strftime('%y')}"


class DateResolver:
    """Resolves relative date language against one injected reference date.

    Usage:
        resolver = DateResolver(reference_date="2026-02-11", timezone="Europe/Paris")
        resolver.resolve_relative_phrase("next Thursday").iso_date  # "2026-02-12"
    """

    def __init__(self, reference_date: str | None = None, timezone: str | None = None) -> None:
        self.timezone = timezone or settings.default_timezone
        if reference_date is not None and not is_iso_date(reference_date):
            raise ValueError(f"Reference date must be YYYY-MM-DD, got {reference_date!r}")
        self.today = reference_date or today_iso(self.timezone)

    def format_display(self, iso_date: str) -> str:
        return format_display(iso_date)

    def format_range(self, start: str, end: str) -> str:
        return f"{format_display(start)} to {format_display(end)}"

    def is_past(self, iso_date: str) -> bool:
        return iso_date < self.today

    def is_today(self, iso_date: str) -> bool:
        return iso_date == self.today

    def is_future(self, iso_date: str) -> bool:
        return iso_date > self.today

    def dates_between(self, start: str, end: str) -> list[str]:
        """Every ISO date from start to end inclusive (empty if end < start)."""
        return [add_days(start, offset) for offset in range(days_between(start, end) + 1)]

    def week_start(self, iso_date: str | None = None) -> str:
        """Monday of the Monday-Sunday week containing iso_date (default today)."""
        anchor = iso_date or self.today
        return add_days(anchor, -day_of_week(anchor))

    def _resolved(self, iso_date: str) -> DateResolution:
        return DateResolution(iso_date=iso_date, display_date=format_display(iso_date))

    def _next_occurrence(self, weekday: str) -> str:
        offset = (WEEKDAYS.index(weekday) - day_of_week(self.today)) % 7
        return add_days(self.today, offset or 7)

    def _last_occurrence(self, weekday: str) -> str:
        offset = (day_of_week(self.today) - WEEKDAYS.index(weekday)) % 7
        return add_days(self.today, -(offset or 7))

    def resolve_relative_phrase(self, phrase: str) -> DateResolution:
        """Resolve one day phrase to a date, or to an ambiguity with options.

        Rules:
        - today / tomorrow / yesterday -> offset 0 / +1 / -1
        - next <weekday> -> nearest strictly-future occurrence
        - last <weekday> -> nearest strictly-past occurrence
        - this <weekday> -> occurrence inside the current Monday-Sunday week
        - bare <weekday> -> ambiguous, options [most recent past, nearest future]
        - YYYY-MM-DD -> unchanged
        - anything else -> ambiguous without options
        """
        stripped = phrase.strip()
        if is_iso_date(stripped):
            return self._resolved(stripped)

        normalized = normalize_phrase(phrase)

        if normalized == "today":
            return self._resolved(self.today)
        if normalized == "tomorrow":
            return self._resolved(add_days(self.today, 1))
        if normalized == "yesterday":
            return self._resolved(add_days(self.today, -1))

        match = _NEXT_WEEKDAY_RE.match(normalized)
        if match:
            return self._resolved(self._next_occurrence(match.group(1)))

        match = _LAST_WEEKDAY_RE.match(normalized)
        if match:
            return self._resolved(self._last_occurrence(match.group(1)))

        match = _THIS_WEEKDAY_RE.match(normalized)
        if match:
            return self._resolved(add_days(self.week_start(), WEEKDAYS.index(match.group(1))))

        if normalized in WEEKDAYS:
            past = self._last_occurrence(normalized)
            future = self._next_occurrence(normalized)
            name = normalized.capitalize()
            return DateResolution(
                is_ambiguous=True,
                question=f"Which {name} did you mean?",
                options=[
                    DateOption(
                        iso_date=past,
                        display_date=format_display(past),
                        label=f"Last {name} ({format_display(past)})",
                    ),
                    DateOption(
                        iso_date=future,
                        display_date=format_display(future),
                        label=f"Next {name} ({format_display(future)})",
                    ),
                ],
            )

        return DateResolution(
            is_ambiguous=True,
            question='Could not understand the date. Please be more specific (e.g., "next Tuesday", "last Friday", "tomorrow").',
        )

    def _range(self, start: str, end: str) -> DateRange:
        return DateRange(
            start=start,
            end=end,
            display=self.format_range(start, end),
            day_count=days_between(start, end) + 1,
        )

    def resolve_relative_range(self, phrase: str) -> DateRange | None:
        """Resolve a range phrase to an inclusive date range, or None.

        Supported: "this week", "next week", "next N days", "next N weeks",
        "this weekend", "next weekend", "rest of the week".
        "next N ..." ranges start tomorrow.
        """
        normalized = normalize_phrase(phrase)
        monday = self.week_start()

        match = _NEXT_N_RE.match(normalized)
        if match:
            count = int(match.group(1))
            if count <= 0:
                return None
            days = count * 7 if match.group(2).startswith("week") else count
            return self._range(add_days(self.today, 1), add_days(self.today, days))

        if normalized == "this week":
            return self._range(monday, add_days(monday, 6))
        if normalized == "next week":
            next_monday = add_days(monday, 7)
            return self._range(next_monday, add_days(next_monday, 6))
        if normalized == "this weekend":
            return self._range(add_days(monday, 5), add_days(monday, 6))
        if normalized == "next weekend":
            return self._range(add_days(monday, 12), add_days(monday, 13))
        if normalized in {"rest of the week", "rest of week"}:
            sunday = add_days(monday, 6)
            if self.today >= sunday:
                return None
            return self._range(add_days(self.today, 1), sunday)

        return None
