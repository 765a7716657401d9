"""Date phrase extraction from free-text chat messages.

Finds every date-referring substring in a message and classifies it:
- qualified: carries a disambiguating qualifier ("next tue", "last Friday's")
  or is absolute ("tomorrow", "this week", "2026-03-01")
- ambiguous: a bare weekday ("Tuesday", "thurs", "Sundays")

A bare weekday inside the span of a qualified phrase is not reported on its own.
"""

from __future__ import annotations

import re
from collections.abc import Mapping

from pydantic import BaseModel

from coachplan.dates.resolver import normalize_phrase

_WEEKDAY_FULL = r"(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday)"
_WEEKDAY_ABBREV = r"(?:thurs|thur|thu|tues|tue|mons|mon|weds|wed|fris|fri|sats|sat|suns|sun)"
_POSSESSIVE = r"(?:'s|’s)?"
# Plural "s" only after full names: "thus" is not a weekday.
_WEEKDAY = rf"(?:{_WEEKDAY_FULL}s?|{_WEEKDAY_ABBREV}){_POSSESSIVE}"

QUALIFIED_PATTERNS = (
    re.compile(rf"\b(?:next|last|this)\s+{_WEEKDAY}\b", re.IGNORECASE),
    re.compile(r"\b(?:today|tomorrow|yesterday)\b", re.IGNORECASE),
    re.compile(r"\bnext\s+\d+\s+(?:days?|weeks?)\b", re.IGNORECASE),
    re.compile(r"\b(?:this|next)\s+(?:weekend|week)\b", re.IGNORECASE),
    re.compile(r"\brest\s+of\s+(?:the\s+)?week\b", re.IGNORECASE),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
)

AMBIGUOUS_PATTERN = re.compile(rf"\b{_WEEKDAY}\b", re.IGNORECASE)


class DatePhrase(BaseModel):
    """A date reference found in a message.

    Attributes:
        phrase: Raw text as typed
        normalized_phrase: Canonical form, used as the clarification key
        span: (start, end) character offsets in the message
        ambiguous: True for bare weekdays
    """

    phrase: str
    normalized_phrase: str
    span: tuple[int, int]
    ambiguous: bool


def _overlaps(span: tuple[int, int], other: tuple[int, int]) -> bool:
    return span[0] < other[1] and other[0] < span[1]


def extract_date_phrases(message: str) -> list[DatePhrase]:
    """Extract all date phrases from a message, ordered by position."""
    qualified: list[DatePhrase] = []
    for pattern in QUALIFIED_PATTERNS:
        for match in pattern.finditer(message):
            span = match.span()
            if any(_overlaps(span, existing.span) for existing in qualified):
                continue
            qualified.append(
                DatePhrase(
                    phrase=match.group(0),
                    normalized_phrase=normalize_phrase(match.group(0)),
                    span=span,
                    ambiguous=False,
                )
            )

    phrases = list(qualified)
    for match in AMBIGUOUS_PATTERN.finditer(message):
        span = match.span()
        if any(_overlaps(span, existing.span) for existing in qualified):
            continue
        phrases.append(
            DatePhrase(
                phrase=match.group(0),
                normalized_phrase=normalize_phrase(match.group(0)),
                span=span,
                ambiguous=True,
            )
        )

    return sorted(phrases, key=lambda phrase: phrase.span[0])


def has_ambiguous_date_reference(message: str) -> bool:
    return any(phrase.ambiguous for phrase in extract_date_phrases(message))


def first_unresolved_ambiguous(message: str, resolved_dates: Mapping[str, str] | None = None) -> DatePhrase | None:
    """First ambiguous phrase whose normalized form has no resolution yet.

    Resolutions are keyed by normalized phrase, so "Tuesday", "tues" and
    "Tuesday's" are all answered by a single clarification.
    """
    resolved = {normalize_phrase(key) for key in (resolved_dates or {})}
    for phrase in extract_date_phrases(message):
        if phrase.ambiguous and phrase.normalized_phrase not in resolved:
            return phrase
    return None
