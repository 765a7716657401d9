"""Tests for date phrase extraction and ambiguity tracking."""

from coachplan.dates.phrases import (
    extract_date_phrases,
    first_unresolved_ambiguous,
    has_ambiguous_date_reference,
)


def test_classifies_qualified_and_bare_phrases_in_order():
    phrases = extract_date_phrases("Cancel next Tuesday and move Friday")

    assert [(p.phrase, p.ambiguous) for p in phrases] == [("next Tuesday", False), ("Friday", True)]
    assert phrases[0].normalized_phrase == "next tuesday"
    assert phrases[1].normalized_phrase == "friday"
    assert phrases[0].span[0] < phrases[1].span[0]


def test_bare_weekday_inside_qualified_phrase_is_discarded():
    phrases = extract_date_phrases("skip next thurs please")

    assert len(phrases) == 1
    assert phrases[0].phrase == "next thurs"
    assert phrases[0].normalized_phrase == "next thursday"
    assert phrases[0].ambiguous is False


def test_possessive_qualified_phrase():
    phrases = extract_date_phrases("I missed last Friday's run")

    assert [p.normalized_phrase for p in phrases] == ["last friday"]
    assert phrases[0].ambiguous is False


def test_absolute_terms_and_ranges_are_qualified():
    message = "Cancel today, the rest of the week, next 2 weeks and 2026-03-01"
    phrases = extract_date_phrases(message)

    assert [p.normalized_phrase for p in phrases] == ["today", "rest of the week", "next 2 weeks", "2026-03-01"]
    assert not any(p.ambiguous for p in phrases)
    for phrase in phrases:
        start, end = phrase.span
        assert message[start:end] == phrase.phrase


def test_plural_and_abbreviated_bare_weekdays_are_ambiguous():
    phrases = extract_date_phrases("no running on Tuesdays or weds")

    assert [(p.normalized_phrase, p.ambiguous) for p in phrases] == [("tuesday", True), ("wednesday", True)]


def test_ordinary_words_are_not_weekdays():
    assert extract_date_phrases("thus I need a rest, monetary reasons") == []


def test_has_ambiguous_date_reference():
    assert has_ambiguous_date_reference("move my tues run") is True
    assert has_ambiguous_date_reference("skip tomorrow") is False
    assert has_ambiguous_date_reference("skip next Tuesday") is False


def test_first_unresolved_ambiguous_skips_resolved_phrases():
    message = "Move Tuesday to Thursday"

    first = first_unresolved_ambiguous(message)
    assert first.normalized_phrase == "tuesday"

    second = first_unresolved_ambiguous(message, {"tuesday": "2026-02-17"})
    assert second.normalized_phrase == "thursday"

    assert first_unresolved_ambiguous(message, {"tuesday": "2026-02-17", "thursday": "2026-02-19"}) is None


def test_resolution_keys_compare_by_normalized_phrase():
    resolved = {"Tues": "2026-02-17"}

    assert first_unresolved_ambiguous("cancel Tuesday's session", resolved) is None
    assert first_unresolved_ambiguous("cancel tuesdays", resolved) is None
