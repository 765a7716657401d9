"""Tests for the coaching intervention gate."""

import pytest

from coachplan.coach.errors import InterventionResolutionError
from coachplan.plans.intervention import (
    InterventionReason,
    InterventionStatus,
    classify_reply,
    evaluate,
    resolve,
)
from coachplan.plans.types import ItemDelta, ItemSnapshot, Modification, ModificationTarget


def _cancel(item):
    return Modification(
        target=ModificationTarget(item_id=item.id, date=item.date),
        operation="cancel",
        before=item,
        after=ItemDelta(status="cancelled"),
    )


def _items(sample_items, *item_ids):
    by_id = {item.id: item for item in sample_items}
    return [by_id[item_id] for item_id in item_ids]


def test_single_future_cancellation_never_intervenes(sample_items, today):
    (item,) = _items(sample_items, "item-0213")

    state = evaluate([_cancel(item)], today=today, scope_days=14)

    assert state.status == InterventionStatus.NO_INTERVENTION
    assert state.requires_intervention is False


@pytest.mark.parametrize(
    "item_ids",
    [
        ("item-0212", "item-0213"),
        ("item-0212", "item-0213", "item-0214"),
        ("item-0213", "item-0301", "item-0302"),
    ],
)
def test_two_or_three_cancellations_trigger_multiple(sample_items, today, item_ids):
    mods = [_cancel(item) for item in _items(sample_items, *item_ids)]

    state = evaluate(mods, today=today)

    assert state.status == InterventionStatus.PENDING
    assert state.reason == InterventionReason.MULTIPLE_CANCELLATIONS
    assert [alternative.action for alternative in state.alternatives] == [
        "convert_to_easy",
        "reschedule_within_week",
        "proceed",
    ]
    assert state.questions


def test_long_range_set_triggers_long_range(sample_items, today):
    mods = [_cancel(item) for item in _items(sample_items, "item-0212", "item-0213", "item-0214", "item-0216", "item-0219")]

    state = evaluate(mods, today=today)

    assert state.reason == InterventionReason.LONG_RANGE
    assert [alternative.action for alternative in state.alternatives] == [
        "recovery_week",
        "reduced_intensity",
        "proceed",
    ]


def test_many_cancellations_within_a_few_days_do_not_intervene(today):
    items = [
        ItemSnapshot(id=f"item-{day}", date=f"2026-02-{day}", title="Easy Run")
        for day in (12, 13, 14, 15)
    ]

    state = evaluate([_cancel(item) for item in items], today=today)

    assert state.status == InterventionStatus.NO_INTERVENTION


def test_requested_scope_widens_the_span(today):
    items = [
        ItemSnapshot(id=f"item-{day}", date=f"2026-02-{day}", title="Easy Run")
        for day in (12, 13, 14, 15)
    ]

    state = evaluate([_cancel(item) for item in items], today=today, scope_days=7)

    assert state.reason == InterventionReason.LONG_RANGE


def test_past_cancellations_and_other_operations_are_ignored(sample_items, today):
    past, future = _items(sample_items, "item-0210", "item-0213")
    reschedule = Modification(
        target=ModificationTarget(item_id="item-0216", date="2026-02-16"),
        operation="reschedule",
        before=_items(sample_items, "item-0216")[0],
        after=ItemDelta(date="2026-02-18"),
    )

    state = evaluate([_cancel(past), _cancel(future), reschedule], today=today)

    assert state.status == InterventionStatus.NO_INTERVENTION


@pytest.mark.parametrize(
    ("reply", "expected"),
    [
        ("option c", "proceed"),
        ("C", "proceed"),
        ("Yes, go ahead", "proceed"),
        ("cancel them as planned", "proceed"),
        ("A", "A"),
        ("option B please", "B"),
        ("make them easy runs", "A"),
        ("move them to other days", "B"),
        ("hmm not sure", "unknown"),
        ("", "unknown"),
        ("make them easy or move them", "unknown"),
    ],
)
def test_classify_reply(reply, expected):
    assert classify_reply(reply) == expected


def test_classify_reply_uses_offered_alternatives(sample_items, today):
    mods = [_cancel(item) for item in _items(sample_items, "item-0212", "item-0213", "item-0214", "item-0216", "item-0219")]
    state = evaluate(mods, today=today)

    assert classify_reply("turn it into a recovery week", state) == "A"
    assert classify_reply("reduced intensity sounds good", state) == "B"


def test_proceed_keeps_operations_unchanged(sample_items, today):
    mods = [_cancel(item) for item in _items(sample_items, "item-0212", "item-0213", "item-0214")]
    state = evaluate(mods, today=today)

    resolution = resolve(state, "proceed", mods, sample_items, today=today)

    assert resolution.modifications == mods
    assert resolution.state.status == InterventionStatus.RESOLVED
    assert resolution.state.resolved is True


def test_convert_to_easy_rewrites_cancels(sample_items, today):
    mods = [_cancel(item) for item in _items(sample_items, "item-0212", "item-0213")]
    state = evaluate(mods, today=today)

    resolution = resolve(state, "A", mods, sample_items, today=today)

    assert [m.operation for m in resolution.modifications] == ["modify", "modify"]
    interval = resolution.modifications[0]
    assert interval.target.item_id == "item-0212"
    assert interval.after.title == "Easy Run"
    assert interval.after.duration_minutes == 30
    assert interval.after.status is None


def test_reschedule_within_week_uses_free_days(sample_items, today):
    mods = [_cancel(item) for item in _items(sample_items, "item-0212", "item-0213")]
    state = evaluate(mods, today=today)

    resolution = resolve(state, "B", mods, sample_items, today=today)

    moved = {m.target.item_id: m.after.date for m in resolution.modifications}
    assert all(m.operation == "reschedule" for m in resolution.modifications)
    # Only Wed 11 and Sun 15 are free in that week.
    assert moved == {"item-0212": "2026-02-11", "item-0213": "2026-02-15"}


def test_reschedule_within_week_fails_without_free_day(sample_items, today):
    mods = [_cancel(item) for item in _items(sample_items, "item-0212", "item-0213", "item-0214")]
    state = evaluate(mods, today=today)

    with pytest.raises(InterventionResolutionError) as exc_info:
        resolve(state, "B", mods, sample_items, today=today)

    assert exc_info.value.code == "no_free_day"


def test_reduced_intensity_scales_sessions(sample_items, today):
    mods = [_cancel(item) for item in _items(sample_items, "item-0212", "item-0213", "item-0214", "item-0216", "item-0219")]
    state = evaluate(mods, today=today)

    resolution = resolve(state, "B", mods, sample_items, today=today)

    long_run = next(m for m in resolution.modifications if m.target.item_id == "item-0214")
    assert long_run.operation == "modify"
    assert long_run.after.duration_minutes == 60
    assert long_run.after.distance_km == 10.8


def test_unknown_choice_cannot_be_resolved(sample_items, today):
    mods = [_cancel(item) for item in _items(sample_items, "item-0212", "item-0213")]
    state = evaluate(mods, today=today)

    with pytest.raises(InterventionResolutionError):
        resolve(state, "unknown", mods, sample_items, today=today)
