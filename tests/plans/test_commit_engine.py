"""Tests for CommitEngine against an in-memory database."""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from coachplan.config.settings import settings
from coachplan.db.models import ClarificationRecord, PreviewSetRecord, Schedule, ScheduledItem, ScheduleRevision
from coachplan.db.session import get_session
from coachplan.dates.resolver import DateResolver
from coachplan.plans import repository
from coachplan.plans.commit import CommitEngine, CommitRequest
from coachplan.plans.intent import AddIntent, CancelIntent, RescheduleIntent, SwapIntent
from coachplan.plans.preview import PreviewSetResolver


@pytest.fixture
def make_preview(load_snapshot, today, fixed_now):
    """Build and store a preview for an intent against the current schedule."""

    def _make(intent, plan_id="plan-1"):
        snapshot = load_snapshot(plan_id)
        previewer = PreviewSetResolver(snapshot, DateResolver(reference_date=today))
        modifications = previewer.resolve_modifications(intent).modifications
        preview = previewer.build_preview_set(modifications, now=fixed_now)
        with get_session() as session:
            repository.save_preview(session, preview)
        return preview

    return _make


def _request(preview, **overrides):
    values = {
        "plan_id": preview.plan_id,
        "preview_id": preview.preview_id,
        "plan_version": preview.plan_version,
        "confirmed_item_ids": list(preview.affected_item_ids),
    }
    values.update(overrides)
    return CommitRequest(**values)


def _items_by_id(plan_id="plan-1"):
    with get_session() as session:
        rows = session.execute(select(ScheduledItem).where(ScheduledItem.schedule_id == plan_id)).scalars()
        return {row.id: (row.date, row.status, row.title) for row in rows}


def _version(plan_id="plan-1"):
    with get_session() as session:
        return repository.get_current_version(session, plan_id)


def _bump_version(plan_id="plan-1"):
    with get_session() as session:
        session.execute(update(Schedule).where(Schedule.id == plan_id).values(version=Schedule.version + 1))


def test_commit_applies_changes_and_increments_version(schedule_id, make_preview, fixed_now):
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13", "2026-02-16"]))

    result = CommitEngine().commit(_request(preview), now=fixed_now)

    assert result.success
    assert result.new_version == 2
    assert sorted(result.applied_item_ids) == ["item-0213", "item-0216"]
    items = _items_by_id()
    assert items["item-0213"][1] == "cancelled"
    assert items["item-0216"][1] == "cancelled"
    assert items["item-0219"][1] == "scheduled"
    assert _version() == 2


def test_commit_is_single_use_and_writes_revision(schedule_id, make_preview, fixed_now):
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13"]))
    engine = CommitEngine()

    first = engine.commit(_request(preview), now=fixed_now)
    second = engine.commit(_request(preview, plan_version=2), now=fixed_now)

    assert first.success
    assert second.failure.code == "preview_not_found"
    with get_session() as session:
        revisions = repository.list_revisions(session, schedule_id)
        assert [(r.from_version, r.to_version, r.preview_id) for r in revisions] == [(1, 2, preview.preview_id)]
        assert revisions[0].deltas[0]["after"] == {"status": "cancelled"}
        assert session.get(PreviewSetRecord, preview.preview_id) is None


def test_scenario_version_advanced_since_preview(seed_schedule, make_preview, fixed_now, sample_items):
    march = [item for item in sample_items if item.date.startswith("2026-03")]
    seed_schedule(version=3, items=march)
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-03-01", "2026-03-02"]))
    assert preview.plan_version == 3
    before = _items_by_id()

    _bump_version()
    result = CommitEngine().commit(_request(preview, plan_version=3), now=fixed_now)

    assert not result.success
    assert result.failure.code == "version_mismatch"
    assert _version() == 4
    assert _items_by_id() == before


@pytest.mark.parametrize(
    "confirmed",
    [
        ["item-0213"],
        ["item-0213", "item-0216", "item-0219"],
        [],
    ],
)
def test_confirmed_id_set_must_match_exactly(schedule_id, make_preview, fixed_now, confirmed):
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13", "2026-02-16"]))

    result = CommitEngine().commit(_request(preview, confirmed_item_ids=confirmed), now=fixed_now)

    assert result.failure.code == "workout_mismatch"
    assert _version() == 1


def test_confirmed_id_order_does_not_matter(schedule_id, make_preview, fixed_now):
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13", "2026-02-16"]))

    result = CommitEngine().commit(
        _request(preview, confirmed_item_ids=list(reversed(preview.affected_item_ids))), now=fixed_now
    )

    assert result.success


def test_expired_preview_is_distinct_failure(schedule_id, make_preview, fixed_now):
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13"]))

    result = CommitEngine().commit(_request(preview), now=preview.expires_at + timedelta(seconds=1))

    assert result.failure.code == "preview_expired"
    with get_session() as session:
        assert session.get(PreviewSetRecord, preview.preview_id) is None


def test_unknown_preview_or_foreign_plan(seed_schedule, make_preview, fixed_now):
    seed_schedule()
    seed_schedule(plan_id="plan-2", items=[])
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13"]))
    engine = CommitEngine()

    unknown = engine.commit(_request(preview, preview_id="missing"), now=fixed_now)
    foreign = engine.commit(_request(preview, plan_id="plan-2"), now=fixed_now)

    assert unknown.failure.code == "preview_not_found"
    assert foreign.failure.code == "preview_not_found"


def test_caller_version_must_match(schedule_id, make_preview, fixed_now):
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13"]))

    result = CommitEngine().commit(_request(preview, plan_version=7), now=fixed_now)

    assert result.failure.code == "version_mismatch"


def test_tampered_preview_payload_is_rejected(schedule_id, make_preview, fixed_now):
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13"]))
    with get_session() as session:
        record = session.get(PreviewSetRecord, preview.preview_id)
        payload = dict(record.payload)
        payload["modifications"] = [
            {**payload["modifications"][0], "after": {"status": "completed"}},
        ]
        record.payload = payload

    result = CommitEngine().commit(_request(preview), now=fixed_now)

    assert result.failure.code == "workout_mismatch"
    assert _items_by_id()["item-0213"][1] == "scheduled"


def test_confirmed_ids_are_checked_against_the_hashed_modifications(schedule_id, make_preview, fixed_now):
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13", "2026-02-16"]))
    with get_session() as session:
        record = session.get(PreviewSetRecord, preview.preview_id)
        record.payload = {**record.payload, "affected_item_ids": ["item-0213"]}

    narrowed = CommitEngine().commit(_request(preview, confirmed_item_ids=["item-0213"]), now=fixed_now)

    assert narrowed.failure.code == "workout_mismatch"
    assert _items_by_id()["item-0216"][1] == "scheduled"

    result = CommitEngine().commit(_request(preview, confirmed_item_ids=["item-0213", "item-0216"]), now=fixed_now)

    assert result.success
    assert sorted(result.applied_item_ids) == ["item-0213", "item-0216"]


def test_client_hash_mismatch_is_rejected(schedule_id, make_preview, fixed_now):
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13"]))

    result = CommitEngine().commit(_request(preview, preview_hash="0" * 64), now=fixed_now)

    assert result.failure.code == "workout_mismatch"


def test_lost_compare_and_swap_rolls_back_everything(schedule_id, make_preview, fixed_now, monkeypatch):
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13", "2026-02-16"]))
    original = repository.compare_and_swap_version

    def racing_cas(session, plan_id, expected_version, now):
        # Another writer commits between our checks and our write.
        session.execute(update(Schedule).where(Schedule.id == plan_id).values(version=Schedule.version + 1))
        return original(session, plan_id, expected_version, now)

    monkeypatch.setattr(repository, "compare_and_swap_version", racing_cas)

    result = CommitEngine().commit(_request(preview), now=fixed_now)

    assert result.failure.code == "database_conflict"
    assert _version() == 1
    assert _items_by_id()["item-0213"][1] == "scheduled"
    with get_session() as session:
        assert session.get(PreviewSetRecord, preview.preview_id) is not None
        assert session.execute(select(ScheduleRevision)).first() is None


def test_swap_commit_moves_both_items(schedule_id, make_preview, fixed_now):
    preview = make_preview(SwapIntent(operation="swap", first_date="2026-02-16", second_date="2026-02-19"))

    result = CommitEngine().commit(_request(preview), now=fixed_now)

    assert result.success
    items = _items_by_id()
    assert items["item-0216"][0] == "2026-02-19"
    assert items["item-0219"][0] == "2026-02-16"


def test_reschedule_commit_keeps_content(schedule_id, make_preview, fixed_now):
    preview = make_preview(RescheduleIntent(operation="reschedule", target_date="2026-02-19", new_date="2026-02-20"))

    result = CommitEngine().commit(_request(preview), now=fixed_now)

    assert result.success
    assert _items_by_id()["item-0219"] == ("2026-02-20", "scheduled", "Easy Run")


def test_add_commit_creates_item(schedule_id, make_preview, fixed_now):
    preview = make_preview(AddIntent(operation="add", date="2026-02-18", title="Strides", duration_minutes=20))
    (new_id,) = preview.affected_item_ids

    result = CommitEngine().commit(_request(preview), now=fixed_now)

    assert result.success
    assert _items_by_id()[new_id] == ("2026-02-18", "scheduled", "Strides")


def test_commit_clears_pending_clarifications(schedule_id, make_preview, fixed_now):
    preview = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13"]))
    with get_session() as session:
        repository.save_clarification(
            session,
            plan_id=schedule_id,
            question="Which Friday?",
            options=[],
            detected_phrase="friday",
            original_message="cancel friday",
            resolved_dates={},
            now=fixed_now,
            ttl_minutes=30,
        )

    CommitEngine().commit(_request(preview), now=fixed_now)

    with get_session() as session:
        assert session.execute(select(ClarificationRecord)).first() is None


def test_purge_expired_removes_only_stale_records(schedule_id, make_preview, fixed_now):
    stale = make_preview(CancelIntent(operation="cancel", target_dates=["2026-02-13"]))
    later = fixed_now + timedelta(minutes=settings.preview_ttl_minutes, seconds=1)
    with get_session() as session:
        repository.save_clarification(
            session,
            plan_id=schedule_id,
            question="Which Friday?",
            options=[],
            detected_phrase="friday",
            original_message="cancel friday",
            resolved_dates={},
            now=later,
            ttl_minutes=30,
        )

    with get_session() as session:
        counts = repository.purge_expired(session, later)

    assert counts == {"previews": 1, "clarifications": 0, "interventions": 0}
    with get_session() as session:
        assert session.get(PreviewSetRecord, stale.preview_id) is None
        assert session.execute(select(ClarificationRecord)).first() is not None
