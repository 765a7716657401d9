"""Conversational schedule change pipeline.

message -> date phrases (may halt for clarification) -> intent drafter
-> safety validation -> coaching intervention (may halt) -> preview set
-> (user confirms) -> commit

Stateless between turns: everything that bridges turns is a persisted,
TTL-bound record (clarification, intervention, preview set) passed by id,
plus the schedule's version counter.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from coachplan.coach import messages
from coachplan.coach.drafter import DraftContext, IntentDrafter, draft_with_timeout, parse_draft_payload
from coachplan.coach.errors import (
    ClarificationNotFoundError,
    InterventionNotFoundError,
    InterventionResolutionError,
    InvalidSelectionError,
    ScheduleNotFoundError,
)
from coachplan.config.settings import settings
from coachplan.dates.phrases import extract_date_phrases, first_unresolved_ambiguous
from coachplan.dates.resolver import DateOption, DateResolver, is_iso_date, normalize_phrase, today_iso
from coachplan.db.session import get_session
from coachplan.plans import repository
from coachplan.plans.commit import CommitEngine, CommitRequest, CommitResult
from coachplan.plans.intent import NoChangeIntent
from coachplan.plans.intervention import (
    Alternative,
    InterventionReason,
    InterventionState,
    InterventionStatus,
    classify_reply,
    evaluate,
    resolve,
)
from coachplan.plans.preview import PreviewSetResolver, filter_no_op_modifications
from coachplan.plans.safety import validate_preview
from coachplan.plans.types import Modification, PreviewSet, ScheduleSnapshot, ValidationResult

ResponseMode = Literal[
    "clarification_required",
    "coach_question",
    "info",
    "validation_failed",
    "confirmation_required",
    "intervention",
    "preview",
    "committed",
    "commit_failed",
]


class ClarificationPayload(BaseModel):
    id: str
    question: str
    detected_phrase: str
    options: list[DateOption]


class InterventionPayload(BaseModel):
    id: str
    reason: InterventionReason | None
    questions: list[str]
    alternatives: list[Alternative]


class ChatResponse(BaseModel):
    """One pipeline turn's answer. Exactly one mode per turn."""

    mode: ResponseMode
    plan_id: str
    message: str
    plan_version: int | None = None
    resolved_dates: dict[str, str] = Field(default_factory=dict)
    clarification: ClarificationPayload | None = None
    intervention: InterventionPayload | None = None
    preview: PreviewSet | None = None
    validation: ValidationResult | None = None
    commit: CommitResult | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChangePipeline:
    """Orchestrates one conversational turn against one schedule.

    Args:
        drafter: Intent drafter (untrusted, may time out)
        session_factory: Transactional session context manager
        clock: Source of the current instant; "today" is derived from it once
            per turn in the schedule's timezone
    """

    def __init__(
        self,
        drafter: IntentDrafter,
        *,
        session_factory: Callable[[], AbstractContextManager[Session]] = get_session,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.drafter = drafter
        self._session_factory = session_factory
        self._clock = clock
        self._commit_engine = CommitEngine(session_factory=session_factory)

    def _load_snapshot(self, session: Session, plan_id: str) -> ScheduleSnapshot:
        snapshot = repository.get_schedule_snapshot(session, plan_id)
        if snapshot is None:
            raise ScheduleNotFoundError(plan_id)
        return snapshot

    @staticmethod
    def _resolver(snapshot: ScheduleSnapshot, now: datetime) -> DateResolver:
        return DateResolver(reference_date=today_iso(snapshot.timezone, now), timezone=snapshot.timezone)

    @staticmethod
    def _qualified_dates(message: str, resolver: DateResolver) -> dict[str, str]:
        """Pre-resolve every qualified phrase so the drafter never does date math."""
        resolved: dict[str, str] = {}
        for phrase in extract_date_phrases(message):
            if phrase.ambiguous:
                continue
            date_range = resolver.resolve_relative_range(phrase.phrase)
            if date_range is not None:
                resolved[phrase.normalized_phrase] = f"{date_range.start} to {date_range.end}"
                continue
            resolution = resolver.resolve_relative_phrase(phrase.phrase)
            if not resolution.is_ambiguous:
                resolved[phrase.normalized_phrase] = resolution.iso_date
        return resolved

    async def draft(
        self,
        plan_id: str,
        message: str,
        *,
        resolved_dates: dict[str, str] | None = None,
        history: list[dict[str, str]] | None = None,
        profile: dict[str, Any] | None = None,
        confirmed: bool = False,
    ) -> ChatResponse:
        """Run a chat message through the pipeline up to a preview.

        Args:
            plan_id: Schedule id
            message: Raw user message
            resolved_dates: Answers to earlier clarifications, by phrase
            history: Recent conversation turns for the drafter
            profile: Athlete profile for the drafter
            confirmed: User explicitly confirmed changes to past workouts

        Returns:
            ChatResponse in one of the pre-commit modes

        Raises:
            ScheduleNotFoundError: Unknown plan
            InvalidSelectionError: A resolved date is not a YYYY-MM-DD date
            DrafterTimeoutError, DrafterUnavailableError, DraftPayloadError:
                Upstream drafting failed; nothing was persisted
        """
        now = self._clock()
        resolved = {normalize_phrase(phrase): iso_date for phrase, iso_date in (resolved_dates or {}).items()}
        malformed = sorted(phrase for phrase, iso_date in resolved.items() if not is_iso_date(iso_date))
        if malformed:
            logger.info("Draft refused: resolved dates are not calendar dates", plan_id=plan_id, phrases=malformed)
            raise InvalidSelectionError(f"Resolved dates must be YYYY-MM-DD calendar dates: {', '.join(malformed)}")

        with self._session_factory() as session:
            repository.purge_expired(session, now)
            snapshot = self._load_snapshot(session, plan_id)
            resolver = self._resolver(snapshot, now)

            ambiguous = first_unresolved_ambiguous(message, resolved)
            if ambiguous is not None:
                resolution = resolver.resolve_relative_phrase(ambiguous.normalized_phrase)
                record = repository.save_clarification(
                    session,
                    plan_id=plan_id,
                    question=resolution.question,
                    options=[option.model_dump() for option in resolution.options],
                    detected_phrase=ambiguous.normalized_phrase,
                    original_message=message,
                    resolved_dates=resolved,
                    now=now,
                    ttl_minutes=settings.clarification_ttl_minutes,
                )
                logger.info(
                    "Draft halted for date clarification",
                    plan_id=plan_id,
                    phrase=ambiguous.normalized_phrase,
                    clarification_id=record.id,
                )
                return ChatResponse(
                    mode="clarification_required",
                    plan_id=plan_id,
                    plan_version=snapshot.version,
                    message=resolution.question,
                    resolved_dates=resolved,
                    clarification=ClarificationPayload(
                        id=record.id,
                        question=resolution.question,
                        detected_phrase=ambiguous.normalized_phrase,
                        options=resolution.options,
                    ),
                )

        context = DraftContext(
            message=message,
            today=resolver.today,
            resolved_dates={**self._qualified_dates(message, resolver), **resolved},
            history=history or [],
            schedule=snapshot,
            profile=profile,
        )
        payload = await draft_with_timeout(self.drafter, context, settings.drafter_timeout_seconds)
        intent = parse_draft_payload(payload)
        logger.info("Intent drafted", plan_id=plan_id, operation=intent.operation)

        if intent.requires_clarification:
            return ChatResponse(
                mode="coach_question",
                plan_id=plan_id,
                plan_version=snapshot.version,
                message=intent.clarification_question or "Could you tell me a bit more about what you'd like to change?",
                resolved_dates=resolved,
            )

        if isinstance(intent, NoChangeIntent):
            return ChatResponse(
                mode="info",
                plan_id=plan_id,
                plan_version=snapshot.version,
                message=intent.message or intent.reasoning or "No changes to your schedule.",
                resolved_dates=resolved,
            )

        previewer = PreviewSetResolver(snapshot, resolver, resolved)
        changes = previewer.resolve_modifications(intent)
        if changes.issues:
            validation = ValidationResult(valid=False, errors=changes.issues)
            logger.info("Draft could not be resolved", plan_id=plan_id, codes=[issue.code for issue in changes.issues])
            return ChatResponse(
                mode="validation_failed",
                plan_id=plan_id,
                plan_version=snapshot.version,
                message=messages.validation_failure_message(validation),
                resolved_dates=resolved,
                validation=validation,
            )

        modifications = filter_no_op_modifications(changes.modifications)
        if not modifications:
            return ChatResponse(
                mode="info",
                plan_id=plan_id,
                plan_version=snapshot.version,
                message="Nothing to change: your schedule already looks like that.",
                resolved_dates=resolved,
            )

        return self._validate_and_preview(
            snapshot,
            previewer,
            modifications,
            now=now,
            confirmed=confirmed,
            resolved_dates=resolved,
            intervention_context={"original_message": message, "scope_days": changes.scope_days},
        )

    def _validate_and_preview(
        self,
        snapshot: ScheduleSnapshot,
        previewer: PreviewSetResolver,
        modifications: Sequence[Modification],
        *,
        now: datetime,
        confirmed: bool,
        resolved_dates: dict[str, str],
        intervention_context: dict[str, Any] | None,
    ) -> ChatResponse:
        """Validation, optional intervention gate, then preview creation.

        `intervention_context` is None when re-entering after an intervention
        was resolved, so the gate is not evaluated twice.
        """
        plan_id = snapshot.id
        today = previewer.resolver.today
        validation = validate_preview(modifications, snapshot.items, today=today, confirmed=confirmed)
        base = {"plan_id": plan_id, "plan_version": snapshot.version, "resolved_dates": resolved_dates}

        if not validation.valid:
            logger.info("Draft failed validation", plan_id=plan_id, codes=[issue.code for issue in validation.errors])
            return ChatResponse(
                mode="validation_failed",
                message=messages.validation_failure_message(validation),
                validation=validation,
                **base,
            )

        if validation.requires_confirmation:
            logger.info("Draft needs explicit confirmation", plan_id=plan_id)
            return ChatResponse(
                mode="confirmation_required",
                message=messages.confirmation_message(validation),
                validation=validation,
                **base,
            )

        with self._session_factory() as session:
            if intervention_context is not None:
                state = evaluate(modifications, today=today, scope_days=intervention_context["scope_days"])
                if state.status == InterventionStatus.PENDING:
                    record = repository.save_intervention(
                        session,
                        plan_id=plan_id,
                        state=state.model_dump(mode="json"),
                        modifications=[modification.model_dump(mode="json") for modification in modifications],
                        original_message=intervention_context["original_message"],
                        scope_days=intervention_context["scope_days"],
                        confirmed=confirmed,
                        now=now,
                        ttl_minutes=settings.intervention_ttl_minutes,
                    )
                    logger.info(
                        "Draft halted for coaching intervention",
                        plan_id=plan_id,
                        reason=state.reason,
                        intervention_id=record.id,
                    )
                    return ChatResponse(
                        mode="intervention",
                        message=messages.intervention_message(state),
                        intervention=InterventionPayload(
                            id=record.id,
                            reason=state.reason,
                            questions=state.questions,
                            alternatives=state.alternatives,
                        ),
                        validation=validation,
                        **base,
                    )

            preview = previewer.build_preview_set(modifications, now=now, validation=validation)
            repository.save_preview(session, preview)

        return ChatResponse(
            mode="preview",
            message=messages.preview_message(preview),
            preview=preview,
            validation=validation,
            **base,
        )

    async def respond_to_clarification(
        self,
        plan_id: str,
        clarification_id: str,
        selected_date: str,
        *,
        history: list[dict[str, str]] | None = None,
        profile: dict[str, Any] | None = None,
        confirmed: bool = False,
    ) -> ChatResponse:
        """Record the chosen date and re-enter draft with the original message.

        Re-submitting the same answer is idempotent: the phrase stays
        resolved and is not asked about again.

        Raises:
            ClarificationNotFoundError: Unknown, expired or foreign clarification
            InvalidSelectionError: Date is not one of the offered options
        """
        now = self._clock()
        with self._session_factory() as session:
            record = repository.get_clarification(session, clarification_id, plan_id=plan_id, now=now)
            if record is None:
                raise ClarificationNotFoundError(clarification_id)

            offered = {option["iso_date"] for option in record.options or []}
            if not is_iso_date(selected_date) or (offered and selected_date not in offered):
                raise InvalidSelectionError(f"{selected_date!r} is not one of the offered dates")

            repository.mark_clarification_resolved(session, record, selected_date)
            resolved_dates = dict(record.resolved_dates)
            original_message = record.original_message

        logger.info("Clarification answered", plan_id=plan_id, clarification_id=clarification_id, date=selected_date)
        return await self.draft(
            plan_id,
            original_message,
            resolved_dates=resolved_dates,
            history=history,
            profile=profile,
            confirmed=confirmed,
        )

    async def respond_to_intervention(self, plan_id: str, intervention_id: str, reply: str) -> ChatResponse:
        """Classify the reply; a recognised choice re-enters validation.

        An unrecognised reply leaves the intervention pending and asks again.

        Raises:
            InterventionNotFoundError: Unknown, expired or foreign intervention
        """
        now = self._clock()
        with self._session_factory() as session:
            record = repository.get_intervention(session, intervention_id, plan_id=plan_id, now=now)
            if record is None:
                raise InterventionNotFoundError(intervention_id)

            state = InterventionState.model_validate(record.state)
            pending = InterventionPayload(
                id=record.id,
                reason=state.reason,
                questions=state.questions,
                alternatives=state.alternatives,
            )
            snapshot = self._load_snapshot(session, plan_id)
            choice = classify_reply(reply, state)
            if choice == "unknown":
                logger.info("Intervention reply not understood", plan_id=plan_id, intervention_id=intervention_id)
                return ChatResponse(
                    mode="intervention",
                    plan_id=plan_id,
                    plan_version=snapshot.version,
                    message="Sorry, I didn't catch which option you want.\n" + messages.intervention_message(state),
                    intervention=pending,
                )

            resolver = self._resolver(snapshot, now)
            original = [Modification.model_validate(modification) for modification in record.modifications]
            try:
                resolution = resolve(state, choice, original, snapshot.items, today=resolver.today)
            except InterventionResolutionError as e:
                logger.info("Intervention alternative not applicable", plan_id=plan_id, code=e.code)
                return ChatResponse(
                    mode="intervention",
                    plan_id=plan_id,
                    plan_version=snapshot.version,
                    message=f"{e.message}. Please pick another option.\n" + messages.intervention_message(state),
                    intervention=pending,
                )

            repository.delete_intervention(session, intervention_id)
            confirmed = record.confirmed

        logger.info("Intervention resolved", plan_id=plan_id, intervention_id=intervention_id, choice=choice)
        modifications = filter_no_op_modifications(resolution.modifications)
        if not modifications:
            return ChatResponse(
                mode="info",
                plan_id=plan_id,
                plan_version=snapshot.version,
                message="Nothing left to change.",
            )
        return self._validate_and_preview(
            snapshot,
            PreviewSetResolver(snapshot, resolver),
            modifications,
            now=now,
            confirmed=confirmed,
            resolved_dates={},
            intervention_context=None,
        )

    def commit(
        self,
        plan_id: str,
        preview_id: str,
        plan_version: int,
        confirmed_item_ids: list[str],
        *,
        preview_hash: str | None = None,
    ) -> ChatResponse:
        """Apply a previewed change set. Never retried on conflict."""
        result = self._commit_engine.commit(
            CommitRequest(
                plan_id=plan_id,
                preview_id=preview_id,
                plan_version=plan_version,
                confirmed_item_ids=confirmed_item_ids,
                preview_hash=preview_hash,
            ),
            now=self._clock(),
        )
        if result.success:
            return ChatResponse(
                mode="committed",
                plan_id=plan_id,
                plan_version=result.new_version,
                message=f"Done. Updated {len(result.applied_item_ids)} workout(s).",
                commit=result,
            )
        return ChatResponse(
            mode="commit_failed",
            plan_id=plan_id,
            plan_version=None,
            message=result.failure.message,
            commit=result,
        )
