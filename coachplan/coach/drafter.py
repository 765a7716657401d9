"""Intent drafting (external, untrusted collaborator).

The drafter turns a chat message plus context into a loosely-typed JSON
payload. Nothing it returns is trusted: `parse_draft_payload` validates the
payload into one DraftedIntent variant or raises DraftPayloadError.

Timeouts and transport failures surface as DrafterTimeoutError and
DrafterUnavailableError, never as validation failures.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic_ai import Agent
from pydantic_ai.exceptions import UnexpectedModelBehavior
from pydantic_ai.models.openai import OpenAIModel

from coachplan.coach.errors import DraftPayloadError, DrafterTimeoutError, DrafterUnavailableError
from coachplan.config.settings import settings
from coachplan.dates.resolver import format_display
from coachplan.plans.intent import DraftedIntent
from coachplan.plans.types import ScheduleSnapshot

_INTENT_ADAPTER = TypeAdapter(DraftedIntent)

SYSTEM_PROMPT = """You translate a runner's chat message into ONE schedule change intent.

Fill in the structured output with exactly one of these shapes:

{"operation": "cancel", "scope": "<date phrase, e.g. next week, today, 2026-03-01>"}
{"operation": "cancel", "target_dates": ["YYYY-MM-DD", ...]}
{"operation": "reschedule", "target_date": "YYYY-MM-DD", "new_date": "YYYY-MM-DD"}
{"operation": "modify", "target_date": "YYYY-MM-DD", "changes": {"title": ..., "duration_minutes": ..., "distance_km": ..., "description": ...}}
{"operation": "swap", "first_date": "YYYY-MM-DD", "second_date": "YYYY-MM-DD"}
{"operation": "add", "date": "YYYY-MM-DD", "title": "...", "duration_minutes": ...}
{"operation": "restore", "target_dates": ["YYYY-MM-DD", ...]}
{"operation": "none", "message": "<short answer when no change is requested>"}

Every object may also carry "reasoning" (one sentence),
"requires_clarification" (true when you cannot tell what the user wants)
and "clarification_question".

Rules:
- Use ONLY dates from the resolved dates and the schedule shown. Never compute dates yourself.
- Never invent workouts that are not in the schedule, except for "add".
- Change only what the user asked for."""


class DraftContext(BaseModel):
    """Everything the drafter is allowed to see for one turn."""

    message: str
    today: str
    resolved_dates: dict[str, str] = Field(default_factory=dict)
    history: list[dict[str, str]] = Field(default_factory=list)
    schedule: ScheduleSnapshot
    profile: dict[str, Any] | None = None


class DraftedPayload(BaseModel):
    """Structured output requested from the model.

    Deliberately loose: every field is optional and unknown keys are kept,
    so a wrong shape still reaches `parse_draft_payload` and is rejected
    there with a stable error code.
    """

    model_config = ConfigDict(extra="allow")

    operation: str | None = Field(default=None, description="cancel, reschedule, modify, swap, add, restore or none")
    scope: str | None = None
    target_dates: list[str] | None = None
    target_ids: list[str] | None = None
    target_id: str | None = None
    target_date: str | None = None
    new_date: str | None = None
    first_date: str | None = None
    second_date: str | None = None
    date: str | None = None
    title: str | None = None
    item_type: str | None = None
    description: str | None = None
    duration_minutes: int | None = None
    distance_km: float | None = None
    changes: dict[str, Any] | None = None
    message: str | None = None
    reasoning: str | None = None
    requires_clarification: bool | None = None
    clarification_question: str | None = None


class IntentDrafter(Protocol):
    async def draft(self, context: DraftContext) -> dict[str, Any]: ...


def build_user_prompt(context: DraftContext) -> str:
    """Render the drafting context as plain text for the model."""
    lines = [
        f"Today: {context.today} ({format_display(context.today)}), timezone {context.schedule.timezone}",
    ]
    if context.resolved_dates:
        lines.append("Resolved dates:")
        lines.extend(f"- {phrase}: {iso_date}" for phrase, iso_date in sorted(context.resolved_dates.items()))

    lines.append("Schedule:")
    for item in context.schedule.items:
        lines.append(f"- {item.date} {item.weekday}: {item.title} [{item.status}] id={item.id}")

    if context.profile:
        lines.append(f"Athlete profile: {json.dumps(context.profile, sort_keys=True)}")

    if context.history:
        lines.append("Recent conversation:")
        lines.extend(f"{turn.get('role', 'user')}: {turn.get('content', '')}" for turn in context.history[-6:])

    lines.append("")
    lines.append(f"Message: {context.message}")
    return "\n".join(lines)


def _summarize_validation_error(error: ValidationError) -> str:
    parts = []
    for detail in error.errors()[:5]:
        location = ".".join(str(part) for part in detail["loc"]) or "payload"
        parts.append(f"{location}: {detail['msg']}")
    return "; ".join(parts)


def parse_draft_payload(payload: dict[str, Any] | str) -> DraftedIntent:
    """Validate a drafted payload into a typed intent.

    Raises:
        DraftPayloadError: Not JSON, missing fields, malformed dates or an
            unrecognized operation
    """
    try:
        if isinstance(payload, str):
            return _INTENT_ADAPTER.validate_json(payload)
        return _INTENT_ADAPTER.validate_python(payload)
    except ValidationError as e:
        raise DraftPayloadError(f"Invalid drafted intent: {_summarize_validation_error(e)}") from e


async def draft_with_timeout(drafter: IntentDrafter, context: DraftContext, timeout_seconds: float) -> dict[str, Any]:
    """Call the drafter with a hard upper bound on wall time."""
    try:
        return await asyncio.wait_for(drafter.draft(context), timeout=timeout_seconds)
    except TimeoutError as e:
        logger.warning("Intent drafter timed out", timeout_seconds=timeout_seconds)
        raise DrafterTimeoutError(timeout_seconds) from e


class LLMIntentDrafter:
    """Intent drafter backed by a pydantic-ai agent with structured output."""

    def __init__(self, model_name: str | None = None) -> None:
        self.model_name = model_name or settings.drafter_model
        self._agent: Agent[None, DraftedPayload] | None = None

    def _get_agent(self) -> Agent[None, DraftedPayload]:
        if self._agent is None:
            # No output retries: a reply that does not fit is rejected, not repaired
            self._agent = Agent(
                model=OpenAIModel(self.model_name),
                system_prompt=SYSTEM_PROMPT,
                output_type=DraftedPayload,
                output_retries=0,
            )
        return self._agent

    async def draft(self, context: DraftContext) -> dict[str, Any]:
        user_prompt = build_user_prompt(context)
        logger.debug(
            "LLMIntentDrafter: Calling LLM",
            model=self.model_name,
            plan_id=context.schedule.id,
            prompt_length=len(user_prompt),
        )
        try:
            result = await self._get_agent().run(user_prompt)
        except UnexpectedModelBehavior as e:
            logger.warning("LLMIntentDrafter: output did not match the payload schema", plan_id=context.schedule.id)
            raise DraftPayloadError(f"Drafted intent has an unusable shape: {e.message}") from e
        except Exception as e:
            logger.warning("LLMIntentDrafter: LLM call failed", error_type=type(e).__name__)
            raise DrafterUnavailableError(f"Intent drafter call failed: {type(e).__name__}") from e

        payload = result.output.model_dump(exclude_none=True)
        logger.debug("LLMIntentDrafter: payload drafted", plan_id=context.schedule.id, operation=payload.get("operation"))
        return payload
