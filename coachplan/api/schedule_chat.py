from __future__ import annotations

from typing import Annotated, Literal

from fastapi import APIRouter, Body, Depends, HTTPException, status
from loguru import logger
from pydantic import BaseModel, Field

from coachplan.coach.drafter import LLMIntentDrafter
from coachplan.coach.errors import (
    ClarificationNotFoundError,
    DraftPayloadError,
    DrafterTimeoutError,
    DrafterUnavailableError,
    InterventionNotFoundError,
    InvalidSelectionError,
    PipelineError,
    ScheduleNotFoundError,
)
from coachplan.coach.pipeline import ChangePipeline, ChatResponse
from coachplan.db.session import get_session
from coachplan.plans import repository
from coachplan.plans.intent import IsoDate
from coachplan.plans.types import ScheduleSnapshot

router = APIRouter(prefix="/schedules", tags=["schedules"])

_pipeline: ChangePipeline | None = None


def get_pipeline() -> ChangePipeline:
    """Shared pipeline backed by the LLM drafter (overridden in tests)."""
    global _pipeline
    if _pipeline is None:
        _pipeline = ChangePipeline(LLMIntentDrafter())
    return _pipeline


class DraftRequest(BaseModel):
    mode: Literal["draft"]
    message: str = Field(min_length=1)
    resolved_dates: dict[str, IsoDate] = Field(default_factory=dict)
    history: list[dict[str, str]] = Field(default_factory=list)
    confirmed: bool = False


class ClarificationResponseRequest(BaseModel):
    mode: Literal["clarification_response"]
    clarification_id: str
    selected_date: str
    history: list[dict[str, str]] = Field(default_factory=list)
    confirmed: bool = False


class InterventionResponseRequest(BaseModel):
    mode: Literal["intervention_response"]
    intervention_id: str
    reply: str = Field(min_length=1)


class CommitModeRequest(BaseModel):
    mode: Literal["commit"]
    preview_id: str
    plan_version: int
    confirmed_item_ids: list[str]
    preview_hash: str | None = None


ChatRequest = Annotated[
    DraftRequest | ClarificationResponseRequest | InterventionResponseRequest | CommitModeRequest,
    Field(discriminator="mode"),
]

_STATUS_BY_ERROR: list[tuple[type[PipelineError], int]] = [
    (ScheduleNotFoundError, status.HTTP_404_NOT_FOUND),
    (ClarificationNotFoundError, status.HTTP_404_NOT_FOUND),
    (InterventionNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidSelectionError, status.HTTP_400_BAD_REQUEST),
    (DrafterTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (DrafterUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (DraftPayloadError, status.HTTP_502_BAD_GATEWAY),
]


def _to_http_error(error: PipelineError) -> HTTPException:
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(error, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return HTTPException(status_code=status_code, detail={"code": error.code, "message": error.message})


@router.post("/{plan_id}/chat", response_model=ChatResponse)
async def schedule_chat(
    plan_id: str,
    req: Annotated[ChatRequest, Body()],
    pipeline: Annotated[ChangePipeline, Depends(get_pipeline)],
) -> ChatResponse:
    """Handle one conversational turn for a schedule.

    Modes:
        draft: free-text message -> clarification | intervention | preview | info
        clarification_response: chosen date -> re-enters draft
        intervention_response: free-text reply -> preview | intervention
        commit: preview id + confirmed ids + version -> committed | commit_failed
    """
    logger.info("Schedule chat request", plan_id=plan_id, mode=req.mode)
    try:
        if isinstance(req, DraftRequest):
            return await pipeline.draft(
                plan_id,
                req.message,
                resolved_dates=req.resolved_dates,
                history=req.history,
                confirmed=req.confirmed,
            )
        if isinstance(req, ClarificationResponseRequest):
            return await pipeline.respond_to_clarification(
                plan_id,
                req.clarification_id,
                req.selected_date,
                history=req.history,
                confirmed=req.confirmed,
            )
        if isinstance(req, InterventionResponseRequest):
            return await pipeline.respond_to_intervention(plan_id, req.intervention_id, req.reply)
        return pipeline.commit(
            plan_id,
            req.preview_id,
            req.plan_version,
            req.confirmed_item_ids,
            preview_hash=req.preview_hash,
        )
    except PipelineError as e:
        logger.warning("Schedule chat request failed", plan_id=plan_id, mode=req.mode, code=e.code)
        raise _to_http_error(e) from e


@router.get("/{plan_id}", response_model=ScheduleSnapshot)
def get_schedule(plan_id: str) -> ScheduleSnapshot:
    """Current schedule and version, as the commit path will see it."""
    with get_session() as session:
        snapshot = repository.get_schedule_snapshot(session, plan_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "schedule_not_found", "message": f"Schedule not found: {plan_id}"},
        )
    return snapshot
