"""Atomic, optimistic-concurrency commit of a previewed change set.

Ordered checks, first failure wins:
1. preview exists for this plan             -> preview_not_found
2. preview not expired                      -> preview_expired
3. confirmed ids == preview ids, hash holds -> workout_mismatch
4. preview version == stored version        -> version_mismatch
5. caller version == stored version         -> version_mismatch

The write is one transaction: compare-and-swap on the schedule version,
item deltas, audit row, preview deletion. A lost compare-and-swap rolls
everything back and is reported as database_conflict. Commits are never
retried here; retrying is the caller's decision.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from typing import Literal

from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coachplan.db.session import get_session
from coachplan.plans import repository
from coachplan.plans.preview import compute_preview_hash
from coachplan.plans.repository import ItemWriteError, is_expired
from coachplan.plans.safety import VERSION_MISMATCH, WORKOUT_MISMATCH, validate_commit
from coachplan.plans.types import PreviewSet

CommitFailureCode = Literal[
    "preview_not_found",
    "preview_expired",
    "workout_mismatch",
    "version_mismatch",
    "database_conflict",
]


class CommitRequest(BaseModel):
    """What the caller believes it is confirming."""

    plan_id: str
    preview_id: str
    plan_version: int
    confirmed_item_ids: list[str]
    preview_hash: str | None = None


class CommitFailure(BaseModel):
    code: CommitFailureCode
    message: str


class CommitResult(BaseModel):
    success: bool
    plan_id: str
    preview_id: str
    new_version: int | None = None
    applied_item_ids: list[str] = Field(default_factory=list)
    failure: CommitFailure | None = None


class CompareAndSwapLost(Exception):
    """Raised inside the commit transaction to roll it back."""


def _failed(request: CommitRequest, code: CommitFailureCode, message: str) -> CommitResult:
    logger.warning("Commit rejected", plan_id=request.plan_id, preview_id=request.preview_id, code=code)
    return CommitResult(
        success=False,
        plan_id=request.plan_id,
        preview_id=request.preview_id,
        failure=CommitFailure(code=code, message=message),
    )


class CommitEngine:
    """Applies preview sets under optimistic concurrency.

    Args:
        session_factory: Context manager yielding a session that commits on
            normal exit and rolls back on exception
    """

    def __init__(self, session_factory: Callable[[], AbstractContextManager[Session]] = get_session) -> None:
        self._session_factory = session_factory

    def _check(self, session: Session, request: CommitRequest, now: datetime) -> tuple[PreviewSet | None, int | None, CommitResult | None]:
        record = repository.get_preview_record(session, request.preview_id)
        current_version = repository.get_current_version(session, request.plan_id)
        if record is None or record.plan_id != request.plan_id or current_version is None:
            return None, None, _failed(request, "preview_not_found", "Preview not found. Please preview the change again.")

        if is_expired(record.expires_at, now):
            repository.delete_preview(session, record.id)
            return None, None, _failed(request, "preview_expired", "This preview has expired. Please preview the change again.")

        preview = PreviewSet.model_validate(record.payload)
        recomputed = compute_preview_hash(preview.modifications, preview.plan_id, preview.plan_version)
        if recomputed != record.preview_hash or (request.preview_hash and request.preview_hash != record.preview_hash):
            return None, None, _failed(request, "workout_mismatch", "Preview contents do not match what was confirmed.")

        result = validate_commit(
            preview.modification_item_ids,
            request.confirmed_item_ids,
            preview.plan_version,
            current_version,
        )
        for code in (WORKOUT_MISMATCH, VERSION_MISMATCH):
            issue = next((issue for issue in result.errors if issue.code == code), None)
            if issue is not None:
                return None, None, _failed(request, code, issue.message)

        if request.plan_version != current_version:
            return None, None, _failed(
                request,
                "version_mismatch",
                f"Version mismatch: you confirmed v{request.plan_version}, but plan is now v{current_version}. "
                "Please refresh and preview again.",
            )

        return preview, current_version, None

    def commit(self, request: CommitRequest, *, now: datetime | None = None) -> CommitResult:
        """Validate and apply a previewed change set.

        Args:
            request: Preview id, plan id, believed version and confirmed ids
            now: Commit instant, defaults to the current UTC time

        Returns:
            CommitResult; failures are values with a stable code
        """
        now = now or datetime.now(timezone.utc)
        try:
            with self._session_factory() as session:
                preview, current_version, rejected = self._check(session, request, now)
                if rejected is not None:
                    return rejected

                if not repository.compare_and_swap_version(session, request.plan_id, current_version, now):
                    raise CompareAndSwapLost(request.plan_id)

                repository.apply_item_changes(session, request.plan_id, preview.modifications, now)
                repository.record_revision(
                    session,
                    preview=preview,
                    from_version=current_version,
                    to_version=current_version + 1,
                )
                repository.delete_preview(session, preview.preview_id)
                repository.delete_clarifications_for_plan(session, request.plan_id)
        except (CompareAndSwapLost, ItemWriteError, IntegrityError) as e:
            logger.warning(
                "Commit aborted, transaction rolled back",
                plan_id=request.plan_id,
                preview_id=request.preview_id,
                error=type(e).__name__,
            )
            return CommitResult(
                success=False,
                plan_id=request.plan_id,
                preview_id=request.preview_id,
                failure=CommitFailure(
                    code="database_conflict",
                    message="The plan changed while saving. Nothing was applied; please refresh and try again.",
                ),
            )

        logger.info(
            "Commit applied",
            plan_id=request.plan_id,
            preview_id=request.preview_id,
            from_version=current_version,
            to_version=current_version + 1,
            items=len(preview.modification_item_ids),
        )
        return CommitResult(
            success=True,
            plan_id=request.plan_id,
            preview_id=request.preview_id,
            new_version=current_version + 1,
            applied_item_ids=list(preview.modification_item_ids),
        )
