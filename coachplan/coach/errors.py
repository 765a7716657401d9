"""Errors raised by the schedule change pipeline.

Validation failures and commit failures are returned as values, not raised.
These exceptions cover missing records, bad caller input and upstream
failures, and are mapped to HTTP status codes by the API layer.
"""


class PipelineError(Exception):
    """Base class for pipeline errors. Carries a stable `code`."""

    def __init__(self, code: str, message: str | None = None):
        self.code = code
        self.message = message or f"Pipeline error: {code}"
        super().__init__(self.message)


class ScheduleNotFoundError(PipelineError):
    """Raised when the schedule (plan) id does not exist."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__("schedule_not_found", f"Schedule not found: {plan_id}")


class ClarificationNotFoundError(PipelineError):
    """Raised when a clarification id is unknown, expired or for another plan."""

    def __init__(self, clarification_id: str):
        self.clarification_id = clarification_id
        super().__init__("clarification_not_found", f"Clarification not found or expired: {clarification_id}")


class InterventionNotFoundError(PipelineError):
    """Raised when an intervention id is unknown, expired or for another plan."""

    def __init__(self, intervention_id: str):
        self.intervention_id = intervention_id
        super().__init__("intervention_not_found", f"Intervention not found or expired: {intervention_id}")


class InvalidSelectionError(PipelineError):
    """Raised when a clarification answer is not one of the offered options."""

    def __init__(self, message: str = "Selected date is not one of the offered options"):
        super().__init__("invalid_selection", message)


class InterventionResolutionError(PipelineError):
    """Raised when an intervention alternative cannot be applied."""


class UpstreamError(PipelineError):
    """Base for failures of the intent drafter. Retryable; no state was changed."""


class DraftPayloadError(UpstreamError):
    """Raised when a drafted intent payload is malformed or has an unknown operation."""

    def __init__(self, message: str):
        super().__init__("invalid_draft_payload", message)


class DrafterTimeoutError(UpstreamError):
    """Raised when the intent drafter does not answer within the configured timeout."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__("drafter_timeout", f"Intent drafting timed out after {timeout_seconds:.1f}s")


class DrafterUnavailableError(UpstreamError):
    """Raised when the intent drafter call fails for any other reason."""

    def __init__(self, message: str = "Intent drafter unavailable"):
        super().__init__("drafter_unavailable", message)
