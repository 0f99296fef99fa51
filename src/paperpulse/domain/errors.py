"""Domain exceptions raised across the ingestion and analysis pipeline."""

from __future__ import annotations

from typing import List, Optional


class PaperPulseError(Exception):
    """Base class for all PaperPulse errors."""


class BudgetExceededError(PaperPulseError):
    """A batch would push spend past the daily or monthly ceiling."""

    def __init__(self, window: str, *, spent_cents: int, budget_cents: int, requested_cents: int):
        self.window = window
        self.spent_cents = spent_cents
        self.budget_cents = budget_cents
        self.requested_cents = requested_cents
        remaining = max(0, budget_cents - spent_cents)
        super().__init__(
            f"{window} budget exceeded: estimated {requested_cents}c, "
            f"remaining {remaining}c of {budget_cents}c"
        )


class BackfillRequestError(PaperPulseError):
    """A backfill date range was rejected before anything was enqueued."""


class LLMNotConfiguredError(PaperPulseError):
    """No API key is available for the chat-completion endpoint."""


class LLMResponseError(PaperPulseError):
    """The chat-completion endpoint returned an unusable response."""

    def __init__(self, message: str, *, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class AnalysisValidationError(PaperPulseError):
    """LLM output failed schema validation after the feedback retry."""

    def __init__(self, message: str, issues: Optional[List[str]] = None):
        self.issues = list(issues or [])
        super().__init__(message)


class NotFoundError(PaperPulseError):
    """An id given by the caller does not exist."""


class PaperNotFoundError(NotFoundError):
    pass


class BatchJobNotFoundError(NotFoundError):
    pass


class BatchRequestError(PaperPulseError):
    """A batch control request cannot be applied in the current state."""


class BatchConflictError(PaperPulseError):
    """Another analysis batch is already running."""

    def __init__(self, batch_id: int):
        self.batch_id = batch_id
        super().__init__(f"A batch is already running (batch {batch_id})")


class LockNotAcquiredError(PaperPulseError):
    pass


class ExternalServiceError(PaperPulseError):
    """A third-party HTTP API kept failing after retries."""

    def __init__(self, message: str, *, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class AIDisabledError(PaperPulseError):
    """AI processing is switched off by the runtime toggle."""
