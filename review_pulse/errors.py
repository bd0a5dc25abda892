"""Exceptions raised by the pipeline control surface."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for pipeline control errors."""


class PipelineBusyError(PipelineError):
    """A run is still active; stop and drain it first."""


class UnknownFailureError(PipelineError):
    """Retry/dismiss for a page that has no ledger entry."""

    def __init__(self, page_id: int):
        super().__init__(f"No recorded failure for page {page_id}")
        self.page_id = page_id


class RetryInFlightError(PipelineError):
    """A retry for this page is already running."""


class DuplicateRequestError(PipelineError):
    """The bridge already has an outstanding request for this page."""
