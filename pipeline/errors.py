"""
Exception types raised by the extraction and review pipeline.

Only EmptyDocument, InvoiceNotFound and ReviewStateError reach callers as
exceptions.  ProviderError is handled inside the orchestrator, and
ExtractionExhausted is converted by the processor into an ExtractionFailure
entry on the job result so the UI can offer manual entry.
"""
from typing import Literal, Optional

TRANSIENT = "transient"
PERMANENT = "permanent"


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class EmptyDocument(PipelineError):
    """The document is unreadable or yielded no text to segment."""


class ProviderError(PipelineError):
    """
    A provider call failed.

    transient -- timeout, rate limit, 5xx; worth one more try
    permanent -- bad credentials, malformed request, unusable output
    """

    def __init__(
        self,
        kind: Literal["transient", "permanent"],
        message: str,
        provider: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.provider = provider

    def __str__(self) -> str:
        prefix = f"{self.provider}: " if self.provider else ""
        return f"{prefix}{self.kind} error: {self.message}"


class ExtractionExhausted(PipelineError):
    """Every configured provider failed for one page group."""

    def __init__(self, page_range: str, attempts: list, reasons: list[str]):
        self.page_range = page_range
        self.attempts = attempts
        self.reasons = reasons
        super().__init__(
            f"All providers failed for pages {page_range}: " + "; ".join(reasons)
        )


class InvoiceNotFound(PipelineError):
    """No invoice with the given id exists."""


class ReviewStateError(PipelineError):
    """Approve/reject called on an invoice that is no longer unreviewed."""
