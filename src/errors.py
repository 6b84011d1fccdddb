"""
Pipeline error taxonomy.

Errors raised by the AI client and the pipeline stages. The
orchestrator uses ``retryable`` to decide whether a failed attempt
is re-queued or goes straight to the failure handler.

Warnings are not raised. Stages log them and return them on their
result so callers and tests can inspect what was tolerated.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the pipeline core."""

    retryable: bool = True


class MissingInputError(PipelineError):
    """A stage precondition is unmet (no audio, transcript or structured data)."""

    retryable = False


class ConsultationNotFoundError(MissingInputError):
    pass


class ProviderError(PipelineError):
    """An external AI provider returned a non-success response or was unreachable."""

    def __init__(
        self,
        provider: str,
        status_code: Optional[int] = None,
        body: str = "",
        message: str = "",
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.body = body
        detail = message or f"{status_code} - {body}"
        super().__init__(f"{provider} API error: {detail}")


class EmptyResultError(PipelineError):
    """The provider call succeeded but returned no usable content."""

    def __init__(self, provider: str, message: str = "") -> None:
        self.provider = provider
        super().__init__(message or f"No content in {provider} API response")


class MalformedResponseError(PipelineError):
    """Generation output could not be parsed as the expected JSON shape."""

    def __init__(self, reason: str, raw_response: str) -> None:
        self.reason = reason
        self.raw_response = raw_response
        super().__init__(
            f"Failed to parse structured data from AI response ({reason}). "
            f"Response content: {raw_response}"
        )


class InvalidTransitionError(PipelineError):
    """A processing_status change not allowed by the pipeline state machine."""

    retryable = False

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move processing_status from '{current}' to '{target}'")


# ── Document review errors ──────────────────────────────────────


class DocumentError(Exception):
    """Base class for clinical document review errors."""


class DocumentNotFoundError(DocumentError):
    pass


class DocumentAlreadyApprovedError(DocumentError):
    """Approval is one-way; a document cannot be approved twice."""


class DocumentLockedError(DocumentError):
    """Approved content is immutable; create a new version instead."""


# ── Non-fatal warnings ──────────────────────────────────────────


@dataclass(frozen=True)
class PipelineWarning:
    message: str

    @property
    def kind(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class SchemaWarning(PipelineWarning):
    """Structured data is missing one or more of the expected keys."""

    missing_keys: tuple[str, ...] = ()


@dataclass(frozen=True)
class UnclassifiedLetterTypeWarning(PipelineWarning):
    """A letters_required entry matched no known letter type and was skipped."""

    descriptor: str = ""
