"""Domain-specific exceptions for DiffWarden.

Every external integration failure should raise one of these exceptions
so that calling code can handle failures precisely. Never raise bare
Exception or use generic error types.
"""

from __future__ import annotations


# =============================================================================
# Webhook payloads
# =============================================================================


class MalformedPayloadError(Exception):
    """A webhook payload is missing the fields needed to build a review target."""


# =============================================================================
# Source control (Bitbucket / GitHub)
# =============================================================================


class SourceControlError(Exception):
    """Base exception for all source-control host failures."""


class SourceControlAuthError(SourceControlError):
    """Credentials were rejected — check the app password / GitHub App settings."""


class SourceControlRateLimitError(SourceControlError):
    """The source-control host rate limit was exceeded."""

    def __init__(self, message: str = "Rate limit exceeded", reset_at: str = "") -> None:
        self.reset_at = reset_at
        super().__init__(message)


class SourceControlAPIError(SourceControlError):
    """Generic API error with status code context."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        self.status_code = status_code
        super().__init__(message)


class DiffFetchError(SourceControlError):
    """The diff for a commit or pull request could not be retrieved."""


class CommentPostError(SourceControlError):
    """The review comment could not be posted."""


# =============================================================================
# LLM / AI
# =============================================================================


class LLMError(Exception):
    """Base exception for LLM integration failures."""


class LLMRateLimitError(LLMError):
    """LLM API rate limit exceeded (after retries, when raised to callers)."""


class LLMTimeoutError(LLMError):
    """The LLM call did not complete within the request timeout."""
