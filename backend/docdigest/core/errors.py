"""
Error taxonomy for the analysis pipeline.

  ConfigurationError       fatal, never retried (bad chunk sizing, zero budget)
  TransientModelError      retried by the retry policy, then escalated
  ContentPolicyRejection   never retried; degraded to a placeholder for a single
                           chunk, escalated to the next tier elsewhere
  CancellationError        not a failure; the run ends with a "cancelled" status
  TerminalProcessingError  raised only when the excerpt-only tier fails; the
                           one error that reaches the caller

Each error carries a stable ``code`` and a ``category`` (user / system /
network) used by ``user_message`` to phrase the line shown to the user.
"""

from __future__ import annotations

import time
from typing import Any, ClassVar, Literal

ErrorCategory = Literal["user", "system", "network"]


class DocDigestError(Exception):
    """Base class for every error raised by the pipeline."""

    code:     ClassVar[str] = "DOCDIGEST_ERROR"
    category: ClassVar[ErrorCategory] = "system"

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message   = message
        self.context   = context or {}
        self.timestamp = time.time()


class ConfigurationError(DocDigestError):
    code     = "CONFIGURATION_ERROR"
    category = "system"


class TransientModelError(DocDigestError):
    code     = "MODEL_REQUEST_FAILED"
    category = "network"


class ContentPolicyRejection(DocDigestError):
    code     = "CONTENT_POLICY_REJECTION"
    category = "user"


class CancellationError(DocDigestError):
    code     = "CANCELLED"
    category = "user"

    def __init__(self, message: str = "Processing cancelled by user", context: dict[str, Any] | None = None) -> None:
        super().__init__(message, context)


class TerminalProcessingError(DocDigestError):
    code     = "PROCESSING_FAILED"
    category = "network"


def user_message(error: BaseException, context: str) -> str:
    """Render a human-readable failure line for the progress sink."""
    if isinstance(error, DocDigestError):
        base = f"{context} failed: {error.message}"
        category = error.category
    else:
        base = f"{context} failed: {error}" if str(error) else f"{context} failed: an unknown error occurred"
        category = "system"

    if category == "user":
        advice = "Please check your input and try again."
    elif category == "network":
        advice = "This appears to be a connectivity or model availability issue. Please try again."
    else:
        advice = "This is a temporary issue. Please try again in a moment."

    line = f"❌ {base}\n\n{advice}"
    if isinstance(error, DocDigestError):
        line += f"\n*Error Code: {error.code}*"
    return line
