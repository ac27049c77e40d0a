"""
Retry Policy — bounded retry with exponential back-off for model calls

Retry policy:
  - Retryable:     rate limits, quota exhaustion, transient unavailability,
                   timeouts, connection resets (see the two predicates below)
  - Non-retryable: content-policy refusals (retrying a refusal wastes a call
                   and will not change the outcome), configuration errors,
                   cancellation; these are re-raised on first sight
  - Back-off:      backoff_seconds × 2^(attempt-1), capped at max_backoff_seconds
  - Default:       2 attempts (one retry)

Cancellation is cooperative: the signal is polled before every attempt and
after every back-off sleep.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from docdigest.core.config import settings
from docdigest.core.errors import (
    CancellationError,
    ConfigurationError,
    ContentPolicyRejection,
    TransientModelError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Retryable exception detection
# ---------------------------------------------------------------------------

_NETWORK_EXCEPTION_TYPES = (
    # openai
    "APITimeoutError",
    "APIConnectionError",
    # httpx / generic
    "ConnectTimeout",
    "ReadTimeout",
    "ConnectError",
    "RemoteProtocolError",
)

_MODEL_EXCEPTION_TYPES = (
    "RateLimitError",
    "ServiceUnavailableError",
    "InternalServerError",
    "APITimeoutError",
)

_NETWORK_MESSAGE_HINTS = ("timeout", "timed out", "network", "connection", "econnreset", "enotfound")
_MODEL_MESSAGE_HINTS   = ("rate limit", "quota exceeded", "service unavailable", "timeout", "overloaded")

_NEVER_RETRY = (ContentPolicyRejection, ConfigurationError, CancellationError)


def _name_matches(exc: BaseException, names: tuple[str, ...]) -> bool:
    name = type(exc).__name__
    return any(name.endswith(n) for n in names)


def _message_matches(exc: BaseException, hints: tuple[str, ...]) -> bool:
    message = str(exc).lower()
    return any(h in message for h in hints)


def should_retry_network_error(exc: BaseException) -> bool:
    """True for transport-class failures: timeouts, resets, DNS errors."""
    if isinstance(exc, _NEVER_RETRY):
        return False
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    return _name_matches(exc, _NETWORK_EXCEPTION_TYPES) or _message_matches(exc, _NETWORK_MESSAGE_HINTS)


def should_retry_model_error(exc: BaseException) -> bool:
    """True for rate limits and transient unavailability; never for refusals."""
    if isinstance(exc, _NEVER_RETRY):
        return False
    if isinstance(exc, (TransientModelError, asyncio.TimeoutError, TimeoutError)):
        return True
    return _name_matches(exc, _MODEL_EXCEPTION_TYPES) or _message_matches(exc, _MODEL_MESSAGE_HINTS)


# ---------------------------------------------------------------------------
# with_retry
# ---------------------------------------------------------------------------

async def with_retry(
    operation:           Callable[[], Awaitable[T]],
    *,
    max_attempts:        int | None = None,
    should_retry:        Callable[[BaseException], bool] = should_retry_model_error,
    backoff_seconds:     float | None = None,
    max_backoff_seconds: float | None = None,
    cancel:              asyncio.Event | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds, attempts run out, or an error is
    classified as non-retryable.

    Raises:
        The last error from ``operation`` once retrying stops.
        CancellationError: if ``cancel`` is set before an attempt.
    """
    attempts = max_attempts if max_attempts is not None else settings.retry_max_attempts
    base     = backoff_seconds if backoff_seconds is not None else settings.retry_backoff_seconds
    cap      = max_backoff_seconds if max_backoff_seconds is not None else settings.retry_max_backoff_seconds
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        if cancel is not None and cancel.is_set():
            raise CancellationError()
        try:
            logger.debug("Retry | attempt %d/%d", attempt, attempts)
            return await operation()
        except Exception as exc:
            if isinstance(exc, _NEVER_RETRY) or attempt == attempts or not should_retry(exc):
                raise
            delay = min(cap, base * 2 ** (attempt - 1))
            logger.warning(
                "Retry | attempt %d/%d failed (%s: %s), retrying in %.2fs",
                attempt, attempts, type(exc).__name__, exc, delay,
            )
            await asyncio.sleep(delay)
            if cancel is not None and cancel.is_set():
                raise CancellationError() from exc

    raise AssertionError("unreachable")   # loop always returns or raises
