"""
returnguard/openai_retry.py
============================
Shared OpenAI API retry utility — ReturnGuard

Wraps ``client.chat.completions.create`` and retries transient failures
(429 rate-limit, 5xx server errors, connection timeouts) with exponential
back-off. Used by the OpenAI-backed image classifier.

Usage::

    from returnguard.openai_retry import chat_completions_with_retry

    response = chat_completions_with_retry(
        client,
        model="gpt-4o-mini",
        messages=[...],
        temperature=0.0,
        max_tokens=120,
    )

This module does NOT:
    - Create or manage OpenAI client instances
    - Interpret model output
"""

import logging
import time
from typing import Any

logger = logging.getLogger("returnguard.openai_retry")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MAX_RETRIES: int = 2          # total attempts = MAX_RETRIES + 1 (initial)
BASE_DELAY: float = 1.0       # seconds — first back-off delay
MAX_DELAY: float = 8.0        # cap on a single back-off step
BACKOFF_FACTOR: float = 2.0

_RETRYABLE_STATUS_CODES: set[int] = {429, 500, 502, 503, 504}
_RETRYABLE_EXCEPTIONS: set[str] = {
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
}


def _is_retryable(exc: Exception) -> bool:
    """Return True if the exception is a transient OpenAI error."""
    if type(exc).__name__ in _RETRYABLE_EXCEPTIONS:
        return True

    status_code = getattr(exc, "status_code", None)
    if status_code is not None:
        return status_code in _RETRYABLE_STATUS_CODES

    return False


def chat_completions_with_retry(
    client: Any,
    **kwargs: Any,
) -> Any:
    """
    Call ``client.chat.completions.create(**kwargs)`` with automatic retry.

    Args:
        client:  An instantiated ``openai.OpenAI`` client.
        **kwargs: Passed directly to ``client.chat.completions.create()``.

    Returns:
        The OpenAI ChatCompletion response object.

    Raises:
        The last exception if all retries are exhausted, or the first
        non-retryable exception.
    """
    delay = BASE_DELAY

    for attempt in range(MAX_RETRIES + 1):
        try:
            return client.chat.completions.create(**kwargs)
        except Exception as exc:
            if not _is_retryable(exc) or attempt == MAX_RETRIES:
                logger.warning(
                    "OpenAI call failed (attempt %d/%d, giving up): %s",
                    attempt + 1, MAX_RETRIES + 1, exc,
                )
                raise

            logger.warning(
                "OpenAI call failed (attempt %d/%d): %s — retrying in %.1fs",
                attempt + 1, MAX_RETRIES + 1, exc, delay,
            )
            time.sleep(delay)
            delay = min(delay * BACKOFF_FACTOR, MAX_DELAY)

    raise RuntimeError("unreachable")  # pragma: no cover
