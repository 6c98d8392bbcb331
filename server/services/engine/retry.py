"""Retry policy: failure classification and jittered exponential backoff.

Classification order:
1. Non-retryable message patterns (validation, invalid, unauthorized, ...)
   win over everything else, including status codes.
2. HTTP status codes: 4xx is final except 408 and 429; 5xx is retryable.
3. An explicit retryable flag on the error (TransientExecutionError,
   PermanentExecutionError, timed out SandboxError).
4. Retryable message patterns (timeout, network, connection reset/refused).
5. Anything else is not retried.
"""

import random
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from constants import BACKOFF_JITTER_RATIO, MAX_BACKOFF_MS
from services.engine.exceptions import SandboxError
from services.engine.models import RetryPolicy

NON_RETRYABLE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"validation",
        r"invalid",
        r"unauthorized",
        r"forbidden",
        r"not found",
        r"bad request",
        r"missing required",
        r"blocked by ssrf",
    )
]

RETRYABLE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"timeout",
        r"timed out",
        r"network",
        r"econnrefused",
        r"econnreset",
        r"etimedout",
        r"connection reset",
        r"connection refused",
        r"connection error",
        r"socket hang up",
        r"temporar",
        r"rate limit",
    )
]


def _message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message", ""))
    return str(error) if error is not None else ""


def _status_code(error: Any) -> Optional[int]:
    if isinstance(error, dict):
        code = error.get("statusCode", error.get("status_code"))
    else:
        code = getattr(error, "status_code", None)
    return code if isinstance(code, int) else None


def is_retryable(error: Union[BaseException, dict, str, None]) -> bool:
    """Classify a failure as retryable or final."""
    message = _message(error)

    for pattern in NON_RETRYABLE_PATTERNS:
        if pattern.search(message):
            return False

    status_code = _status_code(error)
    if status_code is not None:
        if 400 <= status_code < 500:
            return status_code in (408, 429)
        if status_code >= 500:
            return True

    if isinstance(error, SandboxError) and error.timed_out:
        return True
    flag = getattr(error, "retryable", None)
    if isinstance(flag, bool):
        return flag

    for pattern in RETRYABLE_PATTERNS:
        if pattern.search(message):
            return True

    return False


def should_retry(error: Any, attempt_number: int, max_attempts: int) -> bool:
    """Retry only while attempts remain and the failure is retryable.

    Args:
        error: Exception, error dict or message
        attempt_number: 1-based number of the attempt that just failed
        max_attempts: Total attempts allowed
    """
    if attempt_number >= max_attempts:
        return False
    return is_retryable(error)


def calculate_backoff(attempt_number: int, policy: RetryPolicy, rng: Any = random) -> int:
    """Delay in milliseconds before the next attempt.

    backoff_ms * multiplier ^ (attempt - 1), jittered by +/-20%, capped at 60s.
    """
    attempt_number = max(1, attempt_number)
    try:
        delay = policy.backoff_ms * (policy.backoff_multiplier ** (attempt_number - 1))
    except OverflowError:
        return MAX_BACKOFF_MS
    if delay >= MAX_BACKOFF_MS * 2:
        return MAX_BACKOFF_MS
    jitter = delay * BACKOFF_JITTER_RATIO * (rng.random() * 2 - 1)
    return int(min(round(delay + jitter), MAX_BACKOFF_MS))


def next_retry_time(attempt_number: int, policy: RetryPolicy, rng: Any = random) -> datetime:
    return datetime.now(timezone.utc) + timedelta(milliseconds=calculate_backoff(attempt_number, policy, rng))
