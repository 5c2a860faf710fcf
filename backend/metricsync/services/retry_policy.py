"""Failure classification and retry backoff for refresh jobs.

WHAT:
    - classify_error(): maps a gateway error to a closed set of classes
    - exponential_backoff() / backoff_with_jitter(): delay before re-delivery

WHY:
    The worker's retry policy hinges on two transient signals from the ads
    API. Keeping the text matching in one function keeps the worker's
    control flow free of scattered substring checks and makes the policy
    testable on its own.

POLICY:
    - rate_limited: error carries "Retry in N seconds" -> base delay N seconds
    - quota_exhausted: RESOURCE_EXHAUSTED / quota marker -> base delay 5 min
    - other: terminal, not retried by the worker
    Delays double per attempt, cap at 10 minutes, then get +/-25% jitter.
"""

from __future__ import annotations

import enum
import random
import re
from dataclasses import dataclass
from typing import Callable, Optional

MAX_BACKOFF_SECONDS = 10 * 60
QUOTA_BASE_DELAY_SECONDS = 5 * 60
JITTER_RATIO = 0.25

# Matches "Retry in 30 seconds" / "retry in 723 seconds"
_RETRY_IN_RE = re.compile(r"[Rr]etry in (\d+) seconds")


class ErrorClass(str, enum.Enum):
    rate_limited = "rate_limited"
    quota_exhausted = "quota_exhausted"
    other = "other"


@dataclass(frozen=True)
class ErrorClassification:
    error_class: ErrorClass
    retry_after_seconds: Optional[int] = None

    @property
    def is_transient(self) -> bool:
        return self.error_class is not ErrorClass.other


def classify_error(error: BaseException | str) -> ErrorClassification:
    """Classify a failure by the text the ads API puts in its errors.

    The retry-after hint wins over the quota marker: Google's quota errors
    often carry both, and the explicit hint is the better delay.
    """
    text = str(error)

    match = _RETRY_IN_RE.search(text)
    if match:
        return ErrorClassification(ErrorClass.rate_limited, int(match.group(1)))

    if "RESOURCE_EXHAUSTED" in text or "quota" in text.lower():
        return ErrorClassification(ErrorClass.quota_exhausted)

    return ErrorClassification(ErrorClass.other)


def exponential_backoff(base_delay_seconds: float, attempt: int) -> float:
    """base x 2^(attempt-1), capped at 10 minutes. `attempt` is 1-based."""
    attempt = max(1, attempt)
    return min(base_delay_seconds * (2 ** (attempt - 1)), MAX_BACKOFF_SECONDS)


def backoff_with_jitter(
    base_delay_seconds: float,
    attempt: int,
    rand: Callable[[], float] = random.random,
) -> int:
    """Exponential backoff perturbed by +/-25% so workers don't retry in lockstep."""
    delay = exponential_backoff(base_delay_seconds, attempt)
    jitter = delay * JITTER_RATIO * (rand() * 2 - 1)
    return round(delay + jitter)


def retry_delay_for(
    classification: ErrorClassification,
    attempt: int,
    rand: Callable[[], float] = random.random,
) -> Optional[int]:
    """Jittered delay for a transient classification, None for terminal ones."""
    if classification.error_class is ErrorClass.rate_limited:
        return backoff_with_jitter(classification.retry_after_seconds or 0, attempt, rand)
    if classification.error_class is ErrorClass.quota_exhausted:
        return backoff_with_jitter(QUOTA_BASE_DELAY_SECONDS, attempt, rand)
    return None
