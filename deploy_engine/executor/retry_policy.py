# deploy_engine/executor/retry_policy.py
"""Retry/timeout policy for the apply step."""

import math
import re
from enum import Enum

from deploy_engine.core.errors import ApplyTimeoutError


class FailureKind(str, Enum):
    TIMEOUT = "TIMEOUT"
    OTHER = "OTHER"


# Fallback only; structured outcomes carry a timed_out flag.
_TIMEOUT_SIGNATURES = re.compile(
    r"timed?\s*out|timeout|deadline exceeded|context deadline|ETIMEDOUT",
    re.IGNORECASE,
)


class RetryPolicy:
    """
    Decides whether a failed apply is retried.

    - Only timeouts are retried
    - At most `max_retries` retries (one by default)
    - Each retry gets a strictly larger timeout budget
    """

    def __init__(self, max_retries: int = 1, timeout_factor: float = 1.5):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if timeout_factor <= 1:
            raise ValueError("timeout_factor must be greater than 1")
        self.max_retries = max_retries
        self.timeout_factor = timeout_factor

    def classify(self, failure) -> FailureKind:
        """Classify an ApplyOutcome, an exception or a message."""
        if isinstance(failure, ApplyTimeoutError):
            return FailureKind.TIMEOUT

        timed_out = getattr(failure, "timed_out", None)
        if timed_out is not None:
            return FailureKind.TIMEOUT if timed_out else FailureKind.OTHER

        if isinstance(failure, TimeoutError):
            return FailureKind.TIMEOUT

        message = getattr(failure, "message", None) or str(failure or "")
        if _TIMEOUT_SIGNATURES.search(message):
            return FailureKind.TIMEOUT
        return FailureKind.OTHER

    def should_retry(self, kind: FailureKind, attempt: int) -> bool:
        """`attempt` is the 1-based number of the attempt that just failed."""
        return kind == FailureKind.TIMEOUT and attempt <= self.max_retries

    def next_timeout(self, current: float) -> float:
        return float(max(math.ceil(current * self.timeout_factor), current + 1))
