from __future__ import annotations

from enum import Enum
from typing import Callable

from chat_gateway.core.errors import (
    ConnectionNotReady,
    NotFoundError,
    PermanentSendError,
    RateLimitExceeded,
    TransientSendError,
    ValidationError,
)


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    RECIPIENT = "recipient"
    CONNECTION = "connection"
    BLOCKED = "blocked"


def classify(exc: BaseException) -> FailureKind:
    """Map a send failure to how the job reacts to it.

    RECIPIENT fails only the current recipient. CONNECTION and BLOCKED end the job at
    once. TRANSIENT is retried while attempts remain; unknown errors count as transient.
    """
    if isinstance(exc, TransientSendError):
        return FailureKind.TRANSIENT
    if isinstance(exc, (RateLimitExceeded, ConnectionNotReady, NotFoundError)):
        return FailureKind.CONNECTION
    if isinstance(exc, PermanentSendError):
        return FailureKind.BLOCKED if exc.blocked else FailureKind.RECIPIENT
    if isinstance(exc, ValidationError):
        return FailureKind.RECIPIENT
    # network errors, timeouts and client crashes land here
    return FailureKind.TRANSIENT


class RetryPolicy:
    def __init__(self, delays_seconds: list[float], jitter: Callable[[float], float] | None = None) -> None:
        self.delays_seconds = list(delays_seconds) or [5.0, 15.0, 30.0]
        self._jitter = jitter

    def base_delay(self, attempts_made: int) -> float:
        """Delay before the next attempt once ``attempts_made`` attempts have failed."""
        index = min(max(attempts_made, 1), len(self.delays_seconds)) - 1
        return self.delays_seconds[index]

    def delay(self, attempts_made: int) -> float:
        base = self.base_delay(attempts_made)
        return self._jitter(base) if self._jitter is not None else base

    @staticmethod
    def should_retry(kind: FailureKind, attempts_made: int, max_attempts: int) -> bool:
        return kind == FailureKind.TRANSIENT and attempts_made < max_attempts
