"""Record-level retry decisions.

`decide_retry` is a pure function of the attempt count, the ceiling and the
failure class. `RetryPolicy` binds the configured ceiling and delays so the
document processor gets a decision and a requeue delay from one call.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from tenacity import RetryCallState, wait_exponential

from docpipe.errors import (
    MalformedResponseError,
    MissingInputError,
    ProviderRequestError,
    ProviderUnavailableError,
    TransientProviderError,
    UnsupportedInputError,
)


class FailureClass(str, Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    MALFORMED_RESPONSE = "malformed_response"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    MISSING_INPUT = "missing_input"
    UNSUPPORTED_INPUT = "unsupported_input"


class RetryAction(str, Enum):
    RETRY = "retry"
    TERMINAL_FAIL = "terminal_fail"


_TERMINAL_CLASSES = frozenset({FailureClass.MISSING_INPUT, FailureClass.UNSUPPORTED_INPUT})


def decide_retry(attempts: int, ceiling: int, failure_class: FailureClass) -> RetryAction:
    if failure_class in _TERMINAL_CLASSES:
        return RetryAction.TERMINAL_FAIL
    if attempts >= ceiling:
        return RetryAction.TERMINAL_FAIL
    return RetryAction.RETRY


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """``min(base * 2**(attempt-1), cap)`` for a 1-based attempt number.

    Same tenacity wait strategy the analysis client uses between model retries,
    evaluated for the record-level attempt count.
    """
    state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
    state.attempt_number = max(attempt, 1)
    return float(wait_exponential(multiplier=base, max=cap)(state))


def classify_failure(exc: BaseException) -> FailureClass:
    if isinstance(exc, MissingInputError):
        return FailureClass.MISSING_INPUT
    if isinstance(exc, UnsupportedInputError):
        return FailureClass.UNSUPPORTED_INPUT
    if isinstance(exc, ProviderUnavailableError):
        return FailureClass.RATE_LIMITED if exc.rate_limited else FailureClass.PROVIDER_UNAVAILABLE
    if isinstance(exc, TransientProviderError):
        return FailureClass.RATE_LIMITED if exc.rate_limited else FailureClass.TRANSIENT
    if isinstance(exc, MalformedResponseError):
        return FailureClass.MALFORMED_RESPONSE
    if isinstance(exc, ProviderRequestError):
        return FailureClass.PROVIDER_UNAVAILABLE
    # Unknown errors are treated as transient; the attempt ceiling bounds them.
    return FailureClass.TRANSIENT


@dataclass(slots=True, frozen=True)
class RetryDecision:
    action: RetryAction
    failure_class: FailureClass
    delay_seconds: float = 0.0

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    requeue_delay_seconds: float = 5.0
    rate_limit_backoff_seconds: float = 20.0
    rate_limit_backoff_max_seconds: float = 60.0

    @classmethod
    def from_config(cls, cfg) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.max_attempts,
            requeue_delay_seconds=cfg.requeue_delay_seconds,
            rate_limit_backoff_seconds=cfg.rate_limit_backoff_seconds,
            rate_limit_backoff_max_seconds=cfg.rate_limit_backoff_max_seconds,
        )

    def decide(self, attempts: int, exc: BaseException) -> RetryDecision:
        failure_class = classify_failure(exc)
        action = decide_retry(attempts, self.max_attempts, failure_class)
        if action is RetryAction.TERMINAL_FAIL:
            return RetryDecision(action, failure_class)
        if failure_class is FailureClass.RATE_LIMITED:
            delay = backoff_delay(
                attempts, self.rate_limit_backoff_seconds, self.rate_limit_backoff_max_seconds
            )
        else:
            delay = backoff_delay(
                attempts, self.requeue_delay_seconds, self.rate_limit_backoff_max_seconds
            )
        return RetryDecision(action, failure_class, delay)


__all__ = [
    "FailureClass",
    "RetryAction",
    "RetryDecision",
    "RetryPolicy",
    "backoff_delay",
    "classify_failure",
    "decide_retry",
]
