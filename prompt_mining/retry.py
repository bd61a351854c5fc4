"""Retry decisions for gateway calls.

The policy is a pure function of the attempt number and the classified error,
which keeps the backoff schedule testable without sleeping.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from .errors import MintingError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given 1-based attempt: base, 2*base, 4*base..."""

        return self.base_delay * (2 ** (attempt - 1))


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class AttemptOutcome(Generic[T]):
    """Result of one attempt: either a value or a classified error."""

    value: Optional[T] = None
    error: Optional[MintingError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "AttemptOutcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: MintingError) -> "AttemptOutcome[T]":
        return cls(error=error)


def next_action(policy: RetryPolicy, attempt: int, error: MintingError) -> RetryDecision:
    """Decide whether to retry after ``attempt`` (1-based) failed with ``error``."""

    if not error.retryable:
        return RetryDecision(retry=False, reason="fatal")
    if attempt >= policy.max_attempts:
        return RetryDecision(retry=False, reason="exhausted")
    return RetryDecision(retry=True, delay=policy.delay_for(attempt), reason="retryable")


__all__ = ["AttemptOutcome", "RetryDecision", "RetryPolicy", "next_action"]
