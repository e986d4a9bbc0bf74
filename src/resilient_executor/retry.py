from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt
from tenacity.retry import retry_base
from tenacity.wait import wait_base

from resilient_executor.circuit_breaker import CircuitOpenError
from resilient_executor.errors import (
    OperationTimeoutError,
    PoolExhaustedError,
    ResourceCreationError,
    RetriesExhaustedError,
    TransientError,
)

DEFAULT_RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TransientError,
    ResourceCreationError,
    OperationTimeoutError,
    ConnectionError,
    TimeoutError,
)

# Retrying these would defeat their purpose; callers may retry them at a
# coarser granularity.
NEVER_RETRIED: tuple[type[BaseException], ...] = (
    CircuitOpenError,
    PoolExhaustedError,
    RetriesExhaustedError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Decide whether and when a failed attempt is re-attempted.

    Attributes:
        max_attempts: Total attempts, including the first.
        base_delay: Backoff before the second attempt, in seconds.
        max_delay: Upper bound for any single backoff.
        jitter: Draw each delay uniformly from ``[0, delay]``.
        retryable_exceptions: Error kinds considered transient.
        terminal_exceptions: Error kinds never retried even when they
            subclass a retryable kind.
    """

    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 10.0
    jitter: bool = True
    retryable_exceptions: tuple[type[BaseException], ...] = (
        DEFAULT_RETRYABLE_EXCEPTIONS
    )
    terminal_exceptions: tuple[type[BaseException], ...] = ()

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    def is_retryable(self, error: BaseException | None) -> bool:
        """Return whether ``error`` is classified as transient."""
        if not isinstance(error, Exception):
            return False
        if isinstance(error, NEVER_RETRIED + self.terminal_exceptions):
            return False
        return isinstance(error, self.retryable_exceptions)

    def should_retry(self, attempt_index: int, error: BaseException) -> bool:
        """Return whether attempt ``attempt_index`` (0-based) may be followed
        by another one after failing with ``error``."""
        if attempt_index + 1 >= self.max_attempts:
            return False
        return self.is_retryable(error)

    def delay_for(self, attempt_index: int) -> float:
        """Return the backoff to sleep after attempt ``attempt_index`` fails."""
        try:
            delay = min(self.base_delay * 2**attempt_index, self.max_delay)
        except OverflowError:
            delay = self.max_delay
        if self.jitter:
            return random.uniform(0.0, delay)
        return delay

    def with_overrides(self, **changes: Any) -> RetryPolicy:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def build_retrying(
        self,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        before_sleep: Callable[[RetryCallState], None] | None = None,
    ) -> AsyncRetrying:
        """Build an ``AsyncRetrying`` controller enforcing this policy.

        Non-retryable errors are re-raised as-is. Exhausting ``max_attempts``
        on a retryable error raises ``tenacity.RetryError``.
        """
        options: dict[str, Any] = {
            "retry": _RetryIfPolicyAllows(self),
            "wait": _PolicyBackoff(self),
            "stop": stop_after_attempt(self.max_attempts),
            "reraise": False,
        }
        if sleep is not None:
            options["sleep"] = sleep
        if before_sleep is not None:
            options["before_sleep"] = before_sleep
        return AsyncRetrying(**options)


class _RetryIfPolicyAllows(retry_base):
    def __init__(self, policy: RetryPolicy) -> None:
        self._policy = policy

    def __call__(self, retry_state: RetryCallState) -> bool:
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            return False
        return self._policy.is_retryable(outcome.exception())


class _PolicyBackoff(wait_base):
    def __init__(self, policy: RetryPolicy) -> None:
        self._policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return self._policy.delay_for(retry_state.attempt_number - 1)


@dataclass(frozen=True)
class RetryAttempt:
    """One scheduled re-attempt within a single executor call."""

    attempt_index: int
    error: BaseException | None
    delay: float

    @classmethod
    def from_retry_state(cls, retry_state: RetryCallState) -> RetryAttempt:
        outcome = retry_state.outcome
        error = None
        if outcome is not None and outcome.failed:
            error = outcome.exception()
        next_action = retry_state.next_action
        delay = 0.0 if next_action is None else float(next_action.sleep)
        return cls(
            attempt_index=retry_state.attempt_number - 1,
            error=error,
            delay=delay,
        )
