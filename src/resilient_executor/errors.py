"""Shared error types for resilient_executor.

Every error raised by the executor pipeline carries a ``stage`` naming the
part of the pipeline that produced it, so embedding services can render a
precise diagnostic. Operation errors are never wrapped unless retries were
exhausted.
"""

from __future__ import annotations

STAGE_CIRCUIT = "circuit"
STAGE_POOL = "pool"
STAGE_TIMEOUT = "timeout"
STAGE_RETRIES_EXHAUSTED = "retries_exhausted"


class TransientError(RuntimeError):
    """Generic retry-safe transient dependency failure."""


class ResourceBrokenError(RuntimeError):
    """Raised by an operation when its pooled resource must not be reused."""


class ResilienceError(Exception):
    """Base exception for failures produced by the resilience pipeline."""

    stage: str = ""

    def __init__(self, destination: str, message: str) -> None:
        self.destination = destination
        super().__init__(message)


class PoolExhaustedError(ResilienceError):
    """Raised when no pooled resource became available before the timeout."""

    stage = STAGE_POOL

    def __init__(self, destination: str, *, max_size: int, timeout: float) -> None:
        self.max_size = max_size
        self.timeout = timeout
        super().__init__(
            destination,
            f"pool_exhausted: {destination} max_size={max_size} "
            f"timeout={timeout:g}s",
        )


class ResourceCreationError(ResilienceError):
    """Raised when the pool factory fails to create a resource."""

    stage = STAGE_POOL

    def __init__(self, destination: str, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(
            destination,
            f"resource_creation_failed: {destination} "
            f"{cause.__class__.__name__}: {cause}",
        )


class OperationTimeoutError(ResilienceError):
    """Raised when one attempt exceeds its per-attempt deadline."""

    stage = STAGE_TIMEOUT

    def __init__(self, destination: str, *, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            destination,
            f"operation_timeout: {destination} operation={operation} "
            f"timeout={timeout:g}s",
        )


class RetriesExhaustedError(ResilienceError):
    """Raised after the retry policy gave up on a retryable failure.

    Attributes:
        destination: Destination the call targeted.
        attempts: Number of attempts made, including the first.
        last_error: Error observed on the final attempt.
    """

    stage = STAGE_RETRIES_EXHAUSTED

    def __init__(
        self,
        destination: str,
        *,
        attempts: int,
        last_error: BaseException,
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            destination,
            f"retries_exhausted: {destination} attempts={attempts} "
            f"last_error={last_error.__class__.__name__}: {last_error}",
        )
