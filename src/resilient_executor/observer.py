from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from resilient_executor.logging import StructuredLogger, log_info, log_warning

_logger = logging.getLogger(__name__)


class ExecutionOutcome(StrEnum):
    """Lifecycle stage reported by an execution event."""

    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionEvent:
    """Immutable record of one lifecycle step of an executor call.

    Attributes:
        destination: Destination the call targeted.
        operation: Operation name.
        outcome: Lifecycle stage.
        error: Failure for ``FAILED`` events, else ``None``.
        timestamp: Wall-clock seconds since the epoch.
        attempt: 0-based attempt index.
        cached: Whether the result was served from the response cache.
    """

    destination: str
    operation: str
    outcome: ExecutionOutcome
    error: BaseException | None = None
    timestamp: float = 0.0
    attempt: int = 0
    cached: bool = False

    @classmethod
    def create(
        cls,
        *,
        destination: str,
        operation: str,
        outcome: ExecutionOutcome,
        attempt: int,
        error: BaseException | None = None,
        cached: bool = False,
        now_fn: Callable[[], float] = time.time,
    ) -> ExecutionEvent:
        return cls(
            destination=destination,
            operation=operation,
            outcome=outcome,
            error=error,
            timestamp=now_fn(),
            attempt=attempt,
            cached=cached,
        )


class ExecutionObserver(Protocol):
    """Side channel notified synchronously of executor lifecycle events.

    Implementations must return quickly; slow consumers should enqueue.
    """

    def on_event(self, event: ExecutionEvent) -> None:
        """Handle one execution event."""


def notify_observers(
    observers: Sequence[ExecutionObserver],
    event: ExecutionEvent,
) -> None:
    """Deliver ``event`` to each observer in order.

    Observer errors are logged and suppressed so that later observers are
    still notified and the call result is never affected.
    """
    for observer in observers:
        try:
            observer.on_event(event)
        except Exception:
            _logger.warning(
                "Execution observer failed; continuing",
                exc_info=True,
                extra={
                    "observer": observer.__class__.__name__,
                    "destination": event.destination,
                    "operation": event.operation,
                    "outcome": str(event.outcome),
                },
            )


class LoggingObserver:
    """Write one structured log line per execution event."""

    def __init__(self, logger: StructuredLogger | logging.Logger) -> None:
        self._logger = logger

    def on_event(self, event: ExecutionEvent) -> None:
        fields: dict[str, object] = {
            "destination": event.destination,
            "operation": event.operation,
            "attempt": event.attempt,
            "cached": event.cached,
        }
        if event.outcome == ExecutionOutcome.FAILED:
            error = event.error
            if error is not None:
                fields["error_type"] = error.__class__.__name__
                fields["error"] = str(error)
                fields["stage"] = getattr(error, "stage", "operation")
            log_warning(self._logger, "execution.failed", **fields)
            return
        log_info(self._logger, f"execution.{event.outcome}", **fields)


class QueueObserver:
    """Hand events to an ``asyncio.Queue`` without ever blocking the caller.

    Events that do not fit are dropped and counted in :attr:`dropped`.
    """

    def __init__(self, queue: asyncio.Queue[ExecutionEvent]) -> None:
        self.queue = queue
        self.dropped = 0

    def on_event(self, event: ExecutionEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
