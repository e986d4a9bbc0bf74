from __future__ import annotations

import asyncio
import logging

import pytest

from resilient_executor.errors import PoolExhaustedError
from resilient_executor.observer import (
    ExecutionEvent,
    ExecutionOutcome,
    LoggingObserver,
    QueueObserver,
    notify_observers,
)
from tests.resilient_executor.support.fakes import (
    ExplodingObserver,
    FakeLogger,
    RecordingObserver,
)


def _event(
    outcome: ExecutionOutcome = ExecutionOutcome.STARTED,
    error: BaseException | None = None,
) -> ExecutionEvent:
    return ExecutionEvent.create(
        destination="db",
        operation="get_user",
        outcome=outcome,
        attempt=1,
        error=error,
        now_fn=lambda: 1_700_000_000.0,
    )


def test_event_create_stamps_timestamp() -> None:
    event = _event()

    assert event.timestamp == 1_700_000_000.0
    assert event.attempt == 1
    assert event.cached is False


def test_observers_are_notified_in_insertion_order() -> None:
    seen: list[str] = []

    class _Named:
        def __init__(self, name: str) -> None:
            self.name = name

        def on_event(self, event: ExecutionEvent) -> None:
            seen.append(self.name)

    notify_observers([_Named("first"), _Named("second"), _Named("third")], _event())

    assert seen == ["first", "second", "third"]


def test_failing_observer_is_logged_and_later_observers_still_run(
    caplog: pytest.LogCaptureFixture,
) -> None:
    exploding = ExplodingObserver()
    recording = RecordingObserver()

    with caplog.at_level(logging.WARNING, logger="resilient_executor.observer"):
        notify_observers([exploding, recording], _event())

    assert exploding.calls == 1
    assert len(recording.events) == 1
    assert "Execution observer failed" in caplog.text
    record = caplog.records[0]
    assert record.observer == "ExplodingObserver"  # type: ignore[attr-defined]


def test_logging_observer_logs_success_as_info(fake_logger: FakeLogger) -> None:
    LoggingObserver(fake_logger).on_event(_event(ExecutionOutcome.SUCCEEDED))

    assert fake_logger.calls == [
        (
            "info",
            "execution.succeeded",
            {
                "destination": "db",
                "operation": "get_user",
                "attempt": 1,
                "cached": False,
            },
        )
    ]


def test_logging_observer_logs_failure_with_stage(fake_logger: FakeLogger) -> None:
    error = PoolExhaustedError("db", max_size=2, timeout=0.5)

    LoggingObserver(fake_logger).on_event(_event(ExecutionOutcome.FAILED, error))

    level, event, fields = fake_logger.calls[0]
    assert (level, event) == ("warning", "execution.failed")
    assert fields["stage"] == "pool"
    assert fields["error_type"] == "PoolExhaustedError"


def test_logging_observer_marks_operation_errors_with_operation_stage(
    fake_logger: FakeLogger,
) -> None:
    LoggingObserver(fake_logger).on_event(
        _event(ExecutionOutcome.FAILED, KeyError("missing"))
    )

    assert fake_logger.calls[0][2]["stage"] == "operation"


@pytest.mark.asyncio
async def test_queue_observer_never_blocks_and_counts_drops() -> None:
    queue: asyncio.Queue[ExecutionEvent] = asyncio.Queue(maxsize=1)
    observer = QueueObserver(queue)

    observer.on_event(_event(ExecutionOutcome.STARTED))
    observer.on_event(_event(ExecutionOutcome.SUCCEEDED))

    assert observer.dropped == 1
    assert (await queue.get()).outcome == ExecutionOutcome.STARTED
