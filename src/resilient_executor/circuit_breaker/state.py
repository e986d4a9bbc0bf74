"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of one destination's failure bookkeeping.

    Attributes:
        name: Breaker name, normally the protected destination.
        state: Persisted breaker state (``CLOSED`` or ``OPEN``).
        failure_count: Consecutive failures since the last success.
        last_failure_at: Timestamp of the last counted failure, if any.
        opened_at: Timestamp when the breaker entered ``OPEN``, if open.
    """

    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: datetime | None
    opened_at: datetime | None

    @classmethod
    def healthy(cls, name: str) -> "BreakerSnapshot":
        """Return the initial ``CLOSED`` snapshot for ``name``."""
        return cls(
            name=name,
            state=CircuitState.CLOSED,
            failure_count=0,
            last_failure_at=None,
            opened_at=None,
        )

    @property
    def is_healthy(self) -> bool:
        return (
            self.state == CircuitState.CLOSED
            and self.failure_count == 0
            and self.last_failure_at is None
            and self.opened_at is None
        )


@dataclass(frozen=True)
class Admission:
    """Outcome of asking a breaker whether one call may proceed.

    Truthy when the call is allowed. A probe admission holds the breaker's
    single half-open slot until the outcome is reported back.

    Attributes:
        name: Breaker that produced the admission.
        allowed: Whether the call may invoke the protected resource.
        probe: Whether this admission is the half-open recovery probe.
        retry_after: Seconds until a probe may be attempted when rejected.
    """

    name: str
    allowed: bool
    probe: bool = False
    retry_after: float = 0.0

    def __bool__(self) -> bool:
        return self.allowed
