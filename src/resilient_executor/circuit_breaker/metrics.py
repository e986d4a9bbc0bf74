"""Observability hooks for circuit breakers."""

from typing import Protocol

from resilient_executor.circuit_breaker.state import CircuitState


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        ``on_state_change(OPEN → HALF_OPEN)`` is emitted once per admitted
        probe. Storage does not persist ``HALF_OPEN``.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, name: str) -> None:
        """Handle a successful outcome reported to the breaker."""

    async def on_call_failed(self, name: str, exc: BaseException) -> None:
        """Handle a counted failure reported to the breaker."""
