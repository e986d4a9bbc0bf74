"""Core circuit breaker implementation."""

import logging
import sys
import threading
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import ParamSpec, TypeVar

from resilient_executor.circuit_breaker.exceptions import CircuitOpenError
from resilient_executor.circuit_breaker.metrics import BreakerListener
from resilient_executor.circuit_breaker.state import (
    Admission,
    BreakerSnapshot,
    CircuitState,
)
from resilient_executor.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)

T = TypeVar("T")
P = ParamSpec("P")

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _ProbeGate:
    """Allow at most one in-flight half-open probe per breaker instance."""

    def __init__(self) -> None:
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())
        self._thread_lock: threading.Lock | None = None
        if not self._gil_enabled:
            self._thread_lock = threading.Lock()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._thread_lock is None:
            if self._held:
                return False
            self._held = True
            return True

        with self._thread_lock:
            if self._held:
                return False
            self._held = True
            return True

    def release(self) -> None:
        if self._thread_lock is None:
            self._held = False
            return
        with self._thread_lock:
            self._held = False


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Consecutive failures while ``CLOSED`` before opening.
        recovery_timeout: Seconds to wait while ``OPEN`` before allowing a probe.
        expected_exceptions: Exceptions that count as failures.
        excluded_exceptions: Exceptions that must not count as failures.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    expected_exceptions: tuple[type[BaseException], ...] = (Exception,)
    excluded_exceptions: tuple[type[BaseException], ...] = ()

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout must be >= 0")


class CircuitBreaker:
    """Three-state fail-fast guard for one protected destination.

    The breaker is driven either through :meth:`call` or, when the caller
    owns the invocation (as the executor does), through :meth:`allow`
    followed by exactly one of :meth:`on_success`, :meth:`on_failure` or
    :meth:`on_neutral` for every allowed admission.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        storage: AbstractBreakerStorage | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Breaker name, normally the destination it protects.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            storage: State storage backend. Defaults to in-memory storage.
            listeners: Optional listener hooks for breaker events.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._storage = InMemoryBreakerStorage() if storage is None else storage
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._probe_gate = _ProbeGate()

    async def _emit(self, hook: str, *args: object) -> None:
        for listener in self._listeners:
            try:
                await getattr(listener, hook)(self.name, *args)
            except Exception:
                _logger.warning(
                    "Breaker listener failed; continuing",
                    exc_info=True,
                    extra={"breaker": self.name, "hook": hook},
                )

    @staticmethod
    def _retry_after(snapshot: BreakerSnapshot, now: datetime, timeout: float) -> float:
        # The cool-down restarts with every counted failure, including late
        # failures of calls admitted before the circuit opened.
        since = snapshot.last_failure_at or snapshot.opened_at or now
        elapsed = (now - since).total_seconds()
        return max(timeout - elapsed, 0.0)

    def counts_as_failure(self, exc: BaseException) -> bool:
        """Return whether ``exc`` should be counted against the breaker."""
        if isinstance(exc, self.config.excluded_exceptions):
            return False
        return isinstance(exc, self.config.expected_exceptions)

    async def allow(self) -> Admission:
        """Decide whether one call may reach the protected resource.

        Returns:
            A truthy admission when the call may proceed. While ``OPEN`` and
            past the recovery timeout, exactly one caller receives a probe
            admission; every other caller is rejected until the probe
            outcome is reported.
        """
        snapshot = await self._storage.get_state(self.name)
        if snapshot.state == CircuitState.CLOSED:
            return Admission(name=self.name, allowed=True)

        retry_after = self._retry_after(
            snapshot, _utcnow(), self.config.recovery_timeout
        )
        if retry_after > 0 or not self._probe_gate.try_acquire():
            await self._emit("on_call_rejected")
            return Admission(name=self.name, allowed=False, retry_after=retry_after)

        await self._emit("on_state_change", CircuitState.OPEN, CircuitState.HALF_OPEN)
        return Admission(name=self.name, allowed=True, probe=True)

    async def on_success(self, admission: Admission) -> None:
        """Report a successful outcome: reset the counter and close."""
        try:
            before = await self._storage.get_state(self.name)
            await self._storage.record_success(self.name)
            if admission.probe:
                await self._emit(
                    "on_state_change", CircuitState.HALF_OPEN, CircuitState.CLOSED
                )
            elif before.state == CircuitState.OPEN:
                await self._emit(
                    "on_state_change", CircuitState.OPEN, CircuitState.CLOSED
                )
            await self._emit("on_call_succeeded")
        finally:
            if admission.probe:
                self._probe_gate.release()

    async def on_failure(self, admission: Admission, exc: BaseException) -> bool:
        """Report a failed outcome.

        Exceptions that do not count as failures are treated as neutral.

        Returns:
            Whether the failure was counted.
        """
        if not self.counts_as_failure(exc):
            self.on_neutral(admission)
            return False

        try:
            snapshot = await self._storage.record_failure(self.name)
            await self._emit("on_call_failed", exc)
            if admission.probe:
                await self._storage.force_open(self.name)
                await self._emit(
                    "on_state_change", CircuitState.HALF_OPEN, CircuitState.OPEN
                )
            elif (
                snapshot.state == CircuitState.CLOSED
                and snapshot.failure_count >= self.config.failure_threshold
            ):
                await self._storage.force_open(self.name)
                await self._emit(
                    "on_state_change", CircuitState.CLOSED, CircuitState.OPEN
                )
        finally:
            if admission.probe:
                self._probe_gate.release()
        return True

    def on_neutral(self, admission: Admission) -> None:
        """Report an outcome that must leave the breaker untouched.

        A neutral probe is treated as if it never happened: the circuit stays
        ``OPEN`` and a later call may attempt a fresh probe.
        """
        if admission.probe:
            self._probe_gate.release()

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke an async callable under circuit breaker protection.

        Args:
            func: Dangerous async callable to execute.
            *args: Positional arguments forwarded to ``func``.
            **kwargs: Keyword arguments forwarded to ``func``.

        Returns:
            The result of ``func`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            Exception: The original exception from ``func`` when it is attempted
                and fails.
        """
        admission = await self.allow()
        if not admission:
            raise CircuitOpenError(self.name, retry_after=admission.retry_after)

        try:
            result = await func(*args, **kwargs)
        except BaseException as exc:
            await self.on_failure(admission, exc)
            raise
        await self.on_success(admission)
        return result

    async def state(self) -> CircuitState:
        """Return the effective state, including the in-process probe mode."""
        if self._probe_gate.held:
            return CircuitState.HALF_OPEN
        snapshot = await self._storage.get_state(self.name)
        return snapshot.state

    async def snapshot(self) -> BreakerSnapshot:
        """Return the persisted failure bookkeeping for this breaker."""
        return await self._storage.get_state(self.name)

    async def reset(self) -> None:
        """Force the breaker back to a healthy ``CLOSED`` state."""
        before = await self._storage.get_state(self.name)
        await self._storage.reset(self.name)
        if before.state == CircuitState.OPEN:
            await self._emit("on_state_change", CircuitState.OPEN, CircuitState.CLOSED)
