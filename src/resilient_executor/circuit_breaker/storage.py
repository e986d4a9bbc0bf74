"""State storage for circuit breakers.

Storage is decoupled from breaker logic so that every destination's
bookkeeping lives under its own key and its own lock. One storage instance is
normally shared by all breakers of an executor.

Storage persists only ``CLOSED`` and ``OPEN``. ``HALF_OPEN`` is the
in-process probe mode of a breaker and is never written here.
"""

import asyncio
import sys
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import UTC, datetime

from resilient_executor.circuit_breaker.state import BreakerSnapshot, CircuitState


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AbstractBreakerStorage(ABC):
    """Abstract breaker storage interface."""

    @abstractmethod
    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current breaker snapshot for ``name``."""

    @abstractmethod
    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call and return the updated snapshot."""

    @abstractmethod
    async def record_failure(self, name: str) -> BreakerSnapshot:
        """Record a failed call and return the updated snapshot."""

    @abstractmethod
    async def force_open(self, name: str) -> BreakerSnapshot:
        """Force breaker ``name`` into ``OPEN`` and restart its cool-down."""

    @abstractmethod
    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker ``name`` to a healthy ``CLOSED`` state."""


class InMemoryBreakerStorage(AbstractBreakerStorage):
    """In-memory storage with per-name cooperative + optional thread locks."""

    def __init__(self) -> None:
        """Initialize in-memory snapshot and lock registries."""
        self._snapshots: dict[str, BreakerSnapshot] = {}
        self._async_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._thread_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())

    @asynccontextmanager
    async def _locked(self, name: str) -> AsyncIterator[None]:
        async_lock = self._async_locks[name]
        if self._gil_enabled:
            await async_lock.acquire()
            try:
                yield
            finally:
                async_lock.release()
            return

        thread_lock = self._thread_locks[name]
        thread_lock.acquire()
        try:
            await async_lock.acquire()
        except Exception:
            thread_lock.release()
            raise
        try:
            yield
        finally:
            async_lock.release()
            thread_lock.release()

    async def _update(
        self,
        name: str,
        change: Callable[[BreakerSnapshot], BreakerSnapshot],
    ) -> BreakerSnapshot:
        async with self._locked(name):
            current = self._snapshots.get(name) or BreakerSnapshot.healthy(name)
            updated = change(current)
            self._snapshots[name] = updated
            return updated

    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current snapshot, creating a healthy one if missing."""
        return await self._update(name, lambda snapshot: snapshot)

    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call.

        Already-healthy snapshots are returned as-is to avoid hot-path
        allocations.
        """

        def _close(snapshot: BreakerSnapshot) -> BreakerSnapshot:
            if snapshot.is_healthy:
                return snapshot
            return BreakerSnapshot.healthy(name)

        return await self._update(name, _close)

    async def record_failure(self, name: str) -> BreakerSnapshot:
        """Increment the consecutive failure counter and stamp the failure."""
        return await self._update(
            name,
            lambda snapshot: replace(
                snapshot,
                failure_count=snapshot.failure_count + 1,
                last_failure_at=_utcnow(),
            ),
        )

    async def force_open(self, name: str) -> BreakerSnapshot:
        """Force the circuit open and restart the recovery timeout window."""
        return await self._update(
            name,
            lambda snapshot: replace(
                snapshot,
                state=CircuitState.OPEN,
                opened_at=_utcnow(),
            ),
        )

    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker state and counters to a healthy default snapshot."""
        return await self._update(name, lambda _: BreakerSnapshot.healthy(name))
