"""Bounded per-destination pool of reusable resources.

Each destination owns an independent partition: its idle stack, the set of
checked-out resources, the number of in-progress factory calls and a FIFO of
waiting acquirers. A resource is either idle or checked out by exactly one
caller. ``idle + checked_out + creating`` never exceeds ``max_size``.

Releases hand a resource (or a free creation slot, after a discard) directly
to the oldest waiter, so a saturated pool serves waiters in arrival order.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import Generic, TypeVar, cast

from resilient_executor.errors import (
    OperationTimeoutError,
    PoolExhaustedError,
    ResourceBrokenError,
    ResourceCreationError,
)

R = TypeVar("R")

ResourceFactory = Callable[[str], Awaitable[R]]
ResourceDisposer = Callable[[R], Awaitable[None] | None]

DEFAULT_DISCARD_ON: tuple[type[BaseException], ...] = (
    ResourceBrokenError,
    OperationTimeoutError,
)

_logger = logging.getLogger(__name__)


class _FreshSlot:
    """Grant telling a waiter it may create a new resource."""


_FRESH = _FreshSlot()


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time occupancy of one destination partition."""

    destination: str
    idle: int
    checked_out: int
    creating: int
    waiting: int
    max_size: int

    @property
    def live(self) -> int:
        return self.idle + self.checked_out + self.creating


@dataclass
class _Partition(Generic[R]):
    destination: str
    lock: threading.Lock = field(default_factory=threading.Lock)
    idle: list[R] = field(default_factory=list)
    checked_out: dict[int, R] = field(default_factory=dict)
    creating: int = 0
    waiters: deque[asyncio.Future[object]] = field(default_factory=deque)

    @property
    def live(self) -> int:
        return len(self.idle) + len(self.checked_out) + self.creating


class ResourcePool(Generic[R]):
    """Bound and reuse expensive resources per destination."""

    def __init__(
        self,
        factory: ResourceFactory[R],
        *,
        max_size: int = 10,
        acquire_timeout: float = 5.0,
        dispose: ResourceDisposer[R] | None = None,
    ) -> None:
        """Create an empty pool.

        Args:
            factory: Async callable creating a new resource for a destination.
            max_size: Maximum live resources per destination.
            acquire_timeout: Default seconds to wait when a destination is
                saturated.
            dispose: Optional hook closing resources that are discarded or
                left idle when the pool closes. May be sync or async.

        Raises:
            ValueError: If ``max_size`` or ``acquire_timeout`` is invalid.
        """
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        if acquire_timeout < 0:
            raise ValueError("acquire_timeout must be >= 0")
        self._factory = factory
        self.max_size = max_size
        self.acquire_timeout = acquire_timeout
        self._dispose = dispose
        self._partitions: dict[str, _Partition[R]] = {}
        self._partitions_lock = threading.Lock()
        self._disposals: set[asyncio.Future[object]] = set()
        self._closed = False

    def _partition(self, destination: str) -> _Partition[R]:
        partition = self._partitions.get(destination)
        if partition is not None:
            return partition
        with self._partitions_lock:
            return self._partitions.setdefault(destination, _Partition(destination))

    def _hand_over(self, partition: _Partition[R], grant: object) -> bool:
        """Give ``grant`` to the oldest live waiter. Caller holds the lock."""
        while partition.waiters:
            waiter = partition.waiters.popleft()
            if waiter.done():
                continue
            if grant is _FRESH:
                partition.creating += 1
            else:
                resource = cast(R, grant)
                partition.checked_out[id(resource)] = resource
            waiter.set_result(grant)
            return True
        return False

    def _return_idle(self, partition: _Partition[R], resource: R) -> None:
        if not self._hand_over(partition, resource):
            partition.idle.append(resource)

    def _free_slot(self, partition: _Partition[R]) -> None:
        if partition.live < self.max_size:
            self._hand_over(partition, _FRESH)

    async def acquire(self, destination: str, *, timeout: float | None = None) -> R:
        """Check out a resource for ``destination``.

        Idle resources are reused most-recently-released first. When none is
        idle and the partition has room, a new resource is created.
        Otherwise the caller waits for a release.

        Args:
            destination: Destination whose partition to draw from.
            timeout: Seconds to wait when saturated. Defaults to the pool's
                ``acquire_timeout``.

        Raises:
            PoolExhaustedError: No resource became available in time.
            ResourceCreationError: The factory failed.
            RuntimeError: The pool has been closed.
        """
        if self._closed:
            raise RuntimeError("pool is closed")
        wait_timeout = self.acquire_timeout if timeout is None else timeout
        partition = self._partition(destination)

        waiter: asyncio.Future[object] | None = None
        with partition.lock:
            if partition.idle:
                resource = partition.idle.pop()
                partition.checked_out[id(resource)] = resource
                return resource
            if partition.live < self.max_size:
                partition.creating += 1
            elif wait_timeout <= 0:
                raise PoolExhaustedError(
                    destination, max_size=self.max_size, timeout=wait_timeout
                )
            else:
                waiter = asyncio.get_running_loop().create_future()
                partition.waiters.append(waiter)

        if waiter is not None:
            grant = await self._wait(partition, waiter, wait_timeout)
            if grant is not _FRESH:
                return cast(R, grant)
        return await self._create(partition)

    async def _wait(
        self,
        partition: _Partition[R],
        waiter: asyncio.Future[object],
        timeout: float,
    ) -> object:
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except BaseException as exc:
            with partition.lock:
                with suppress(ValueError):
                    partition.waiters.remove(waiter)
                if (
                    waiter.done()
                    and not waiter.cancelled()
                    and waiter.exception() is None
                ):
                    # Granted just before the timeout or cancellation landed.
                    grant = waiter.result()
                    if grant is _FRESH:
                        partition.creating -= 1
                        self._free_slot(partition)
                    else:
                        resource = cast(R, grant)
                        partition.checked_out.pop(id(resource), None)
                        self._return_idle(partition, resource)
            if isinstance(exc, TimeoutError):
                raise PoolExhaustedError(
                    partition.destination, max_size=self.max_size, timeout=timeout
                ) from exc
            raise

    async def _create(self, partition: _Partition[R]) -> R:
        created = False
        resource: R | None = None
        try:
            resource = await self._factory(partition.destination)
            created = True
        except Exception as exc:
            raise ResourceCreationError(partition.destination, exc) from exc
        finally:
            with partition.lock:
                partition.creating -= 1
                if created:
                    partition.checked_out[id(resource)] = cast(R, resource)
                else:
                    self._free_slot(partition)
        return cast(R, resource)

    def release(self, destination: str, resource: R, *, discard: bool = False) -> None:
        """Return a checked-out resource to ``destination``'s partition.

        Args:
            destination: Destination the resource was acquired for.
            resource: The checked-out resource.
            discard: Drop the resource instead of recycling it; a fresh one
                may be created on a later acquire.

        Raises:
            ValueError: If ``resource`` is not checked out from ``destination``.
        """
        partition = self._partition(destination)
        with partition.lock:
            if partition.checked_out.pop(id(resource), None) is None:
                raise ValueError(
                    f"resource is not checked out from destination {destination!r}"
                )
            if discard or self._closed:
                self._free_slot(partition)
            else:
                self._return_idle(partition, resource)
        if discard or self._closed:
            self._dispose_later(resource)

    @asynccontextmanager
    async def lease(
        self,
        destination: str,
        *,
        timeout: float | None = None,
        discard_on: tuple[type[BaseException], ...] = DEFAULT_DISCARD_ON,
    ) -> AsyncIterator[R]:
        """Hold one resource for the duration of the ``async with`` block.

        The resource is discarded when the block raises one of
        ``discard_on`` or is interrupted by cancellation, since its state is
        then unknown. Any other exit recycles it.
        """
        resource = await self.acquire(destination, timeout=timeout)
        discard = False
        try:
            yield resource
        except BaseException as exc:
            discard = isinstance(exc, discard_on) or not isinstance(exc, Exception)
            raise
        finally:
            self.release(destination, resource, discard=discard)

    def _dispose_later(self, resource: R) -> None:
        if self._dispose is None:
            return
        try:
            outcome = self._dispose(resource)
        except Exception:
            _logger.warning("Resource dispose hook failed", exc_info=True)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._disposals.add(task)
            task.add_done_callback(self._on_disposed)

    def _on_disposed(self, task: asyncio.Future[object]) -> None:
        self._disposals.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            _logger.warning(
                "Resource dispose hook failed",
                exc_info=(type(error), error, error.__traceback__),
            )

    def stats(self, destination: str) -> PoolStats:
        """Return current occupancy for ``destination``."""
        partition = self._partition(destination)
        with partition.lock:
            return PoolStats(
                destination=destination,
                idle=len(partition.idle),
                checked_out=len(partition.checked_out),
                creating=partition.creating,
                waiting=sum(1 for waiter in partition.waiters if not waiter.done()),
                max_size=self.max_size,
            )

    def destinations(self) -> tuple[str, ...]:
        """Return every destination that has a partition."""
        return tuple(self._partitions)

    async def close(self) -> None:
        """Dispose idle resources and refuse further acquires.

        Resources still checked out are disposed when they are released.
        """
        self._closed = True
        idle: list[R] = []
        for partition in tuple(self._partitions.values()):
            with partition.lock:
                idle.extend(partition.idle)
                partition.idle.clear()
                for waiter in partition.waiters:
                    if not waiter.done():
                        waiter.set_exception(RuntimeError("pool is closed"))
                partition.waiters.clear()
        for resource in idle:
            self._dispose_later(resource)
        if self._disposals:
            await asyncio.gather(*tuple(self._disposals), return_exceptions=True)
