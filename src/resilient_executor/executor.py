"""Resilient execution path for calls to external destinations.

``ResilientExecutor.run`` composes, per call: response cache lookup, circuit
breaker admission, pooled resource lease, per-attempt timeout, breaker
bookkeeping, retry with backoff, cache store and observer notification.

One executor owns all breaker, pool and cache state for the destinations it
protects. Build it once at service startup and inject it into callers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable, Hashable, Sequence
from dataclasses import dataclass
from functools import partial
from typing import Any, Generic, TypeVar, cast

from tenacity import RetryCallState, RetryError

from resilient_executor.cache import ResponseCache
from resilient_executor.circuit_breaker import (
    AbstractBreakerStorage,
    BreakerListener,
    BreakerSnapshot,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    InMemoryBreakerStorage,
)
from resilient_executor.errors import OperationTimeoutError, RetriesExhaustedError
from resilient_executor.logging import (
    StructuredLogger,
    bound_execution_context,
    log_warning,
)
from resilient_executor.observer import (
    ExecutionEvent,
    ExecutionObserver,
    ExecutionOutcome,
    notify_observers,
)
from resilient_executor.pool import (
    DEFAULT_DISCARD_ON,
    PoolStats,
    ResourceDisposer,
    ResourceFactory,
    ResourcePool,
)
from resilient_executor.retry import RetryAttempt, RetryPolicy
from resilient_executor.settings import ExecutorSettings

R = TypeVar("R")
T = TypeVar("T")

Operation = Callable[[R], Awaitable[T]] | Callable[[R], T]


@dataclass(frozen=True)
class ExecutionOptions:
    """Per-call options for :meth:`ResilientExecutor.run`.

    Attributes:
        operation_name: Name used in events and logs. Defaults to the
            operation's qualified name.
        cache_key: Marks the operation as a cacheable idempotent read.
        cache_ttl: TTL for the stored result. Defaults to the cache's TTL.
        timeout: Per-attempt deadline in seconds, overriding the executor's.
        acquire_timeout: Pool wait in seconds, overriding the pool's.
        retry: Retry policy overriding the executor's for this call.
        blocking: Run the operation in a worker thread. A blocking attempt
            that times out is abandoned rather than cancelled.
    """

    operation_name: str | None = None
    cache_key: Hashable | None = None
    cache_ttl: float | None = None
    timeout: float | None = None
    acquire_timeout: float | None = None
    retry: RetryPolicy | None = None
    blocking: bool = False

    def __post_init__(self) -> None:
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be > 0 when provided")
        if self.cache_ttl is not None and self.cache_ttl <= 0:
            raise ValueError("cache_ttl must be > 0 when provided")
        if self.acquire_timeout is not None and self.acquire_timeout < 0:
            raise ValueError("acquire_timeout must be >= 0 when provided")


@dataclass(frozen=True)
class DestinationHealth:
    """Breaker and pool view of one destination."""

    destination: str
    state: CircuitState
    breaker: BreakerSnapshot
    pool: PoolStats


def _operation_name(operation: Callable[..., object]) -> str:
    name = getattr(operation, "__qualname__", None)
    if name is None:
        name = getattr(operation, "__name__", None)
    if name is None:
        name = operation.__class__.__qualname__
    return str(name)


class ResilientExecutor(Generic[R]):
    """Run caller-supplied operations against pooled, breaker-guarded
    destinations with retries and optional caching."""

    def __init__(
        self,
        pool: ResourcePool[R],
        *,
        breaker_config: CircuitBreakerConfig | None = None,
        breaker_storage: AbstractBreakerStorage | None = None,
        breaker_listeners: Sequence[BreakerListener] = (),
        retry_policy: RetryPolicy | None = None,
        cache: ResponseCache | None = None,
        observers: Sequence[ExecutionObserver] = (),
        operation_timeout: float | None = None,
        discard_on: tuple[type[BaseException], ...] = DEFAULT_DISCARD_ON,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: StructuredLogger | logging.Logger | None = None,
    ) -> None:
        """Build an executor around an existing pool.

        Args:
            pool: Pool providing resources per destination.
            breaker_config: Configuration shared by every destination breaker.
            breaker_storage: Breaker state backend shared by all destinations.
            breaker_listeners: Hooks notified of breaker transitions.
            retry_policy: Default retry policy.
            cache: Response cache used for calls that pass a cache key.
            observers: Execution observers, notified in insertion order.
            operation_timeout: Default per-attempt deadline in seconds.
            discard_on: Operation errors after which the resource is dropped
                instead of recycled. Cancellation always discards.
            sleep: Backoff sleep; suspends only the calling task.
            logger: Structured or stdlib logger for retry diagnostics.
        """
        if operation_timeout is not None and operation_timeout <= 0:
            raise ValueError("operation_timeout must be > 0 when provided")
        self.pool = pool
        self.cache = cache
        self.retry_policy = RetryPolicy() if retry_policy is None else retry_policy
        self._breaker_config = (
            CircuitBreakerConfig() if breaker_config is None else breaker_config
        )
        self._breaker_storage = (
            InMemoryBreakerStorage() if breaker_storage is None else breaker_storage
        )
        self._breaker_listeners = tuple(breaker_listeners)
        self._breakers: dict[str, CircuitBreaker] = {}
        self._breakers_lock = threading.Lock()
        self._observers: list[ExecutionObserver] = list(observers)
        self._operation_timeout = operation_timeout
        self._discard_on = discard_on
        self._sleep = sleep
        self._logger = logging.getLogger(__name__) if logger is None else logger

    @classmethod
    def from_settings(
        cls,
        settings: ExecutorSettings,
        factory: ResourceFactory[R],
        *,
        dispose: ResourceDisposer[R] | None = None,
        **kwargs: Any,
    ) -> ResilientExecutor[R]:
        """Build an executor, its pool and its cache from settings."""
        pool = ResourcePool(
            factory,
            max_size=settings.pool_max_size,
            acquire_timeout=settings.pool_acquire_timeout,
            dispose=dispose,
        )
        cache = ResponseCache(
            default_ttl=settings.cache_default_ttl,
            max_entries=settings.cache_max_entries,
        )
        return cls(
            pool,
            breaker_config=settings.breaker_config(),
            retry_policy=settings.retry_policy(),
            cache=cache,
            operation_timeout=settings.operation_timeout,
            **kwargs,
        )

    def add_observer(self, observer: ExecutionObserver) -> None:
        self._observers.append(observer)

    def breaker(self, destination: str) -> CircuitBreaker:
        """Return the breaker guarding ``destination``, creating it lazily."""
        breaker = self._breakers.get(destination)
        if breaker is not None:
            return breaker
        with self._breakers_lock:
            breaker = self._breakers.get(destination)
            if breaker is None:
                breaker = CircuitBreaker(
                    destination,
                    config=self._breaker_config,
                    storage=self._breaker_storage,
                    listeners=self._breaker_listeners,
                )
                self._breakers[destination] = breaker
            return breaker

    async def run(
        self,
        destination: str,
        operation: Operation[R, T],
        options: ExecutionOptions | None = None,
    ) -> T:
        """Run ``operation`` against a pooled resource for ``destination``.

        Args:
            destination: Protected dependency to call.
            operation: Callable receiving the checked-out resource. Async
                callables are awaited; plain callables returning an awaitable
                are awaited too.
            options: Per-call cache, timeout and retry settings.

        Returns:
            The operation's result, possibly served from the response cache.

        Raises:
            CircuitOpenError: The destination's circuit rejected the call.
            PoolExhaustedError: No resource became available in time.
            ResourceCreationError: The pool factory failed on the last attempt.
            OperationTimeoutError: The last attempt exceeded its deadline and
                was not retried.
            RetriesExhaustedError: Every allowed attempt failed with a
                retryable error.
            Exception: The operation's own non-retryable error, unmodified.
        """
        opts = ExecutionOptions() if options is None else options
        name = opts.operation_name or _operation_name(operation)
        with bound_execution_context(destination=destination, operation=name):
            if opts.cache_key is not None:
                value, found = self._require_cache().get(opts.cache_key)
                if found:
                    self._notify(
                        destination,
                        name,
                        ExecutionOutcome.SUCCEEDED,
                        attempt=0,
                        cached=True,
                    )
                    return cast(T, value)

            policy = self.retry_policy if opts.retry is None else opts.retry
            retrying = policy.build_retrying(
                sleep=self._sleep,
                before_sleep=partial(self._log_retry, destination, name),
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        attempt_index = attempt.retry_state.attempt_number - 1
                        result = await self._attempt(
                            destination, name, operation, opts, attempt_index
                        )
            except RetryError as exc:
                last_attempt = exc.last_attempt
                last_error = cast(BaseException, last_attempt.exception())
                raise RetriesExhaustedError(
                    destination,
                    attempts=last_attempt.attempt_number,
                    last_error=last_error,
                ) from last_error
            return result

    async def _attempt(
        self,
        destination: str,
        name: str,
        operation: Operation[R, T],
        opts: ExecutionOptions,
        attempt_index: int,
    ) -> T:
        breaker = self.breaker(destination)
        admission = await breaker.allow()
        if not admission:
            rejected = CircuitOpenError(destination, retry_after=admission.retry_after)
            self._notify(
                destination,
                name,
                ExecutionOutcome.FAILED,
                attempt=attempt_index,
                error=rejected,
            )
            raise rejected

        self._notify(destination, name, ExecutionOutcome.STARTED, attempt=attempt_index)
        try:
            result = await self._invoke(destination, name, operation, opts)
        except BaseException as exc:
            await breaker.on_failure(admission, exc)
            self._notify(
                destination,
                name,
                ExecutionOutcome.FAILED,
                attempt=attempt_index,
                error=exc,
            )
            raise

        await breaker.on_success(admission)
        if opts.cache_key is not None:
            self._require_cache().put(opts.cache_key, result, opts.cache_ttl)
        self._notify(
            destination, name, ExecutionOutcome.SUCCEEDED, attempt=attempt_index
        )
        return result

    async def _invoke(
        self,
        destination: str,
        name: str,
        operation: Operation[R, T],
        opts: ExecutionOptions,
    ) -> T:
        timeout = self._operation_timeout if opts.timeout is None else opts.timeout
        async with self.pool.lease(
            destination,
            timeout=opts.acquire_timeout,
            discard_on=self._discard_on,
        ) as resource:
            if timeout is None:
                return await _call_operation(operation, resource, opts.blocking)
            deadline = asyncio.timeout(timeout)
            try:
                async with deadline:
                    return await _call_operation(operation, resource, opts.blocking)
            except TimeoutError as exc:
                if not deadline.expired():
                    raise
                raise OperationTimeoutError(
                    destination, operation=name, timeout=timeout
                ) from exc

    def _require_cache(self) -> ResponseCache:
        if self.cache is None:
            raise ValueError("cache_key given but the executor has no response cache")
        return self.cache

    def _notify(
        self,
        destination: str,
        name: str,
        outcome: ExecutionOutcome,
        *,
        attempt: int,
        error: BaseException | None = None,
        cached: bool = False,
    ) -> None:
        if not self._observers:
            return
        event = ExecutionEvent.create(
            destination=destination,
            operation=name,
            outcome=outcome,
            attempt=attempt,
            error=error,
            cached=cached,
        )
        notify_observers(tuple(self._observers), event)

    def _log_retry(
        self, destination: str, name: str, retry_state: RetryCallState
    ) -> None:
        retry = RetryAttempt.from_retry_state(retry_state)
        error = retry.error
        log_warning(
            self._logger,
            "execution.retry_scheduled",
            destination=destination,
            operation=name,
            attempt=retry.attempt_index,
            delay_seconds=round(retry.delay, 6),
            error_type=None if error is None else error.__class__.__name__,
        )

    async def health(self, destination: str) -> DestinationHealth:
        """Return breaker and pool state for ``destination``."""
        breaker = self.breaker(destination)
        return DestinationHealth(
            destination=destination,
            state=await breaker.state(),
            breaker=await breaker.snapshot(),
            pool=self.pool.stats(destination),
        )

    async def reset(self, destination: str) -> None:
        """Return ``destination``'s breaker to a healthy ``CLOSED`` state."""
        await self.breaker(destination).reset()

    async def close(self) -> None:
        """Dispose pooled resources; further runs fail at acquire."""
        await self.pool.close()


async def _call_operation(
    operation: Operation[R, T],
    resource: R,
    blocking: bool,
) -> T:
    if blocking:
        outcome: object = await asyncio.to_thread(operation, resource)
    else:
        outcome = operation(resource)
    if inspect.isawaitable(outcome):
        return cast(T, await cast(Awaitable[object], outcome))
    return cast(T, outcome)
