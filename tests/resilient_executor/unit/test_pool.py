from __future__ import annotations

import asyncio

import pytest

from resilient_executor.errors import (
    STAGE_POOL,
    OperationTimeoutError,
    PoolExhaustedError,
    ResourceBrokenError,
    ResourceCreationError,
)
from resilient_executor.pool import ResourcePool
from tests.resilient_executor.support.fakes import FakeConnection, FakeConnectionFactory

pytestmark = pytest.mark.asyncio


def _pool(
    factory: FakeConnectionFactory,
    *,
    max_size: int = 2,
    acquire_timeout: float = 1.0,
) -> ResourcePool[FakeConnection]:
    return ResourcePool(
        factory,
        max_size=max_size,
        acquire_timeout=acquire_timeout,
        dispose=factory.dispose,
    )


async def test_acquire_creates_then_reuses_most_recently_released(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory)

    first = await pool.acquire("db")
    second = await pool.acquire("db")
    pool.release("db", first)
    pool.release("db", second)

    assert await pool.acquire("db") is second
    assert await pool.acquire("db") is first
    assert len(connection_factory.created) == 2


async def test_partitions_are_independent_per_destination(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory, max_size=1, acquire_timeout=0.0)

    db = await pool.acquire("db")
    api = await pool.acquire("api")

    assert db.destination == "db"
    assert api.destination == "api"
    assert set(pool.destinations()) == {"db", "api"}


async def test_saturated_pool_times_out_with_pool_exhausted(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory, max_size=1, acquire_timeout=0.05)
    await pool.acquire("db")

    with pytest.raises(PoolExhaustedError) as excinfo:
        await pool.acquire("db")

    assert excinfo.value.stage == STAGE_POOL
    assert excinfo.value.destination == "db"
    assert excinfo.value.max_size == 1
    assert pool.stats("db").waiting == 0


async def test_zero_timeout_fails_immediately_when_saturated(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory, max_size=1)
    await pool.acquire("db")

    with pytest.raises(PoolExhaustedError):
        await pool.acquire("db", timeout=0)


async def test_waiter_receives_released_resource(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory, max_size=1)
    held = await pool.acquire("db")

    waiter = asyncio.create_task(pool.acquire("db"))
    await asyncio.sleep(0)
    assert pool.stats("db").waiting == 1

    pool.release("db", held)

    assert await waiter is held
    stats = pool.stats("db")
    assert stats.checked_out == 1
    assert stats.idle == 0


async def test_waiters_are_served_in_arrival_order(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory, max_size=1)
    held = await pool.acquire("db")
    order: list[str] = []

    async def _acquire(label: str) -> None:
        resource = await pool.acquire("db")
        order.append(label)
        pool.release("db", resource)

    tasks = [asyncio.create_task(_acquire(label)) for label in ("a", "b", "c")]
    await asyncio.sleep(0)
    pool.release("db", held)
    await asyncio.gather(*tasks)

    assert order == ["a", "b", "c"]


async def test_discard_disposes_and_frees_slot_for_fresh_resource(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory, max_size=1)
    broken = await pool.acquire("db")

    pool.release("db", broken, discard=True)
    fresh = await pool.acquire("db")

    assert fresh is not broken
    assert broken.closed is True
    assert connection_factory.disposed == [broken]
    assert pool.stats("db").live == 1


async def test_discard_hands_fresh_slot_to_waiter(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory, max_size=1)
    broken = await pool.acquire("db")
    waiter = asyncio.create_task(pool.acquire("db"))
    await asyncio.sleep(0)

    pool.release("db", broken, discard=True)

    fresh = await waiter
    assert fresh is not broken
    assert pool.stats("db").checked_out == 1


async def test_factory_failure_raises_and_does_not_count_toward_size(
    connection_factory: FakeConnectionFactory,
) -> None:
    connection_factory.fail_next = 1
    pool = _pool(connection_factory, max_size=1)

    with pytest.raises(ResourceCreationError) as excinfo:
        await pool.acquire("db")

    assert isinstance(excinfo.value.cause, ConnectionRefusedError)
    assert isinstance(excinfo.value.__cause__, ConnectionRefusedError)
    assert pool.stats("db").live == 0
    assert (await pool.acquire("db")).serial == 0


async def test_release_of_unknown_resource_is_rejected(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory)
    stranger = FakeConnection(destination="db", serial=99)

    with pytest.raises(ValueError, match="not checked out"):
        pool.release("db", stranger)


async def test_concurrent_holders_never_share_and_never_exceed_max_size(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory, max_size=3, acquire_timeout=5.0)
    holders: set[int] = set()
    peak = 0

    async def _use() -> None:
        nonlocal peak
        resource = await pool.acquire("db")
        assert id(resource) not in holders
        holders.add(id(resource))
        peak = max(peak, len(holders))
        assert pool.stats("db").live <= 3
        await asyncio.sleep(0.001)
        holders.discard(id(resource))
        pool.release("db", resource)

    await asyncio.gather(*(_use() for _ in range(40)))

    assert peak == 3
    assert len(connection_factory.created) == 3
    assert pool.stats("db").idle == 3


async def test_lease_recycles_on_plain_error_and_discards_on_broken(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory, max_size=1)

    with pytest.raises(KeyError):
        async with pool.lease("db") as resource:
            first = resource
            raise KeyError("missing row")
    assert pool.stats("db").idle == 1

    with pytest.raises(ResourceBrokenError):
        async with pool.lease("db") as resource:
            assert resource is first
            raise ResourceBrokenError("connection reset")
    assert pool.stats("db").idle == 0
    assert first.closed is True

    with pytest.raises(OperationTimeoutError):
        async with pool.lease("db") as resource:
            raise OperationTimeoutError("db", operation="query", timeout=1.0)
    assert resource.closed is True


async def test_lease_discards_on_cancellation(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory, max_size=1)
    entered = asyncio.Event()

    async def _hold() -> None:
        async with pool.lease("db"):
            entered.set()
            await asyncio.sleep(10)

    task = asyncio.create_task(_hold())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert pool.stats("db").live == 0
    assert connection_factory.disposed[0].closed is True


async def test_async_dispose_hook_is_awaited_on_close() -> None:
    disposed: list[str] = []

    async def _factory(destination: str) -> list[str]:
        return [destination]

    async def _dispose(resource: list[str]) -> None:
        await asyncio.sleep(0)
        disposed.append(resource[0])

    pool: ResourcePool[list[str]] = ResourcePool(_factory, dispose=_dispose)
    resource = await pool.acquire("db")
    pool.release("db", resource)

    await pool.close()

    assert disposed == ["db"]
    with pytest.raises(RuntimeError, match="closed"):
        await pool.acquire("db")


async def test_close_fails_pending_waiters(
    connection_factory: FakeConnectionFactory,
) -> None:
    pool = _pool(connection_factory, max_size=1, acquire_timeout=5.0)
    await pool.acquire("db")
    waiter = asyncio.create_task(pool.acquire("db"))
    await asyncio.sleep(0)

    await pool.close()

    with pytest.raises(RuntimeError, match="closed"):
        await waiter


async def test_pool_rejects_invalid_bounds(
    connection_factory: FakeConnectionFactory,
) -> None:
    with pytest.raises(ValueError, match="max_size"):
        ResourcePool(connection_factory, max_size=0)
    with pytest.raises(ValueError, match="acquire_timeout"):
        ResourcePool(connection_factory, acquire_timeout=-1)
