from __future__ import annotations

import asyncio

import pytest

from resilient_executor.cache import ResponseCache, make_cache_key
from tests.resilient_executor.support.fakes import FakeClock


def _cache(clock: FakeClock, **kwargs: object) -> ResponseCache:
    return ResponseCache(
        default_ttl=10.0, now_fn=clock, **kwargs  # type: ignore[arg-type]
    )


def test_put_then_get_within_ttl_returns_value(fake_clock: FakeClock) -> None:
    cache = _cache(fake_clock)

    cache.put("user:1", {"name": "ada"}, ttl=5.0)
    fake_clock.advance(4.999)

    assert cache.get("user:1") == ({"name": "ada"}, True)


def test_get_after_ttl_is_a_miss_and_evicts(fake_clock: FakeClock) -> None:
    cache = _cache(fake_clock)

    cache.put("user:1", "ada", ttl=5.0)
    fake_clock.advance(5.0)

    assert cache.get("user:1") == (None, False)
    assert len(cache) == 0


def test_missing_key_is_a_miss(fake_clock: FakeClock) -> None:
    assert _cache(fake_clock).get("absent") == (None, False)


def test_cached_none_is_distinguishable_from_miss(fake_clock: FakeClock) -> None:
    cache = _cache(fake_clock)

    cache.put("nothing", None)

    assert cache.get("nothing") == (None, True)


def test_default_ttl_applies_when_put_has_none(fake_clock: FakeClock) -> None:
    cache = _cache(fake_clock)

    cache.put("k", 1)
    fake_clock.advance(9.5)
    assert cache.get("k") == (1, True)
    fake_clock.advance(0.5)
    assert cache.get("k") == (None, False)


def test_put_overwrites_and_restarts_ttl(fake_clock: FakeClock) -> None:
    cache = _cache(fake_clock)

    cache.put("k", "old", ttl=2.0)
    fake_clock.advance(1.5)
    cache.put("k", "new", ttl=2.0)
    fake_clock.advance(1.5)

    assert cache.get("k") == ("new", True)


def test_invalidate_and_clear(fake_clock: FakeClock) -> None:
    cache = _cache(fake_clock)
    cache.put("a", 1)
    cache.put("b", 2)

    assert cache.invalidate("a") is True
    assert cache.invalidate("a") is False
    cache.clear()

    assert cache.get("b") == (None, False)


def test_sweep_removes_only_expired_entries(fake_clock: FakeClock) -> None:
    cache = _cache(fake_clock)
    cache.put("short", 1, ttl=1.0)
    cache.put("long", 2, ttl=100.0)
    fake_clock.advance(2.0)

    assert cache.sweep() == 1
    assert len(cache) == 1
    assert cache.get("long") == (2, True)


def test_max_entries_evicts_oldest_first(fake_clock: FakeClock) -> None:
    cache = _cache(fake_clock, max_entries=2, shards=1)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.put("c", 3)

    assert cache.get("a") == (None, False)
    assert cache.get("b") == (2, True)
    assert cache.get("c") == (3, True)


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"default_ttl": 0}, "default_ttl"),
        ({"max_entries": 0}, "max_entries"),
        ({"shards": 0}, "shards"),
    ],
)
def test_cache_rejects_invalid_configuration(
    kwargs: dict[str, object], message: str
) -> None:
    with pytest.raises(ValueError, match=message):
        ResponseCache(**kwargs)  # type: ignore[arg-type]


def test_put_rejects_non_positive_ttl(fake_clock: FakeClock) -> None:
    with pytest.raises(ValueError, match="ttl"):
        _cache(fake_clock).put("k", 1, ttl=0)


def test_make_cache_key_is_stable_and_argument_sensitive() -> None:
    first = make_cache_key("get_user", 1, fields=["name", "email"], active=True)
    same = make_cache_key("get_user", 1, active=True, fields=["name", "email"])
    other = make_cache_key("get_user", 2, fields=["name", "email"], active=True)

    assert first == same
    assert first != other
    assert first.startswith("get_user:")


@pytest.mark.asyncio
async def test_run_sweeper_stops_when_event_is_set(fake_clock: FakeClock) -> None:
    cache = _cache(fake_clock)
    cache.put("k", 1, ttl=1.0)
    fake_clock.advance(2.0)
    stop_event = asyncio.Event()

    task = asyncio.create_task(
        cache.run_sweeper(stop_event=stop_event, interval_seconds=0.01)
    )
    await asyncio.sleep(0.03)
    stop_event.set()
    await asyncio.wait_for(task, timeout=1.0)

    assert len(cache) == 0
