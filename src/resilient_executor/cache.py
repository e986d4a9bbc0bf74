"""Short-lived memoization of idempotent read results.

Entries are immutable once stored. Expired entries are treated as absent and
removed on the lookup that finds them; :meth:`ResponseCache.sweep` and
:meth:`ResponseCache.run_sweeper` bound memory for keys that are never read
again.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

_logger = logging.getLogger(__name__)

_DEFAULT_SHARDS = 16


@dataclass(frozen=True)
class CacheEntry:
    """One cached result and its freshness window."""

    value: Any
    stored_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at < self.ttl


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: OrderedDict[Hashable, CacheEntry] = field(default_factory=OrderedDict)


def make_cache_key(operation: str, *args: object, **kwargs: object) -> str:
    """Derive a stable cache key from an operation name and its arguments."""
    payload = json.dumps(
        [operation, list(args), kwargs],
        sort_keys=True,
        default=repr,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{operation}:{digest[:32]}"


class ResponseCache:
    """Keyed TTL cache sharded by key hash.

    Each shard has its own lock so that unrelated keys never contend.
    """

    def __init__(
        self,
        *,
        default_ttl: float = 60.0,
        max_entries: int | None = None,
        shards: int = _DEFAULT_SHARDS,
        now_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create an empty cache.

        Args:
            default_ttl: TTL in seconds used when ``put`` is given none.
            max_entries: Optional bound on stored entries; the oldest entry of
                a full shard is evicted first.
            shards: Number of independently locked partitions.
            now_fn: Monotonic clock in seconds.

        Raises:
            ValueError: If any bound is invalid.
        """
        if default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1 when provided")
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._now = now_fn
        self._shards = tuple(_Shard() for _ in range(shards))
        self._per_shard_limit = (
            None if max_entries is None else max(1, -(-max_entries // shards))
        )

    def _shard(self, key: Hashable) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def get(self, key: Hashable) -> tuple[Any, bool]:
        """Return ``(value, True)`` for a fresh entry, else ``(None, False)``."""
        shard = self._shard(key)
        now = self._now()
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is None:
                return None, False
            if not entry.is_fresh(now):
                del shard.entries[key]
                return None, False
            return entry.value, True

    def put(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds."""
        resolved_ttl = self.default_ttl if ttl is None else ttl
        if resolved_ttl <= 0:
            raise ValueError("ttl must be > 0")
        shard = self._shard(key)
        entry = CacheEntry(value=value, stored_at=self._now(), ttl=resolved_ttl)
        with shard.lock:
            shard.entries.pop(key, None)
            shard.entries[key] = entry
            limit = self._per_shard_limit
            while limit is not None and len(shard.entries) > limit:
                shard.entries.popitem(last=False)

    def invalidate(self, key: Hashable) -> bool:
        """Remove ``key``; return whether an entry was present."""
        shard = self._shard(key)
        with shard.lock:
            return shard.entries.pop(key, None) is not None

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.entries.clear()

    def sweep(self) -> int:
        """Remove every expired entry and return how many were removed."""
        now = self._now()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                expired = [
                    key
                    for key, entry in shard.entries.items()
                    if not entry.is_fresh(now)
                ]
                for key in expired:
                    del shard.entries[key]
                removed += len(expired)
        return removed

    def __len__(self) -> int:
        return sum(len(shard.entries) for shard in self._shards)

    async def run_sweeper(
        self,
        *,
        stop_event: asyncio.Event,
        interval_seconds: float,
    ) -> None:
        """Sweep expired entries periodically until shutdown is requested."""
        interval = max(interval_seconds, 0.01)
        while not stop_event.is_set():
            removed = self.sweep()
            if removed:
                _logger.debug("Swept expired cache entries", extra={"removed": removed})
            with suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
