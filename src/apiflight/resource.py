"""Per-key resource cache with TTL, single-flight fetches and debounced persistence."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import replace
from functools import partial
from typing import Any, Generic, TypeVar, cast

from apiflight.adapters.base import AsyncStorageAdapter
from apiflight.duration import parse_duration, to_seconds
from apiflight.singleflight import SingleFlight
from apiflight.types import (
    CacheEntry,
    Clock,
    Duration,
    EntryState,
    ErrorKind,
    Result,
    now_ms,
)

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")

DEFAULT_TTL: Duration = "30s"
DEFAULT_DEBOUNCE: Duration = "500ms"
STORAGE_VERSION = 1

# A fetch may return a Result or a bare value (treated as success)
FetchFn = Callable[[], Awaitable[Any]]


class CachedResource(Generic[K, V]):
    """Coalesced, TTL-aware view of "the current value for this key".

    One instance per resource type. For each key:

    - a fresh value is returned without calling the fetch function;
    - concurrent callers of a stale or missing key share one fetch;
    - a failed fetch records the error but keeps the last good value; a fetch
      function that raises is recorded as a ``NETWORK`` failure;
    - mutations are persisted after a fixed debounce window, so a burst of
      updates results in a single storage write.

    Persisted values must be JSON-serializable, or ``encode_value`` /
    ``decode_value`` must convert them. A write that cannot be serialized is
    logged and skipped.

    Usage:
        exams = CachedResource[int, dict](
            fetcher=lambda exam_id: client.get(f"/exams/{exam_id}"),
            ttl="5m",
            storage=AsyncFileStorage(".cache"),
            storage_name="exams",
            key_from_str=int,
        )
        result = await exams.get(42)
    """

    def __init__(
        self,
        *,
        fetcher: Callable[[K], Awaitable[Any]] | None = None,
        ttl: Duration = DEFAULT_TTL,
        storage: AsyncStorageAdapter | None = None,
        storage_name: str | None = None,
        debounce: Duration = DEFAULT_DEBOUNCE,
        max_entries: int | None = None,
        key_to_str: Callable[[K], str] = str,
        key_from_str: Callable[[str], K] | None = None,
        encode_value: Callable[[V], Any] | None = None,
        decode_value: Callable[[Any], V] | None = None,
        clock: Clock = now_ms,
    ) -> None:
        if storage is not None and not storage_name:
            raise ValueError("storage_name is required when storage is given")
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._fetcher = fetcher
        self._ttl = parse_duration(ttl)
        self._storage = storage
        self._storage_name = storage_name or ""
        self._debounce = to_seconds(debounce)
        self._max_entries = max_entries
        self._key_to_str = key_to_str
        self._key_from_str = key_from_str
        self._encode_value = encode_value
        self._decode_value = decode_value
        self._clock = clock

        self._entries: OrderedDict[K, CacheEntry[K, V]] = OrderedDict()
        self._flight: SingleFlight[Result[V]] = SingleFlight()
        self._hydrate_flight: SingleFlight[int] = SingleFlight()
        self._hydrated = storage is None
        # Keys invalidated while their fetch was running
        self._invalidated: set[K] = set()
        # Bumped by clear(); fetches and writes from an older epoch are dropped
        self._epoch = 0
        self._timer: asyncio.TimerHandle | None = None
        self._io_lock = asyncio.Lock()
        self._background_tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> Iterator[K]:
        return iter(list(self._entries))

    @property
    def ttl(self) -> int:
        """Default time to live in milliseconds."""
        return self._ttl

    @property
    def write_pending(self) -> bool:
        return self._timer is not None

    async def get(
        self,
        key: K,
        fetch_fn: FetchFn | None = None,
        ttl: Duration | None = None,
    ) -> Result[V]:
        """Return the value for ``key``, fetching it when missing or stale.

        Args:
            key: Cache key
            fetch_fn: Async function producing a Result (default: the
                instance's ``fetcher`` applied to ``key``)
            ttl: Freshness window (default: the instance's ttl)

        Returns:
            The cached value, or the outcome of the (possibly shared) fetch
        """
        await self._ensure_hydrated()

        ttl_ms = parse_duration(ttl) if ttl is not None else self._ttl
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock(), ttl_ms):
            self._entries.move_to_end(key)
            logger.debug("Cache hit for %r", key)
            return Result.ok(entry.value)

        task = self._flight.running(key)
        if task is None:
            fn = fetch_fn or self._default_fetch(key)
            self._mark_loading(key)
            logger.debug("Cache miss for %r, fetching", key)
            task = self._flight.start(key, partial(self._load, key, fn, self._epoch))
        else:
            logger.debug("Joining in-flight fetch for %r", key)
        return await asyncio.shield(task)

    def peek(self, key: K) -> CacheEntry[K, V] | None:
        """Current entry for ``key`` without fetching (stale values included)."""
        return self._entries.get(key)

    def state(self, key: K, ttl: Duration | None = None) -> EntryState:
        entry = self._entries.get(key)
        if entry is None:
            return EntryState.EMPTY
        ttl_ms = parse_duration(ttl) if ttl is not None else self._ttl
        return entry.state(self._clock(), ttl_ms)

    def set(self, key: K, value: V) -> None:
        """Store a value as freshly fetched (optimistic update)."""
        entry = self._entries.get(key) or CacheEntry(key=key)
        self._store(
            replace(
                entry,
                value=value,
                has_value=True,
                fetched_at=self._clock(),
                error=None,
            )
        )
        self._schedule_write()

    def invalidate(self, key: K) -> None:
        """Force the next ``get`` for ``key`` to refetch.

        The last value stays readable through :meth:`peek`.
        """
        if key in self._flight:
            self._invalidated.add(key)
        entry = self._entries.get(key)
        if entry is not None and entry.fetched_at is not None:
            self._entries[key] = replace(entry, fetched_at=None)
            self._schedule_write()

    async def clear(self) -> None:
        """Drop all entries, cancel the pending write and erase the persisted copy.

        Fetches already running still resolve for their callers but are not
        stored.
        """
        self._epoch += 1
        self._entries.clear()
        self._invalidated.clear()
        self._flight.forget_all()
        self._cancel_timer()
        self._hydrated = True
        if self._storage is not None:
            async with self._io_lock:
                await self._storage.remove(self._storage_name)

    async def hydrate(self) -> int:
        """Load persisted entries; live entries take precedence.

        Returns:
            Number of entries restored
        """
        if self._storage is None:
            self._hydrated = True
            return 0
        epoch = self._epoch
        try:
            raw = await self._storage.read(self._storage_name)
        except Exception:
            logger.exception("Failed to read persisted cache %s", self._storage_name)
            return 0
        finally:
            self._hydrated = True
        if raw is None or epoch != self._epoch:
            return 0

        try:
            payload = json.loads(raw)
            if payload.get("version") != STORAGE_VERSION:
                raise ValueError(f"unsupported version {payload.get('version')!r}")
            items = dict(payload["entries"])
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Ignoring unreadable cache %s: %s", self._storage_name, e)
            return 0

        restored = 0
        for raw_key, item in items.items():
            try:
                key = self._key_from_str(raw_key) if self._key_from_str else raw_key
                value = item["value"]
                if self._decode_value is not None:
                    value = self._decode_value(value)
                fetched_at = item.get("fetchedAt")
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning("Skipping cache entry %r: %s", raw_key, e)
                continue
            if key in self._entries:
                continue
            self._entries[key] = CacheEntry(
                key=key, value=value, has_value=True, fetched_at=fetched_at
            )
            restored += 1
        self._evict()
        logger.info("Hydrated %d entries from %s", restored, self._storage_name)
        return restored

    async def flush(self) -> None:
        """Write pending state now instead of waiting for the debounce window."""
        if self._timer is not None:
            self._cancel_timer()
            await self._write(self._epoch)
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks)

    async def aclose(self) -> None:
        """Flush pending writes. The storage adapter is left open."""
        await self.flush()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _default_fetch(self, key: K) -> FetchFn:
        if self._fetcher is None:
            raise TypeError("No fetch_fn given and no default fetcher configured")
        return partial(self._fetcher, key)

    async def _ensure_hydrated(self) -> None:
        if not self._hydrated:
            await self._hydrate_flight.do("hydrate", self.hydrate)

    def _mark_loading(self, key: K) -> None:
        entry = self._entries.get(key) or CacheEntry(key=key)
        # An error from the previous attempt does not survive a new load
        self._store(replace(entry, loading=True, error=None))

    async def _load(self, key: K, fn: FetchFn, epoch: int) -> Result[V]:
        try:
            outcome = await fn()
        except asyncio.CancelledError:
            if epoch == self._epoch and key in self._entries:
                self._entries[key] = replace(self._entries[key], loading=False)
            self._invalidated.discard(key)
            raise
        except Exception as e:
            logger.exception("Fetch for %r raised", key)
            outcome = Result.failure(
                ErrorKind.NETWORK, 0, f"{type(e).__name__}: {e}", detail=e
            )

        result: Result[V] = outcome if isinstance(outcome, Result) else Result.ok(outcome)
        if epoch != self._epoch:
            return result

        entry = self._entries.get(key) or CacheEntry(key=key)
        if result.is_ok:
            fresh = key not in self._invalidated
            entry = replace(
                entry,
                value=result.value,
                has_value=True,
                fetched_at=self._clock() if fresh else None,
                loading=False,
                error=None,
            )
        else:
            logger.debug("Fetch for %r failed: %s", key, result.error)
            entry = replace(entry, loading=False, error=result.error)
        self._invalidated.discard(key)
        self._store(entry)
        self._schedule_write()
        return result

    def _store(self, entry: CacheEntry[K, V]) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        self._evict()

    def _evict(self) -> None:
        if self._max_entries is None:
            return
        while len(self._entries) > self._max_entries:
            victim = next((k for k, e in self._entries.items() if not e.loading), None)
            if victim is None:
                return
            del self._entries[victim]

    def _schedule_write(self) -> None:
        if self._storage is None:
            return
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._debounce, self._start_write)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _start_write(self) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self._write(self._epoch))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _write(self, epoch: int) -> None:
        storage = self._storage
        if storage is None:
            return
        # Never overwrite persisted entries that were not loaded yet
        await self._ensure_hydrated()
        async with self._io_lock:
            if epoch != self._epoch:
                return
            try:
                await storage.write(self._storage_name, self._serialize())
            except Exception:
                logger.exception("Failed to persist cache %s", self._storage_name)

    def _serialize(self) -> str:
        entries: dict[str, Any] = {}
        for key, entry in self._entries.items():
            if not entry.has_value:
                continue
            value: Any = entry.value
            if self._encode_value is not None:
                value = self._encode_value(cast(V, value))
            entries[self._key_to_str(key)] = {
                "value": value,
                "fetchedAt": entry.fetched_at,
            }
        return json.dumps({"version": STORAGE_VERSION, "entries": entries})


__all__ = ["DEFAULT_DEBOUNCE", "DEFAULT_TTL", "CachedResource"]
