"""Keyed cache of query results with staleness and generation metadata."""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

from event_bus import (
    ENTRY_FAILED,
    ENTRY_FETCHING,
    ENTRY_INVALIDATED,
    ENTRY_UPDATED,
    EventBus,
    Handler,
    make_event,
)
from sync_errors import StaleWrite
from teamsync.query_keys import QueryKey, as_key, format_key, key_matches


_logger = logging.getLogger("teamsync.store")


class QueryStatus(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    FRESH = "fresh"
    STALE = "stale"
    ERROR = "error"


@dataclass
class CacheEntry:
    key: QueryKey
    value: Any = None
    generation: int = 0
    stale: bool = False
    status: QueryStatus = QueryStatus.IDLE
    fetched_at: float | None = None
    error: Exception | None = None
    in_flight: Any = None

    @property
    def has_data(self) -> bool:
        return self.fetched_at is not None

    def is_fresh(self, now: float, stale_time_ms: float) -> bool:
        if not self.has_data or self.stale or self.error is not None:
            return False
        return (now - self.fetched_at) * 1000.0 < stale_time_ms


class EntityStore:
    """Process-wide cache shared by every view.

    Only the query and mutation coordinators write to it; views read entries
    and subscribe to per-key events.
    """

    def __init__(self, clock=None) -> None:
        self._clock = clock or time.monotonic
        self._entries: Dict[QueryKey, CacheEntry] = {}
        self._epochs: Dict[QueryKey, int] = {}
        self._bus = EventBus()

    # -- reads ---------------------------------------------------------

    def get(self, key) -> CacheEntry | None:
        entry = self._entries.get(as_key(key))
        if entry is None:
            return None
        return dataclasses.replace(entry)

    def now(self) -> float:
        return self._clock()

    def epoch(self, key) -> int:
        return self._epochs.get(as_key(key), 0)

    def keys(self) -> list[QueryKey]:
        return list(self._entries.keys())

    # -- writes --------------------------------------------------------

    def _ensure(self, key: QueryKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry
        return entry

    def _publish(self, name: str, entry: CacheEntry, error: Exception | None = None) -> None:
        self._bus.publish(make_event(name, entry.key, entry.generation, self._epochs.get(entry.key, 0), error=error))

    def set(self, key, value: Any, generation: int) -> bool:
        key = as_key(key)
        entry = self._ensure(key)
        if generation < entry.generation:
            _logger.warning(
                "stale_write_rejected %s",
                StaleWrite(
                    message=f"generation {generation} is older than {entry.generation}",
                    path=format_key(key),
                    generation=generation,
                    current_generation=entry.generation,
                ),
            )
            return False
        entry.value = value
        entry.generation = generation
        entry.fetched_at = self._clock()
        entry.error = None
        # data fetched before the latest invalidation is kept but stays stale
        entry.stale = generation <= self._epochs.get(key, 0)
        if entry.in_flight is None:
            entry.status = QueryStatus.STALE if entry.stale else QueryStatus.FRESH
        _logger.debug("cache_set key=%s generation=%s stale=%s", format_key(key), generation, entry.stale)
        self._publish(ENTRY_UPDATED, entry)
        return True

    def invalidate(self, key_or_prefix) -> list[QueryKey]:
        prefix = as_key(key_or_prefix)
        matched = [k for k in self._entries if key_matches(k, prefix)]
        for key in matched:
            self._epochs[key] = self._epochs.get(key, 0) + 1
            entry = self._entries[key]
            entry.stale = True
            if entry.status != QueryStatus.FETCHING:
                entry.status = QueryStatus.STALE
        _logger.info("cache_invalidated prefix=%s matched=%s", format_key(prefix), len(matched))
        for key in matched:
            self._publish(ENTRY_INVALIDATED, self._entries[key])
        return matched

    def begin_fetch(self, key, handle: Any) -> None:
        entry = self._ensure(as_key(key))
        entry.in_flight = handle
        entry.status = QueryStatus.FETCHING
        self._publish(ENTRY_FETCHING, entry)

    def end_fetch(self, key, handle: Any) -> None:
        entry = self._entries.get(as_key(key))
        if entry is None or entry.in_flight is not handle:
            return
        entry.in_flight = None
        if entry.status == QueryStatus.FETCHING:
            if entry.error is not None:
                entry.status = QueryStatus.ERROR
            elif not entry.has_data:
                entry.status = QueryStatus.IDLE
            else:
                entry.status = QueryStatus.STALE if entry.stale else QueryStatus.FRESH

    def fail_fetch(self, key, error: Exception) -> None:
        entry = self._ensure(as_key(key))
        entry.error = error
        entry.status = QueryStatus.ERROR
        _logger.warning("cache_fetch_failed key=%s error=%s", format_key(entry.key), error)
        self._publish(ENTRY_FAILED, entry, error=error)

    # -- listeners -----------------------------------------------------

    def subscribe(self, key, listener: Handler) -> None:
        self._bus.subscribe(as_key(key), listener)

    def unsubscribe(self, key, listener: Handler) -> bool:
        return self._bus.unsubscribe(as_key(key), listener)

    def subscribe_all(self, listener: Handler) -> None:
        self._bus.subscribe_all(listener)

    def unsubscribe_all(self, listener: Handler) -> bool:
        return self._bus.unsubscribe_all(listener)

    def listener_count(self, key) -> int:
        return self._bus.listener_count(as_key(key))

    def clear(self) -> None:
        self._entries.clear()
        self._epochs.clear()
        self._bus.clear()

    def in_flight(self, key) -> Any:
        entry = self._entries.get(as_key(key))
        return entry.in_flight if entry is not None else None
