"""Fetch scheduling for the entity cache.

Covers the stale-time policy, request coalescing, generation tagging of
write-backs, follow-up fetches for invalidations that race an in-flight
request, and per-view observers guarded by liveness tokens.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Set

from entity_store import EntityStore, QueryStatus
from event_bus import ENTRY_FAILED, ENTRY_INVALIDATED, ENTRY_UPDATED, Event, Handler
from sync_errors import NetworkFailure, NotFound, SyncError
from teamsync.query_keys import QueryKey, as_key, format_key


Fetcher = Callable[[], Awaitable[Any]]

_logger = logging.getLogger("teamsync.query")


async def call_with_timeout(fn: Callable[[], Awaitable[Any]], timeout_s: float | None, path: str | None = None) -> Any:
    if not timeout_s:
        return await fn()
    try:
        return await asyncio.wait_for(fn(), timeout_s)
    except asyncio.TimeoutError as exc:
        raise NetworkFailure(
            message=f"request timed out after {timeout_s}s",
            code="NETWORK_TIMEOUT",
            path=path,
        ) from exc


class LivenessToken:
    """Marks whether the view that started a request still wants callbacks."""

    def __init__(self) -> None:
        self._alive = True

    @property
    def alive(self) -> bool:
        return self._alive

    def revoke(self) -> None:
        self._alive = False


@dataclass
class QueryOptions:
    fetcher: Fetcher
    stale_time_ms: float


def _retrieve(task: asyncio.Task) -> None:
    # failures reach callers through shield(); mark them retrieved for
    # requests whose callers all went away
    if not task.cancelled():
        task.exception()


class QueryCoordinator:
    def __init__(
        self,
        store: EntityStore,
        default_stale_time_ms: float = 0.0,
        request_timeout_s: float | None = None,
    ) -> None:
        self._store = store
        self._default_stale_time_ms = default_stale_time_ms
        self._timeout = request_timeout_s
        self._queries: Dict[QueryKey, QueryOptions] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()
        self._closed = False
        store.subscribe_all(self._on_store_event)

    @property
    def store(self) -> EntityStore:
        return self._store

    async def fetch(
        self,
        key,
        fetcher: Fetcher,
        stale_time_ms: float | None = None,
        *,
        force: bool = False,
        token: LivenessToken | None = None,
        on_result: Callable[[Any], None] | None = None,
    ) -> Any:
        key = as_key(key)
        stale_time = self._default_stale_time_ms if stale_time_ms is None else stale_time_ms
        self._queries[key] = QueryOptions(fetcher=fetcher, stale_time_ms=stale_time)

        entry = self._store.get(key)
        if not force and entry is not None and entry.is_fresh(self._store.now(), stale_time):
            _logger.debug("query_cache_hit key=%s", format_key(key))
            value = entry.value
        else:
            task = self._store.in_flight(key)
            if task is not None:
                _logger.debug("query_coalesced key=%s force=%s", format_key(key), force)
            else:
                task = self._start(key, fetcher)
            value = await asyncio.shield(task)

        if on_result is not None:
            if token is not None and not token.alive:
                _logger.debug("query_result_dropped key=%s reason=context_closed", format_key(key))
            else:
                on_result(value)
        return value

    async def refresh(self, key, *, token: LivenessToken | None = None, on_result=None) -> Any:
        key = as_key(key)
        options = self._queries.get(key)
        if options is None:
            raise NotFound(message="no query registered for key", path=format_key(key))
        return await self.fetch(
            key, options.fetcher, options.stale_time_ms, force=True, token=token, on_result=on_result
        )

    def observe(
        self,
        key,
        fetcher: Fetcher,
        stale_time_ms: float | None = None,
        listener: Handler | None = None,
    ) -> "QueryObserver":
        return QueryObserver(self, as_key(key), fetcher, stale_time_ms, listener)

    def _start(self, key: QueryKey, fetcher: Fetcher) -> asyncio.Task:
        issued_epoch = self._store.epoch(key)
        task = asyncio.get_running_loop().create_task(self._run(key, fetcher, issued_epoch))
        task.add_done_callback(_retrieve)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._store.begin_fetch(key, task)
        return task

    async def _run(self, key: QueryKey, fetcher: Fetcher, issued_epoch: int) -> Any:
        handle = asyncio.current_task()
        _logger.info("query_fetch_started key=%s epoch=%s", format_key(key), issued_epoch)
        try:
            result = await call_with_timeout(fetcher, self._timeout, path=format_key(key))
        except SyncError as exc:
            self._fail(key, handle, exc)
            raise
        except asyncio.CancelledError:
            self._store.end_fetch(key, handle)
            raise
        except Exception as exc:
            failure = NetworkFailure(message=f"fetch failed: {exc}", path=format_key(key))
            self._fail(key, handle, failure)
            raise failure from exc

        if self._closed:
            return result
        self._store.set(key, result, issued_epoch + 1)
        self._store.end_fetch(key, handle)
        if self._store.epoch(key) != issued_epoch:
            # invalidated while outstanding: one corrective fetch
            self._follow_up(key)
        return result

    def _fail(self, key: QueryKey, handle: Any, error: Exception) -> None:
        self._store.fail_fetch(key, error)
        self._store.end_fetch(key, handle)

    def _follow_up(self, key: QueryKey) -> None:
        options = self._queries.get(key)
        if self._closed or options is None or self._store.in_flight(key) is not None:
            return
        _logger.info("query_follow_up key=%s", format_key(key))
        self._track(self._start(key, options.fetcher))

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.warning("query_background_failed error=%s", exc)

    def _on_store_event(self, event: Event) -> None:
        if self._closed or event["name"] != ENTRY_INVALIDATED:
            return
        key = event["key"]
        if self._store.listener_count(key) == 0 or self._store.in_flight(key) is not None:
            return
        options = self._queries.get(key)
        if options is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            _logger.debug("query_refetch_deferred key=%s reason=no_loop", format_key(key))
            return
        _logger.info("query_refetch_on_invalidate key=%s", format_key(key))
        self._track(self._start(key, options.fetcher))

    async def drain(self) -> None:
        """Wait until follow-up and invalidation refetches have settled."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        self._store.unsubscribe_all(self._on_store_event)
        pending = list(self._tasks | self._background)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._background.clear()
        self._queries.clear()


class QueryObserver:
    """A view's subscription to one query key.

    Store events reach the listener only while the observer's token is alive;
    fetch results are still written to the shared store after ``close()``.
    """

    def __init__(
        self,
        coordinator: QueryCoordinator,
        key: QueryKey,
        fetcher: Fetcher,
        stale_time_ms: float | None,
        listener: Handler | None,
    ) -> None:
        self.key = key
        self.token = LivenessToken()
        self.error: Exception | None = None
        self._coordinator = coordinator
        self._fetcher = fetcher
        self._stale_time_ms = stale_time_ms
        self._listener = listener
        coordinator.store.subscribe(key, self._on_event)

    @property
    def value(self) -> Any:
        entry = self._coordinator.store.get(self.key)
        return entry.value if entry is not None else None

    @property
    def status(self) -> QueryStatus:
        entry = self._coordinator.store.get(self.key)
        return entry.status if entry is not None else QueryStatus.IDLE

    @property
    def alive(self) -> bool:
        return self.token.alive

    async def start(self) -> Any:
        return await self._load(force=False)

    async def refetch(self) -> Any:
        return await self._load(force=True)

    async def _load(self, force: bool) -> Any:
        try:
            value = await self._coordinator.fetch(
                self.key, self._fetcher, self._stale_time_ms, force=force, token=self.token
            )
        except NetworkFailure as exc:
            # last-known-good data stays visible
            if self.token.alive:
                self.error = exc
            return self.value
        if self.token.alive:
            self.error = None
        return value

    def _on_event(self, event: Event) -> None:
        if not self.token.alive:
            return
        if event["name"] == ENTRY_FAILED:
            self.error = event.get("error")
        elif event["name"] == ENTRY_UPDATED:
            self.error = None
        if self._listener is not None:
            self._listener(event)

    def close(self) -> None:
        if not self.token.alive:
            return
        self.token.revoke()
        self._coordinator.store.unsubscribe(self.key, self._on_event)
