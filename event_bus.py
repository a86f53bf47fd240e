"""In-memory cache event bus with strict envelope validation."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from sync_errors import ValidationFailure
from teamsync.query_keys import QueryKey, format_key


Event = Dict[str, Any]
Handler = Callable[[Event], None]

ENTRY_UPDATED = "entry.updated"
ENTRY_INVALIDATED = "entry.invalidated"
ENTRY_FETCHING = "entry.fetching"
ENTRY_FAILED = "entry.failed"
EVENT_NAMES = {ENTRY_UPDATED, ENTRY_INVALIDATED, ENTRY_FETCHING, ENTRY_FAILED}

_logger = logging.getLogger("teamsync.store")


class EventValidationError(ValidationFailure):
    """Malformed cache event envelope."""


def _require(ok: bool, code: str, message: str, path: str | None = None) -> None:
    if not ok:
        raise EventValidationError(message=message, code=code, path=path)


def _is_utc_stamp(value: Any) -> bool:
    if not isinstance(value, str) or not value.endswith("Z"):
        return False
    try:
        datetime.fromisoformat(value[:-1] + "+00:00")
    except ValueError:
        return False
    return True


def _is_counter(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def validate_event(event: Any) -> None:
    _require(isinstance(event, dict), "EVENT_INVALID", "event must be an object")
    name = event.get("name")
    _require(name in EVENT_NAMES, "EVENT_NAME_INVALID", f"unknown event name {name!r}", "name")
    key = event.get("key")
    _require(isinstance(key, tuple) and len(key) > 0, "EVENT_KEY_INVALID", "key must be a non-empty tuple", "key")

    meta = event.get("meta")
    _require(isinstance(meta, dict), "META_INVALID", "meta must be an object", "meta")
    _require(isinstance(meta.get("event_id"), str), "META_EVENT_ID_INVALID", "event_id must be a string", "meta.event_id")
    _require(
        _is_utc_stamp(meta.get("occurred_at")),
        "META_OCCURRED_AT_INVALID",
        "occurred_at must be an ISO8601 UTC stamp ending in 'Z'",
        "meta.occurred_at",
    )
    for counter in ("generation", "epoch"):
        _require(
            _is_counter(meta.get(counter)),
            "META_COUNTER_INVALID",
            f"{counter} must be a non-negative int",
            f"meta.{counter}",
        )


def make_event(name: str, key: QueryKey, generation: int, epoch: int, error: Exception | None = None) -> Event:
    event = {
        "name": name,
        "key": key,
        "error": error,
        "meta": {
            "event_id": str(uuid.uuid4()),
            "occurred_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "generation": generation,
            "epoch": epoch,
        },
    }
    validate_event(event)
    return event


class EventBus:
    """Per-key and store-wide listeners. No ordering guarantee between listeners."""

    def __init__(self) -> None:
        self._by_key: Dict[QueryKey, List[Handler]] = {}
        self._everywhere: List[Handler] = []

    def subscribe(self, key: QueryKey, handler: Handler) -> None:
        self._by_key.setdefault(key, []).append(handler)

    def unsubscribe(self, key: QueryKey, handler: Handler) -> bool:
        listeners = self._by_key.get(key, [])
        if handler not in listeners:
            return False
        listeners.remove(handler)
        if not listeners:
            self._by_key.pop(key, None)
        return True

    def subscribe_all(self, handler: Handler) -> None:
        self._everywhere.append(handler)

    def unsubscribe_all(self, handler: Handler) -> bool:
        if handler not in self._everywhere:
            return False
        self._everywhere.remove(handler)
        return True

    def listener_count(self, key: QueryKey) -> int:
        return len(self._by_key.get(key, ()))

    def clear(self) -> None:
        self._by_key.clear()
        self._everywhere.clear()

    def publish(self, event: Event) -> None:
        validate_event(event)
        # snapshot: listeners may unsubscribe while being called
        for handler in [*self._by_key.get(event["key"], ()), *self._everywhere]:
            try:
                handler(event)
            except Exception:
                _logger.exception(
                    "cache_listener_failed event=%s key=%s",
                    event["name"],
                    format_key(event["key"]),
                )
