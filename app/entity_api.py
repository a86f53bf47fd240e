"""Remote entity API: the generic CRUD contract and its adapters."""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generic, List, Protocol, TypeVar

import httpx

from sync_errors import NetworkFailure, NotFound, ValidationFailure
from teamsync.entities import EntityType, format_timestamp, parse_timestamp
from teamsync.query_keys import canonical_text


T = TypeVar("T")

_logger = logging.getLogger("teamsync.api")


class EntityApi(Protocol[T]):
    async def filter(self, criteria: dict, sort: str | None = None) -> list[T]:
        ...

    async def create(self, payload: dict) -> T:
        ...

    async def update(self, record_id: str, patch: dict) -> T:
        ...

    async def delete(self, record_id: str) -> None:
        ...


def _sort_records(records: List[dict], sort: str | None) -> List[dict]:
    if not sort:
        return records
    descending = sort.startswith("-")
    field = sort[1:] if descending else sort
    present = [r for r in records if r.get(field) is not None]
    missing = [r for r in records if r.get(field) is None]
    # stable: records with equal values keep insertion order
    if field.endswith("_date"):
        present.sort(key=lambda r: parse_timestamp(r[field]), reverse=descending)
    else:
        present.sort(key=lambda r: r[field], reverse=descending)
    return present + missing


class MemoryEntityApi(Generic[T]):
    """In-process stand-in for the remote store.

    Assigns ids and strictly increasing ``created_date`` values the way the
    server does, so ordering by ``created_date`` is total.
    """

    def __init__(self, entity_type: EntityType) -> None:
        self.entity_type = entity_type
        self._records: Dict[str, dict] = {}
        self._last_ts: datetime | None = None
        self.calls: List[str] = []

    def _next_timestamp(self) -> str:
        now = datetime.now(timezone.utc)
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return format_timestamp(now)

    def _decode(self, record: dict) -> T:
        return self.entity_type.decode(copy.deepcopy(record))

    def seed(self, records: List[dict]) -> List[T]:
        out = []
        for data in records:
            record = copy.deepcopy(data)
            record.setdefault("id", str(uuid.uuid4()))
            record.setdefault("created_date", self._next_timestamp())
            self._records[record["id"]] = record
            out.append(self._decode(record))
        return out

    async def filter(self, criteria: dict, sort: str | None = None) -> list[T]:
        self.calls.append("filter")
        items = [
            r for r in self._records.values() if all(r.get(k) == v for k, v in (criteria or {}).items())
        ]
        return [self._decode(r) for r in _sort_records(items, sort)]

    async def create(self, payload: dict) -> T:
        self.calls.append("create")
        record = copy.deepcopy(payload)
        record["id"] = str(uuid.uuid4())
        record["created_date"] = self._next_timestamp()
        try:
            decoded = self._decode(record)
        except (KeyError, ValueError) as exc:
            raise ValidationFailure(message=f"invalid {self.entity_type.name} payload: {exc}") from exc
        self._records[record["id"]] = record
        return decoded

    async def update(self, record_id: str, patch: dict) -> T:
        self.calls.append("update")
        existing = self._records.get(record_id)
        if existing is None:
            raise NotFound(message=f"{self.entity_type.name} not found", path=record_id)
        record = copy.deepcopy(existing)
        record.update(copy.deepcopy(patch))
        record["id"] = record_id
        try:
            decoded = self._decode(record)
        except (KeyError, ValueError) as exc:
            raise ValidationFailure(message=f"invalid {self.entity_type.name} patch: {exc}") from exc
        self._records[record_id] = record
        return decoded

    async def delete(self, record_id: str) -> None:
        self.calls.append("delete")
        if record_id not in self._records:
            raise NotFound(message=f"{self.entity_type.name} not found", path=record_id)
        del self._records[record_id]


def raise_for_response(res: httpx.Response, path: str) -> None:
    if res.status_code < 400:
        return
    if res.status_code == 404:
        raise NotFound(message="remote entity not found", path=path)
    if res.status_code in (400, 422):
        raise ValidationFailure(message=f"remote rejected request: {res.text[:200]}", path=path)
    raise NetworkFailure(
        message=f"remote request failed: {res.status_code}",
        path=path,
        status_code=res.status_code,
    )


class HttpEntityApi(Generic[T]):
    """REST adapter for one entity type.

    ``GET /entities/{Name}?q=<json>&sort=<spec>``, ``POST /entities/{Name}``,
    ``PUT /entities/{Name}/{id}``, ``DELETE /entities/{Name}/{id}``.
    """

    def __init__(
        self,
        entity_type: EntityType,
        base_url: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.entity_type = entity_type
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
            headers["api_key"] = self._api_key
        return headers

    def _url(self, record_id: str | None = None) -> str:
        url = f"{self._base_url}/entities/{self.entity_type.name}"
        return f"{url}/{record_id}" if record_id is not None else url

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            res = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            _logger.warning("api_transport_error method=%s url=%s error=%s", method, url, exc)
            raise NetworkFailure(message=str(exc) or exc.__class__.__name__, path=url) from exc
        _logger.debug("api_request method=%s url=%s status=%s", method, url, res.status_code)
        raise_for_response(res, url)
        return res

    def _json(self, res: httpx.Response) -> Any:
        try:
            return res.json()
        except ValueError as exc:
            raise NetworkFailure(message=f"response is not JSON: {exc}", path=str(res.request.url)) from exc

    def _decode(self, payload: Any) -> T:
        try:
            return self.entity_type.decode(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise NetworkFailure(message=f"malformed {self.entity_type.name} record: {exc}") from exc

    async def filter(self, criteria: dict, sort: str | None = None) -> list[T]:
        params = {"q": canonical_text(criteria or {})}
        if sort:
            params["sort"] = sort
        res = await self._request("GET", self._url(), params=params)
        payload = self._json(res)
        if not isinstance(payload, list):
            raise NetworkFailure(message="filter response must be a list", path=self._url())
        return [self._decode(item) for item in payload]

    async def create(self, payload: dict) -> T:
        res = await self._request("POST", self._url(), json=payload)
        return self._decode(self._json(res))

    async def update(self, record_id: str, patch: dict) -> T:
        res = await self._request("PUT", self._url(record_id), json=patch)
        return self._decode(self._json(res))

    async def delete(self, record_id: str) -> None:
        await self._request("DELETE", self._url(record_id))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
