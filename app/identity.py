"""Current-identity providers consumed by the chat composer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from app.entity_api import raise_for_response
from sync_errors import NetworkFailure


_logger = logging.getLogger("teamsync.identity")


@dataclass(frozen=True)
class Identity:
    email: str
    display_name: str


def display_name_for(email: str, full_name: str | None = None) -> str:
    if isinstance(full_name, str) and full_name.strip():
        return full_name.strip()
    return email.split("@")[0]


class IdentityProvider(Protocol):
    async def current_identity(self) -> Identity:
        ...


class StaticIdentityProvider:
    def __init__(self, email: str, full_name: str | None = None) -> None:
        self._identity = Identity(email=email, display_name=display_name_for(email, full_name))

    async def current_identity(self) -> Identity:
        return self._identity


class HttpIdentityProvider:
    """Reads ``GET {base}/auth/me`` once and caches the result."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/auth/me"
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._cached: Identity | None = None

    async def current_identity(self) -> Identity:
        if self._cached is not None:
            return self._cached
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            res = await self._client.get(self._url, headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkFailure(message=str(exc) or exc.__class__.__name__, path=self._url) from exc
        raise_for_response(res, self._url)
        try:
            data = res.json()
        except ValueError as exc:
            raise NetworkFailure(message=f"identity response is not JSON: {exc}", path=self._url) from exc
        email = data.get("email") if isinstance(data, dict) else None
        if not isinstance(email, str) or not email:
            raise NetworkFailure(message="identity response has no email", path=self._url)
        self._cached = Identity(email=email, display_name=display_name_for(email, data.get("full_name")))
        _logger.info("identity_loaded email=%s", email)
        return self._cached

    def forget(self) -> None:
        self._cached = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
