from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping, Sequence
from dataclasses import asdict, is_dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any

import httpx

from pagebridge.core.config import get_settings

logger = logging.getLogger(__name__)


class SanityError(Exception):
    """Raised when the content lake rejects a query or mutation."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SanityUnavailableError(SanityError):
    """Raised when the content lake cannot be reached or is not configured."""


def sanity_key(seed: str) -> str:
    """Deterministic, compact ``_key`` for array items."""
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:12]


class SanityClient:
    def __init__(
        self,
        project_id: str | None,
        dataset: str,
        token: str | None = None,
        api_version: str = "2024-01-01",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.project_id = project_id
        self.dataset = dataset
        self.api_version = api_version.lstrip("v")
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return f"https://{self.project_id}.api.sanity.io/v{self.api_version}/data"

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self, query: str, params: Mapping[str, Any] | None = None) -> Any:
        payload = await self._post(f"/query/{self.dataset}", {"query": query, "params": dict(params or {})})
        return payload.get("result")

    async def mutate(self, mutations: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
        if not mutations:
            return {"results": []}
        payload = await self._post(
            f"/mutate/{self.dataset}",
            {"mutations": list(mutations)},
            params={"returnIds": "true", "visibility": "sync"},
        )
        logger.debug("sanity mutate count=%s transaction=%s", len(mutations), payload.get("transactionId"))
        return payload

    async def create(self, document: Mapping[str, Any]) -> str | None:
        return _first_id(await self.mutate([{"create": dict(document)}]))

    async def create_or_replace(self, document: Mapping[str, Any]) -> str | None:
        return _first_id(await self.mutate([{"createOrReplace": dict(document)}]))

    async def create_if_not_exists(self, document: Mapping[str, Any]) -> str | None:
        return _first_id(await self.mutate([{"createIfNotExists": dict(document)}]))

    async def patch_set(self, document_id: str, values: Mapping[str, Any]) -> str | None:
        return _first_id(await self.mutate([patch_mutation(document_id, values)]))

    async def _post(
        self,
        path: str,
        body: dict[str, Any],
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        client = self._get_client()
        try:
            response = await client.post(f"{self.base_url}{path}", json=body, params=params)
        except httpx.HTTPError as exc:
            raise SanityUnavailableError(f"sanity request failed: {exc}") from exc

        if response.status_code >= 500:
            raise SanityUnavailableError(f"sanity returned {response.status_code}", response.status_code)
        if response.status_code >= 400:
            raise SanityError(_error_message(response), response.status_code)
        return response.json()

    def _get_client(self) -> httpx.AsyncClient:
        if not self.project_id:
            raise SanityUnavailableError("PB_SANITY_PROJECT_ID is required")
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=self.headers, transport=self._transport)
        return self._client


def camelize(value: Any) -> Any:
    """Dataclasses and dicts with snake_case keys -> camelCase document fields."""
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, Mapping):
        return {_camel_key(key): camelize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [camelize(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _camel_key(key: str) -> str:
    if key.startswith("_"):
        return key
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def patch_mutation(document_id: str, values: Mapping[str, Any]) -> dict[str, Any]:
    return {"patch": {"id": document_id, "set": dict(values)}}


def _first_id(payload: dict[str, Any]) -> str | None:
    results = payload.get("results") or []
    if not results:
        return None
    return results[0].get("id")


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"sanity returned {response.status_code}: {response.text[:200]}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("description") or error.get("type") or error)
    if error:
        return str(error)
    return f"sanity returned {response.status_code}"


@lru_cache
def get_sanity_client() -> SanityClient:
    settings = get_settings()
    return SanityClient(
        project_id=settings.sanity_project_id,
        dataset=settings.sanity_dataset,
        token=settings.sanity_token,
        api_version=settings.sanity_api_version,
        timeout=settings.sanity_timeout_seconds,
    )
