import asyncio
import json
from dataclasses import dataclass

import httpx
import pytest

from pagebridge.services.sanity_client import (
    SanityClient,
    SanityError,
    SanityUnavailableError,
    camelize,
    sanity_key,
)


def _client(handler) -> SanityClient:
    return SanityClient(
        project_id="proj123",
        dataset="production",
        token="secret-token",
        api_version="v2024-01-01",
        transport=httpx.MockTransport(handler),
    )


def test_fetch_posts_groq_with_params() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"result": [{"_id": "a"}]})

    client = _client(handler)
    result = asyncio.run(client.fetch("*[_type == $type]", {"type": "post"}))

    assert result == [{"_id": "a"}]
    request = seen[0]
    assert str(request.url) == "https://proj123.api.sanity.io/v2024-01-01/data/query/production"
    assert request.headers["Authorization"] == "Bearer secret-token"
    assert json.loads(request.content) == {"query": "*[_type == $type]", "params": {"type": "post"}}


def test_mutate_returns_ids_synchronously() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"transactionId": "tx", "results": [{"id": "doc-1", "operation": "create"}]})

    client = _client(handler)
    created = asyncio.run(client.create({"_type": "gscRefreshTask"}))
    patched = asyncio.run(client.patch_set("doc-1", {"status": "done"}))

    assert created == "doc-1"
    assert patched == "doc-1"
    assert seen[0].url.params["returnIds"] == "true"
    assert seen[0].url.params["visibility"] == "sync"
    assert json.loads(seen[1].content) == {"mutations": [{"patch": {"id": "doc-1", "set": {"status": "done"}}}]}


def test_empty_mutation_batch_skips_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert asyncio.run(_client(handler).mutate([])) == {"results": []}


def test_client_errors_keep_status_and_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"description": "Document not found"}})

    with pytest.raises(SanityError) as exc_info:
        asyncio.run(_client(handler).patch_set("missing", {"status": "done"}))

    assert exc_info.value.status_code == 404
    assert "Document not found" in str(exc_info.value)
    assert not isinstance(exc_info.value, SanityUnavailableError)


def test_server_and_transport_errors_are_unavailable() -> None:
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="busy")

    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(SanityUnavailableError):
        asyncio.run(_client(server_error).fetch("*"))
    with pytest.raises(SanityUnavailableError):
        asyncio.run(_client(broken).fetch("*"))


def test_missing_project_id_is_unavailable() -> None:
    client = SanityClient(project_id=None, dataset="production")
    with pytest.raises(SanityUnavailableError):
        asyncio.run(client.fetch("*"))


@dataclass
class _Sample:
    actual_ctr: float
    position_bucket: int


def test_camelize_and_sanity_key() -> None:
    assert camelize(_Sample(actual_ctr=0.1, position_bucket=3)) == {"actualCtr": 0.1, "positionBucket": 3}
    assert camelize({"_key": "k", "shared_queries": ["a"]}) == {"_key": "k", "sharedQueries": ["a"]}
    assert sanity_key("abc") == sanity_key("abc")
    assert len(sanity_key("abc")) == 12
