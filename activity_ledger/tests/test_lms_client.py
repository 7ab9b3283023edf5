"""LMS client retries and pagination against a mock transport."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from activity_ledger.errors import RateLimitError, UpstreamPermanentError, UpstreamTransientError
from activity_ledger.sync.lms_client import LMSClient

REST = "https://lms.test/api/public/v1"
GRAPHQL = "https://lms.test/graphql"


def _client(handler, **kwargs) -> LMSClient:
    options = dict(
        subdomain="school",
        api_key="key-1",
        access_token="tok-1",
        rest_base_url=REST,
        graphql_url=GRAPHQL,
        max_retries=2,
        backoff_initial=1.0,
        backoff_multiplier=2.0,
        backoff_max=30.0,
        page_size=2,
        max_pages=10,
    )
    options.update(kwargs)
    return LMSClient(transport=httpx.MockTransport(handler), **options)


@pytest.fixture
def sleep(monkeypatch: pytest.MonkeyPatch) -> AsyncMock:
    mock = AsyncMock()
    monkeypatch.setattr("activity_ledger.sync.lms_client.asyncio.sleep", mock)
    return mock


@pytest.mark.asyncio
async def test_rest_headers_and_page_pagination(sleep):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        page = int(request.url.params["page"])
        items = {1: [{"id": 1}, {"id": 2}], 2: [{"id": 3}]}[page]
        return httpx.Response(200, json={"items": items})

    async with _client(handler) as client:
        members = await client.list_group_members("G1")

    assert [m["id"] for m in members] == [1, 2, 3]
    assert len(seen) == 2
    assert seen[0].headers["X-Auth-API-Key"] == "key-1"
    assert seen[0].headers["X-Auth-Subdomain"] == "school"
    assert seen[0].url.params["query[group_id]"] == "G1"
    assert seen[0].url.params["limit"] == "2"
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_rate_limit_honors_retry_after(sleep):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(429, headers={"Retry-After": "7"})
        return httpx.Response(200, json={"items": []})

    async with _client(handler) as client:
        assert await client.list_group_members("G1") == []

    assert len(calls) == 2
    sleep.assert_awaited_once_with(7.0)


@pytest.mark.asyncio
async def test_rate_limit_exhaustion_raises(sleep):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "1"})

    async with _client(handler) as client:
        with pytest.raises(RateLimitError) as exc:
            await client.list_group_members("G1")

    assert exc.value.retry_after == 1.0
    assert exc.value.status_code == 429
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_server_errors_back_off_then_give_up(sleep):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503, json={"error": "unavailable"})

    async with _client(handler, max_retries=3) as client:
        with pytest.raises(UpstreamTransientError) as exc:
            await client.list_group_members("G1")

    assert len(calls) == 4
    assert exc.value.status_code == 503
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_backoff_is_capped(sleep):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async with _client(handler, max_retries=4, backoff_initial=3.0, backoff_max=5.0) as client:
        with pytest.raises(UpstreamTransientError):
            await client.list_group_members("G1")

    assert [c.args[0] for c in sleep.await_args_list] == [3.0, 5.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_transport_errors_are_retried(sleep):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"items": [{"id": 9}]})

    async with _client(handler) as client:
        members = await client.list_group_members("G1")

    assert members == [{"id": 9}]
    assert sleep.await_count == 1


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(sleep):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(403, json={"error": "forbidden"})

    async with _client(handler) as client:
        with pytest.raises(UpstreamPermanentError) as exc:
            await client.list_group_members("G1")

    assert len(calls) == 1
    assert exc.value.status_code == 403
    assert exc.value.response == {"error": "forbidden"}
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_graphql_cursor_pagination(sleep):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        cursor = body["variables"]["cursor"]
        if cursor is None:
            connection = {
                "edges": [{"node": {"id": "A-1"}}, {"node": {"id": "A-2"}}],
                "pageInfo": {"hasNextPage": True, "endCursor": "c2"},
            }
        else:
            connection = {
                "edges": [{"node": {"id": "A-3"}}],
                "pageInfo": {"hasNextPage": False, "endCursor": None},
            }
        return httpx.Response(200, json={"data": {"user": {"id": "1001", "quizAttempts": connection}}})

    async with _client(handler) as client:
        nodes = [node async for node in client.iter_quiz_attempts("1001")]

    assert [n["id"] for n in nodes] == ["A-1", "A-2", "A-3"]
    assert [r["variables"]["cursor"] for r in requests] == [None, "c2"]
    assert requests[0]["variables"] == {"userId": "1001", "first": 2, "cursor": None}


@pytest.mark.asyncio
async def test_graphql_uses_bearer_token(sleep):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"user": None}})

    async with _client(handler) as client:
        nodes = [node async for node in client.iter_completed_contents("1001")]

    assert nodes == []
    assert seen[0].headers["Authorization"] == "Bearer tok-1"
    assert str(seen[0].url) == GRAPHQL


@pytest.mark.asyncio
async def test_graphql_errors_are_permanent(sleep):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "User not found"}]})

    async with _client(handler) as client:
        with pytest.raises(UpstreamPermanentError, match="User not found"):
            [node async for node in client.iter_quiz_attempts("404")]


@pytest.mark.asyncio
async def test_page_cap_stops_listing(sleep):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"items": [{"id": 1}, {"id": 2}]})

    async with _client(handler, max_pages=3) as client:
        members = await client.list_group_members("G1")

    assert len(members) == 6
