"""LMS read API client - REST for rosters, GraphQL for activity history."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

import httpx

from ..config import settings
from ..errors import RateLimitError, UpstreamPermanentError, UpstreamTransientError

logger = logging.getLogger(__name__)

QUIZ_ATTEMPTS_QUERY = """
query UserQuizAttempts($userId: ID!, $first: Int!, $cursor: String) {
  user(id: $userId) {
    id
    quizAttempts(first: $first, after: $cursor) {
      edges {
        node {
          id
          score
          maxScore
          percentageScore
          attemptNumber
          correctCount
          incorrectCount
          completedAt
          quiz { id name }
          course { id name }
        }
      }
      pageInfo { hasNextPage endCursor }
    }
  }
}
"""

COMPLETED_CONTENTS_QUERY = """
query UserCompletedContents($userId: ID!, $first: Int!, $cursor: String) {
  user(id: $userId) {
    id
    completedContents(first: $first, after: $cursor) {
      edges {
        node {
          id
          name
          type
          completedAt
          course { id name }
        }
      }
      pageInfo { hasNextPage endCursor }
    }
  }
}
"""


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def _json_or_none(response: httpx.Response) -> dict | None:
    if not response.content:
        return None
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else {"data": data}


class LMSClient:
    """Async client for the LMS REST and GraphQL read APIs.

    Usage:
        async with LMSClient() as client:
            members = await client.list_group_members("123")
            async for node in client.iter_quiz_attempts(members[0]["id"]):
                ...
    """

    def __init__(
        self,
        subdomain: str | None = None,
        api_key: str | None = None,
        access_token: str | None = None,
        rest_base_url: str | None = None,
        graphql_url: str | None = None,
        *,
        max_retries: int | None = None,
        backoff_initial: float | None = None,
        backoff_multiplier: float | None = None,
        backoff_max: float | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.subdomain = subdomain or settings.lms_subdomain
        self.api_key = api_key or settings.lms_api_key
        self.access_token = access_token or settings.lms_access_token
        self.rest_base_url = (rest_base_url or settings.lms_rest_base_url).rstrip("/")
        self.graphql_url = graphql_url or settings.lms_graphql_url
        self.max_retries = settings.lms_max_retries if max_retries is None else max_retries
        self.backoff_initial = settings.lms_backoff_initial_seconds if backoff_initial is None else backoff_initial
        self.backoff_multiplier = (
            settings.lms_backoff_multiplier if backoff_multiplier is None else backoff_multiplier
        )
        self.backoff_max = settings.lms_backoff_max_seconds if backoff_max is None else backoff_max
        self.page_size = page_size or settings.lms_page_size
        self.max_pages = max_pages or settings.lms_max_pages

        self._client = httpx.AsyncClient(timeout=settings.lms_timeout_seconds, transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    def _rest_headers(self) -> dict[str, str]:
        return {
            "X-Auth-API-Key": self.api_key,
            "X-Auth-Subdomain": self.subdomain,
            "Content-Type": "application/json",
        }

    def _graphql_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        params: dict | None = None,
        json: dict | None = None,
    ) -> dict[str, Any]:
        """Make a request, retrying rate limits, 5xx and transport errors."""
        attempt = 0
        backoff = self.backoff_initial
        while True:
            try:
                response = await self._client.request(method, url, headers=headers, params=params, json=json)
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    raise UpstreamTransientError(f"LMS request failed: {exc}") from exc
                logger.warning("LMS transport error on %s (attempt %d): %s", url, attempt + 1, exc)
                await asyncio.sleep(min(self.backoff_max, backoff))
                attempt += 1
                backoff = min(self.backoff_max, backoff * self.backoff_multiplier)
                continue

            if response.status_code == 429:
                retry_after = _retry_after_seconds(response)
                if attempt >= self.max_retries:
                    raise RateLimitError(
                        "LMS rate limit exceeded",
                        429,
                        _json_or_none(response),
                        retry_after=retry_after,
                    )
                delay = min(self.backoff_max, retry_after if retry_after is not None else backoff)
                logger.info("LMS rate limited on %s; retrying in %.1fs", url, delay)
                await asyncio.sleep(delay)
                attempt += 1
                backoff = min(self.backoff_max, backoff * self.backoff_multiplier)
                continue

            if response.status_code >= 500:
                if attempt >= self.max_retries:
                    raise UpstreamTransientError(
                        f"LMS API error: {response.status_code}",
                        response.status_code,
                        _json_or_none(response),
                    )
                logger.warning("LMS %s on %s (attempt %d)", response.status_code, url, attempt + 1)
                await asyncio.sleep(min(self.backoff_max, backoff))
                attempt += 1
                backoff = min(self.backoff_max, backoff * self.backoff_multiplier)
                continue

            if response.status_code >= 400:
                raise UpstreamPermanentError(
                    f"LMS API error: {response.status_code}",
                    response.status_code,
                    _json_or_none(response),
                )

            return _json_or_none(response) or {}

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        body = await self._request(
            "POST",
            self.graphql_url,
            headers=self._graphql_headers(),
            json={"query": query, "variables": variables},
        )
        errors = body.get("errors")
        if errors:
            messages = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
            raise UpstreamPermanentError(f"GraphQL error: {messages}", 200, body)
        return body.get("data") or {}

    async def list_group_members(self, group_id: str) -> list[dict[str, Any]]:
        """All users in a group, via page/limit pagination."""
        members: list[dict[str, Any]] = []
        for page in range(1, self.max_pages + 1):
            data = await self._request(
                "GET",
                f"{self.rest_base_url}/users",
                headers=self._rest_headers(),
                params={"query[group_id]": group_id, "page": page, "limit": self.page_size},
            )
            items = data.get("items") or []
            members.extend(item for item in items if isinstance(item, dict))
            if len(items) < self.page_size:
                break
        else:
            logger.warning("Group %s member listing stopped at %d pages", group_id, self.max_pages)
        return members

    async def _iter_connection(self, query: str, field: str, user_id: str) -> AsyncIterator[dict[str, Any]]:
        cursor: str | None = None
        for _ in range(self.max_pages):
            data = await self._graphql(query, {"userId": user_id, "first": self.page_size, "cursor": cursor})
            connection = (data.get("user") or {}).get(field)
            if not connection:
                return
            for edge in connection.get("edges") or []:
                node = (edge or {}).get("node")
                if isinstance(node, dict):
                    yield node
            page_info = connection.get("pageInfo") or {}
            cursor = page_info.get("endCursor")
            if not page_info.get("hasNextPage") or not cursor:
                return
        logger.warning("%s for user %s stopped at %d pages", field, user_id, self.max_pages)

    def iter_quiz_attempts(self, user_id: str) -> AsyncIterator[dict[str, Any]]:
        """Stream a user's quiz attempt nodes across cursor pages."""
        return self._iter_connection(QUIZ_ATTEMPTS_QUERY, "quizAttempts", user_id)

    def iter_completed_contents(self, user_id: str) -> AsyncIterator[dict[str, Any]]:
        """Stream a user's completed content nodes across cursor pages."""
        return self._iter_connection(COMPLETED_CONTENTS_QUERY, "completedContents", user_id)
