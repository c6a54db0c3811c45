"""Async Notion API client with cursor pagination and rate-limit backoff."""

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

import httpx

from .errors import NotionAPIError, RateLimited
from .retry import RetryPolicy

logger = logging.getLogger("notion-sync")

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

# Notion allows ~3 req/sec on average; bursts above this get 429s
DEFAULT_MAX_CONCURRENT_REQUESTS = 10
DEFAULT_PAGE_SIZE = 100


def _error_from_response(response: httpx.Response) -> NotionAPIError:
    """Build a typed error from a non-success API response."""
    code = None
    message = response.text[:300]
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = body.get("code")
        message = body.get("message") or message

    if response.status_code == 429 or code == "rate_limited" or "rate limited" in message.lower():
        retry_after = None
        header = response.headers.get("Retry-After")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        return RateLimited(message or "rate limited", status=response.status_code,
                           code=code or "rate_limited", retry_after=retry_after)

    return NotionAPIError(message or response.reason_phrase, status=response.status_code, code=code)


class NotionClient:
    """Authenticated access to the blocks and databases endpoints.

    Every request carries the bearer token and version header, runs under a
    shared semaphore, and is retried by ``retry_policy`` when rate limited.
    Any other error surfaces immediately.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = NOTION_API_BASE,
        notion_version: str = NOTION_VERSION,
        retry_policy: Optional[RetryPolicy] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT_REQUESTS,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not token:
            raise ValueError("A Notion token is required")
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Notion-Version": notion_version,
            "Content-Type": "application/json",
        }
        self._base_url = base_url.rstrip("/")
        self._retry = retry_policy or RetryPolicy()
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def __aenter__(self) -> "NotionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _send(self, method: str, endpoint: str, json_body: Optional[dict] = None,
                    params: Optional[dict] = None) -> dict:
        """Issue a single request; raise a typed error on any non-2xx status."""
        url = f"{self._base_url}{endpoint}"
        async with self._semaphore:
            if method == "GET":
                response = await self._http.get(url, headers=self._headers, params=params)
            elif method == "POST":
                response = await self._http.post(url, headers=self._headers, json=json_body or {})
            else:
                raise ValueError(f"Unsupported method: {method}")

        if response.is_success:
            return response.json()
        raise _error_from_response(response)

    async def request(self, method: str, endpoint: str, json_body: Optional[dict] = None,
                      params: Optional[dict] = None) -> dict:
        """Issue a request, backing off and retrying while rate limited."""
        return await self._retry.call(
            lambda: self._send(method, endpoint, json_body=json_body, params=params),
            label=f"{method} {endpoint}",
        )

    async def _paginate(self, method: str, endpoint: str, body: Optional[dict] = None,
                        page_size: int = DEFAULT_PAGE_SIZE) -> AsyncIterator[dict]:
        """Yield every result across cursor-paginated responses.

        Each page request gets its own retry budget, so the attempt counter is
        reset after every successful page.
        """
        start_cursor: Optional[str] = None
        while True:
            if method == "GET":
                params: dict[str, Any] = {"page_size": page_size}
                if start_cursor:
                    params["start_cursor"] = start_cursor
                result = await self.request("GET", endpoint, params=params)
            else:
                payload = dict(body or {})
                payload["page_size"] = page_size
                if start_cursor:
                    payload["start_cursor"] = start_cursor
                result = await self.request("POST", endpoint, json_body=payload)

            for item in result.get("results", []):
                yield item

            start_cursor = result.get("next_cursor")
            if not result.get("has_more") or not start_cursor:
                break

    def list_children(self, block_id: str, page_size: int = DEFAULT_PAGE_SIZE) -> AsyncIterator[dict]:
        """Iterate the immediate children of a block or page."""
        return self._paginate("GET", f"/blocks/{block_id}/children", page_size=page_size)

    def query_database(
        self,
        database_id: str,
        filter_obj: Optional[dict] = None,
        sorts: Optional[list] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        archived: Optional[bool] = None,
    ) -> AsyncIterator[dict]:
        """Iterate the pages of a database matching a filter.

        Args:
            database_id: The database UUID.
            filter_obj: Optional Notion filter object.
            sorts: Optional list of Notion sort objects.
            page_size: Results per request (max 100).
            archived: Optional archived flag forwarded to the query.
        """
        body: dict[str, Any] = {}
        if filter_obj:
            body["filter"] = filter_obj
        if sorts:
            body["sorts"] = sorts
        if archived is not None:
            body["archived"] = archived
        return self._paginate("POST", f"/databases/{database_id}/query", body=body,
                              page_size=min(page_size, 100))

    async def retrieve_database(self, database_id: str) -> dict:
        """Fetch database metadata (title and property schema)."""
        return await self.request("GET", f"/databases/{database_id}")


def get_database_title(database: dict) -> str:
    """Extract title from database metadata."""
    title_array = database.get("title", [])
    return "".join(t.get("plain_text", "") for t in title_array) or "Untitled"
