"""
Low-level FreeAgent API transport.

Wraps ``httpx.AsyncClient`` with bearer authentication, ``Link`` header
pagination, and rate-limit handling. The typed accessors live in
:mod:`freeagent_api.api`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse

import httpx

from freeagent_api.auth.oauth2 import OAuth2TokenManager
from freeagent_api.config import FreeAgentConfig
from freeagent_api.exceptions import APIError, RateLimitError

logger = logging.getLogger("freeagent_api.client")

# Used when a 429 carries no usable Retry-After header
_DEFAULT_RETRY_AFTER = 1.0


@dataclass
class Page:
    """One decoded API response plus the links from its ``Link`` header."""

    data: dict[str, Any]
    links: dict[str, str] = field(default_factory=dict)

    @property
    def next_url(self) -> str | None:
        return self.links.get("next")

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


def _path(*parts: Any) -> str:
    return "/".join(str(p).strip("/") for p in parts)


def _retry_after(resp: httpx.Response) -> float:
    value = resp.headers.get("Retry-After")
    try:
        return max(float(value), 0.0) if value is not None else _DEFAULT_RETRY_AFTER
    except ValueError:
        return _DEFAULT_RETRY_AFTER


def _decode(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


class FreeAgentClient:
    """Authenticated requests against the FreeAgent v2 API.

    Usage::

        async with FreeAgentClient(config, token_manager) as client:
            page = await client.get("projects", 42)
            async for page in client.iter_pages("timeslips", from_date="2024-01-01"):
                ...
    """

    def __init__(
        self,
        config: FreeAgentConfig,
        token_manager: OAuth2TokenManager,
        *,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.token_manager = token_manager
        self._http = http

    async def __aenter__(self) -> FreeAgentClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                headers={"Accept": "application/json"},
            )
        return self._http

    async def close(self) -> None:
        """Clean up HTTP client and token manager."""
        if self._http and not self._http.is_closed:
            await self._http.aclose()
        await self.token_manager.close()

    # ------------------------------------------------------------------
    # Request core
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """Send one request, refreshing on 401 and sleeping on 429.

        Raises:
            RateLimitError: If still rate limited after ``max_retries`` sleeps.
            APIError: For any other non-success status.
        """
        client = await self._get_client()
        headers = {"Accept": "application/json"}
        if json is not None:
            headers["Content-Type"] = "application/json"

        refreshed = False
        retries = 0
        while True:
            token = await self.token_manager.get_access_token()
            headers["Authorization"] = f"Bearer {token}"
            resp = await client.request(method, path, params=params, json=json, headers=headers)

            if resp.status_code == 401 and not refreshed:
                logger.info("Access token rejected, refreshing...")
                await self.token_manager.refresh()
                refreshed = True
                continue

            if resp.status_code == 429:
                retry_after = _retry_after(resp)
                if retries >= self.config.max_retries:
                    raise RateLimitError(
                        f"{method} {path} still rate limited after {retries} retries",
                        retry_after=retry_after,
                    )
                retries += 1
                logger.info("Rate limited; sleeping for %s", retry_after)
                await asyncio.sleep(retry_after)
                continue

            if resp.is_error:
                raise APIError(resp.status_code, method, str(resp.request.url), _decode(resp))
            return resp

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------

    async def get(self, *parts: Any, **params: Any) -> Page:
        """GET a resource; ``parts`` are joined into the path."""
        path = _path(*parts)
        logger.info("GET %s%s", path, "?" + urlencode(params) if params else "")
        resp = await self.request("GET", path, params=params or None)
        data = _decode(resp) or {}
        links = {rel: link["url"] for rel, link in resp.links.items() if "url" in link}
        return Page(data=data, links=links)

    async def iter_pages(self, *parts: Any, **params: Any) -> AsyncIterator[Page]:
        """Yield every page of a list endpoint, following ``rel=next`` links."""
        params = {"per_page": self.config.per_page, **params}
        while True:
            page = await self.get(*parts, **params)
            yield page
            if not page.next_url:
                break
            params = dict(parse_qsl(urlparse(page.next_url).query))

    async def get_all(self, *parts: Any, key: str, **params: Any) -> list[dict[str, Any]]:
        """Collect ``page[key]`` across all pages of a list endpoint."""
        items: list[dict[str, Any]] = []
        async for page in self.iter_pages(*parts, **params):
            items.extend(page.get(key) or [])
        return items

    async def post(self, *parts: Any, data: Any, **params: Any) -> dict[str, Any]:
        path = _path(*parts)
        logger.info("POST %s", path)
        resp = await self.request("POST", path, params=params or None, json=data)
        return _decode(resp) or {}

    async def put(self, *parts: Any, data: Any, **params: Any) -> dict[str, Any]:
        path = _path(*parts)
        logger.info("PUT %s", path)
        resp = await self.request("PUT", path, params=params or None, json=data)
        return _decode(resp) or {}

    async def delete(self, *parts: Any, **params: Any) -> None:
        path = _path(*parts)
        logger.info("DELETE %s", path)
        await self.request("DELETE", path, params=params or None)
