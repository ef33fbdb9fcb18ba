"""GitHub issue and pull request source using direct REST API calls."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
import structlog

from spindle.enums import ItemKind
from spindle.exceptions import SourceError
from spindle.models.items import DiscoveredItem
from spindle.models.resources import GitHubIssuesFilter
from spindle.sources.base import SourceAdapter
from spindle.utils.connection_pool import HTTPConnectionPool
from spindle.utils.retry import async_retry

log = structlog.get_logger(__name__)


class GitHubIssuesSource(SourceAdapter):
    """List open issues and pull requests of one repository."""

    def __init__(
        self,
        owner: str,
        repo: str,
        api_base_url: str = "https://api.github.com",
        token: str | None = None,
        per_page: int = 100,
        max_pages: int = 10,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the source.

        Args:
            owner: Repository owner/organization
            repo: Repository name
            api_base_url: REST API base URL (GitHub Enterprise uses its own)
            token: API token, sent as a bearer token when set
            per_page: Page size for list calls
            max_pages: Upper bound on pages fetched per call
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.owner = owner
        self.repo = repo
        self.per_page = per_page
        self.max_pages = max_pages
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token.strip()}"
        self._pool = HTTPConnectionPool(
            base_url=api_base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def close(self) -> None:
        await self._pool.close()

    async def list(self, item_filter: GitHubIssuesFilter) -> list[DiscoveredItem]:
        """List issues and/or pull requests matching the filter.

        Required labels are passed to the API; excluded labels and item
        types are filtered locally. Comments are fetched for every returned
        item, oldest first.
        """
        log.info(
            "github_list_issues",
            owner=self.owner,
            repo=self.repo,
            labels=item_filter.labels,
            state=item_filter.state,
        )
        params: dict[str, Any] = {"state": item_filter.state, "per_page": self.per_page}
        if item_filter.labels:
            params["labels"] = ",".join(item_filter.labels)

        raw_items = await self._get_paginated(f"/repos/{self.owner}/{self.repo}/issues", params)

        want_issues = "issues" in item_filter.types
        want_pulls = "pulls" in item_filter.types
        excluded = set(item_filter.exclude_labels)

        items = []
        for data in raw_items:
            is_pull = "pull_request" in data
            if (is_pull and not want_pulls) or (not is_pull and not want_issues):
                continue
            labels = tuple(label["name"] for label in data.get("labels", []))
            if excluded & set(labels):
                continue
            comments = await self._get_comments(data["number"])
            items.append(self._parse_item(data, labels, comments, is_pull))

        log.info("github_items_discovered", owner=self.owner, repo=self.repo, count=len(items))
        return items

    async def _get_comments(self, number: int) -> tuple[str, ...]:
        raw = await self._get_paginated(
            f"/repos/{self.owner}/{self.repo}/issues/{number}/comments",
            {"per_page": self.per_page},
        )
        return tuple(c.get("body") or "" for c in raw)

    async def _get_paginated(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        url: str | None = path
        page_params: dict[str, Any] | None = params
        for _ in range(self.max_pages):
            if url is None:
                break
            response = await self._get(url, page_params)
            try:
                payload = response.json()
            except ValueError as e:
                raise SourceError(f"invalid JSON from {path}", status_code=response.status_code) from e
            if not isinstance(payload, list):
                raise SourceError(f"unexpected response from {path}", status_code=response.status_code)
            results.extend(payload)
            url = response.links.get("next", {}).get("url")
            # The next link already carries the query string.
            page_params = None
        return results

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(httpx.TransportError,))
    async def _fetch(self, url: str, params: dict[str, Any] | None) -> httpx.Response:
        return await self._pool.get(url, params=params)

    async def _get(self, url: str, params: dict[str, Any] | None) -> httpx.Response:
        try:
            response = await self._fetch(url, params)
        except httpx.TransportError as e:
            raise SourceError(f"GitHub request failed: {e}") from e
        if response.status_code >= 400:
            detail = ""
            if response.headers.get("content-type", "").startswith("application/json"):
                body = response.json()
                if isinstance(body, dict):
                    detail = body.get("message", "")
            raise SourceError(f"GitHub API error: {detail or response.reason_phrase}", status_code=response.status_code)
        return response

    @staticmethod
    def _parse_item(
        data: dict[str, Any],
        labels: tuple[str, ...],
        comments: tuple[str, ...],
        is_pull: bool,
    ) -> DiscoveredItem:
        created = data.get("created_at")
        return DiscoveredItem(
            id=str(data["number"]),
            kind=ItemKind.PR if is_pull else ItemKind.ISSUE,
            number=int(data["number"]),
            title=data.get("title") or "",
            body=data.get("body") or "",
            url=data.get("html_url") or "",
            labels=labels,
            comments=comments,
            time=datetime.fromisoformat(created.replace("Z", "+00:00")) if created else None,
        )
