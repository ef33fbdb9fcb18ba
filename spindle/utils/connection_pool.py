"""
Shared httpx client for source adapter API calls.

Each adapter keeps one client so connections are reused across poll cycles.
Responses are inspected for GitHub-style rate limit headers; the latest
values are kept on the pool and a warning is logged when they run low.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimit:
    """Rate limit state reported by the last response."""

    limit: int | None = None
    remaining: int | None = None
    reset: datetime | None = None


class HTTPConnectionPool:
    """Lazily created ``httpx.AsyncClient`` bound to one API base URL."""

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        max_connections: int = 10,
        http2: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        low_rate_limit: int = 50,
    ) -> None:
        """Initialize the pool.

        Args:
            base_url: API base URL
            headers: Headers sent with every request
            timeout: Request timeout in seconds
            max_connections: Connection limit
            http2: Negotiate HTTP/2 where the server supports it
            transport: Optional httpx transport (used by tests)
            low_rate_limit: Remaining-request count below which a warning
                is logged
        """
        self.base_url = base_url
        self.headers = headers or {}
        self.timeout = timeout
        self.max_connections = max_connections
        self.http2 = http2
        self.low_rate_limit = low_rate_limit
        self.rate_limit = RateLimit()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                limits=httpx.Limits(max_connections=self.max_connections, keepalive_expiry=30.0),
                http2=self.http2,
                transport=self._transport,
            )
            log.debug("http_client_created", base_url=self.base_url)
        return self._client

    async def get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """Send a GET request relative to the base URL (or to an absolute URL)."""
        response = await self._ensure_client().get(path, params=params)
        self._observe_rate_limit(response)
        return response

    def _observe_rate_limit(self, response: httpx.Response) -> None:
        remaining = _int_header(response, "X-RateLimit-Remaining")
        if remaining is None:
            return
        reset = _int_header(response, "X-RateLimit-Reset")
        self.rate_limit = RateLimit(
            limit=_int_header(response, "X-RateLimit-Limit"),
            remaining=remaining,
            reset=datetime.fromtimestamp(reset, UTC) if reset is not None else None,
        )
        if remaining < self.low_rate_limit:
            log.warning(
                "api_rate_limit_low",
                base_url=self.base_url,
                remaining=remaining,
                reset=self.rate_limit.reset.isoformat() if self.rate_limit.reset else None,
            )

    async def close(self) -> None:
        """Close the underlying client. The pool can be used again afterwards."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HTTPConnectionPool":
        self._ensure_client()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def _int_header(response: httpx.Response, name: str) -> int | None:
    value = response.headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None
