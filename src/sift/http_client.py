"""HTTP client factory and bounded static fetching.

The static fetcher is the fallback path for pages the render engine does not
handle. Every fetch has a hard deadline and a response size cap.
"""

import asyncio
import logging
from dataclasses import dataclass

import httpx

from sift.config import BROWSER_USER_AGENT, CrawlerSettings
from sift.exceptions import FetchError

logger = logging.getLogger(__name__)

FETCH_HEADERS = {
    "User-Agent": BROWSER_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate",
}


@dataclass
class FetchResult:
    """Body and headers of a successful static fetch."""

    url: str
    final_url: str
    content: str
    status_code: int
    content_type: str
    content_length: int
    last_modified: str | None = None


def create_http_client(
    settings: CrawlerSettings | None = None, max_connections: int = 10
) -> httpx.AsyncClient:
    """Create the HTTP client shared by static fetches and robots.txt lookups.

    Args:
        settings: Runtime settings (timeouts, redirect limit)
        max_connections: Connection pool size

    Returns:
        Configured httpx.AsyncClient with HTTP/2 enabled
    """
    settings = settings or CrawlerSettings()
    limits = httpx.Limits(
        max_keepalive_connections=max_connections,
        max_connections=max_connections * 2,
        keepalive_expiry=30.0,
    )
    return httpx.AsyncClient(
        http2=True,
        limits=limits,
        timeout=httpx.Timeout(settings.static_fetch_timeout, connect=10.0),
        follow_redirects=True,
        max_redirects=settings.max_redirects,
        headers=FETCH_HEADERS,
    )


async def fetch_static(
    client: httpx.AsyncClient,
    url: str,
    timeout: float = 15.0,
    max_bytes: int = 10 * 1024 * 1024,
) -> FetchResult:
    """GET a page with a deadline and a size cap.

    Args:
        client: HTTP client
        url: Page URL
        timeout: Deadline for the whole request, body included, in seconds
        max_bytes: Largest body accepted

    Returns:
        FetchResult for a 2xx response

    Raises:
        FetchError: On a non-2xx status or an oversized body
        httpx.HTTPError: On transport errors
        TimeoutError: When the deadline expires
    """
    async with asyncio.timeout(timeout):
        async with client.stream("GET", url) as response:
            if not response.is_success:
                raise FetchError(
                    f"HTTP error! status: {response.status_code}", response.status_code
                )

            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise FetchError(
                    f"Response too large: {int(declared)} bytes exceeds {max_bytes}",
                    response.status_code,
                )

            chunks: list[bytes] = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > max_bytes:
                    raise FetchError(
                        f"Response too large: exceeded {max_bytes} bytes", response.status_code
                    )
                chunks.append(chunk)

            body = b"".join(chunks)
            encoding = response.charset_encoding or "utf-8"
            try:
                text = body.decode(encoding, errors="replace")
            except LookupError:
                text = body.decode("utf-8", errors="replace")

            return FetchResult(
                url=url,
                final_url=str(response.url),
                content=text,
                status_code=response.status_code,
                content_type=response.headers.get("content-type", ""),
                content_length=len(body),
                last_modified=response.headers.get("last-modified"),
            )
