"""
Sitemap Harvester Content Fetcher

Shared async HTTP fetcher used by sitemap resolution and quality scans.
Every failure (network, timeout, HTTP status, gzip) surfaces as FetchError.
"""

import gzip
import logging
import zlib
from typing import Optional

import httpx

from .config import FetchConfig, get_config
from .errors import FetchError

logger = logging.getLogger("harvester.fetcher")

GZIP_MAGIC = b"\x1f\x8b"
GZIP_CONTENT_TYPES = ("application/x-gzip", "application/gzip")


class ContentFetcher:
    """
    Async fetcher returning response bodies as text.

    httpx already undoes Content-Encoding: gzip. Bodies that are still gzip
    after that (``sitemap.xml.gz`` served as application/x-gzip, or double
    encoded responses) are decompressed here.
    """

    def __init__(
        self,
        config: Optional[FetchConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_config().fetch
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None:
            limits = httpx.Limits(max_keepalive_connections=20, max_connections=40)
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout),
                limits=limits,
                headers={
                    "User-Agent": self.config.user_agent,
                    "Accept": self.config.accept,
                },
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def fetch(self, url: str) -> str:
        """Fetch ``url`` and return its body decoded as UTF-8."""
        try:
            response = await self._get_client().get(url)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.debug(f"Timeout fetching {url}")
            raise FetchError(url, "timeout") from e
        except httpx.HTTPStatusError as e:
            logger.debug(f"HTTP error {e.response.status_code} for {url}")
            raise FetchError(url, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.debug(f"Failed to fetch {url}: {e}")
            raise FetchError(url, str(e)) from e

        data = response.content
        content_type = response.headers.get("content-type", "").lower()
        if data.startswith(GZIP_MAGIC) or any(t in content_type for t in GZIP_CONTENT_TYPES):
            try:
                data = gzip.decompress(data)
            except (OSError, EOFError, zlib.error) as e:
                logger.debug(f"Failed to gunzip {url}: {e}")
                raise FetchError(url, "gzip decompression failed") from e

        return data.decode("utf-8", errors="replace")

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ContentFetcher":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
