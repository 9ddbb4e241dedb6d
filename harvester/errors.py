"""
Exception types raised by the harvester services.

Only ValidationError, NotFoundError and ResolutionEmptyError ever reach a
caller; FetchError is always absorbed by the resolver or the quality scanner.
"""

from typing import Optional


class HarvesterError(Exception):
    """Base class for all harvester errors."""


class ValidationError(HarvesterError):
    """Malformed input such as a bad sitemap URL or an out-of-range limit."""


class NotFoundError(HarvesterError):
    """The referenced record no longer exists."""


class ResolutionEmptyError(HarvesterError):
    """A root sitemap produced no URLs and no child sitemaps."""

    def __init__(self, sitemap_url: str):
        self.sitemap_url = sitemap_url
        super().__init__(f"No URLs found in the provided sitemap: {sitemap_url}")


class FetchError(HarvesterError):
    """Any failure to retrieve a URL: network, timeout, status or decompression."""

    def __init__(self, url: str, reason: Optional[str] = None):
        self.url = url
        self.reason = reason
        message = f"Failed to fetch content from {url}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)
