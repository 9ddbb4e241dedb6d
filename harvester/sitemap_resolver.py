"""
Sitemap Harvester Sitemap Resolver

Walks a sitemap (or sitemap index) tree into a flat URL map.
Supports:
- Standard sitemaps (urlset)
- Sitemap indexes (sitemapindex), resolved depth-first
- Namespaced and un-namespaced documents
- Self-referencing or cyclic indexes (each file is resolved once)
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Set

from .errors import FetchError
from .fetcher import ContentFetcher

logger = logging.getLogger("harvester.sitemap")


def _local_tag(element: ET.Element) -> str:
    """Tag name without the XML namespace."""
    tag = element.tag
    return tag.split("}")[-1] if "}" in tag else tag


def _child_locs(root: ET.Element, entry_tag: str) -> Iterator[str]:
    """Yield the <loc> text of every direct ``entry_tag`` child, in document order."""
    for entry in root:
        if _local_tag(entry) != entry_tag:
            continue
        for child in entry:
            if _local_tag(child) == "loc" and child.text and child.text.strip():
                yield child.text.strip()
                break


@dataclass
class ResolvedSitemap:
    """Result of resolving one root sitemap."""
    urls: Dict[str, str] = field(default_factory=dict)  # content URL -> parent sitemap
    sitemaps: Set[str] = field(default_factory=set)


class SitemapResolver:
    """
    Recursive sitemap resolver.

    Resolution is sequential per root: the accumulators are shared plain
    dict/set, and a sitemap is added to ``sitemaps`` before it is fetched so
    an index pointing back at itself or an ancestor is never walked twice.
    """

    def __init__(self, fetcher: Optional[ContentFetcher] = None):
        self.fetcher = fetcher or ContentFetcher()

    async def resolve(self, root_url: str) -> ResolvedSitemap:
        """
        Resolve ``root_url`` into content URLs and visited sitemap files.

        Args:
            root_url: URL of the sitemap.xml or sitemap index

        Returns:
            ResolvedSitemap whose ``sitemaps`` always contains ``root_url``.
        """
        result = ResolvedSitemap()
        result.sitemaps.add(root_url)
        await self._resolve_file(root_url, result)
        logger.info(
            f"Resolved {root_url}: {len(result.urls)} URLs across {len(result.sitemaps)} sitemaps"
        )
        return result

    async def _resolve_file(self, sitemap_url: str, result: ResolvedSitemap) -> None:
        try:
            content = await self.fetcher.fetch(sitemap_url)
        except FetchError as e:
            logger.warning(f"Skipping sitemap {sitemap_url}: {e}")
            return

        if not content.strip():
            logger.warning(f"Empty sitemap: {sitemap_url}")
            return

        try:
            root = ET.fromstring(content)
        except ET.ParseError as e:
            logger.warning(f"XML parse error in {sitemap_url}: {e}")
            return

        root_tag = _local_tag(root)

        if root_tag == "sitemapindex":
            for child_url in _child_locs(root, "sitemap"):
                if child_url in result.sitemaps:
                    continue
                result.sitemaps.add(child_url)
                await self._resolve_file(child_url, result)

        elif root_tag == "urlset":
            for loc in _child_locs(root, "url"):
                if loc not in result.urls:
                    result.urls[loc] = sitemap_url

        else:
            logger.warning(f"Unknown sitemap format in {sitemap_url}: {root_tag}")
