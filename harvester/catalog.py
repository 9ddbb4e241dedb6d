"""
Sitemap Harvester Catalog

Read path over the stored corpus plus the copy / delete mutations the UI
drives. Listing, pending-as-text and mark-copied share one filter
translation (``db.build_url_filter``), so what a user sees is what they copy.
"""

import logging
import math
from typing import Any, Dict, List, Optional

from .config import PipelineConfig, get_config
from .db import Database
from .errors import NotFoundError, ValidationError
from .models import ByFilter, ByUrls, CatalogFilter, CopySelector

logger = logging.getLogger("harvester.catalog")


class CatalogQuery:
    """Catalog operations over a Database."""

    def __init__(self, db: Database, config: Optional[PipelineConfig] = None):
        self.db = db
        self.config = config or get_config().pipeline

    def list_urls(
        self,
        catalog_filter: CatalogFilter,
        page: int = 1,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        """
        One page of URL records plus pagination and whole-corpus stats.

        ``stats`` ignores the filter so summary counters stay put while the
        user changes filters.
        """
        if page < 1:
            raise ValidationError("page must be at least 1")
        if page_size < 1 or page_size > self.config.max_page_size:
            raise ValidationError(f"limit must be between 1 and {self.config.max_page_size}")

        total = self.db.count_urls(catalog_filter)
        records = self.db.list_urls(catalog_filter, limit=page_size, offset=(page - 1) * page_size)
        return {
            "data": [record.to_dict() for record in records],
            "pagination": {
                "total": total,
                "page": page,
                "limit": page_size,
                "pages": max(1, math.ceil(total / page_size)),
            },
            "stats": self.db.get_url_stats(),
        }

    def list_sitemaps(self) -> List[Dict[str, Any]]:
        """Every visited sitemap with its total / pending / copied URL counts."""
        return [
            {**sitemap.to_dict(), "stats": stats}
            for sitemap, stats in self.db.list_sitemaps_with_stats()
        ]

    def pending_as_text(
        self,
        catalog_filter: CatalogFilter,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Pending URLs matching the filter, newline-joined for the copy workflow."""
        if limit is not None and limit < 1:
            limit = None
        urls = self.db.list_url_strings(catalog_filter.as_pending(), limit)
        return {"text": "\n".join(urls), "count": len(urls), "urls": urls}

    def sitemap_urls_as_text(self, sitemap_id: int) -> Dict[str, Any]:
        """All URLs declared by one sitemap, regardless of status."""
        sitemap = self.db.get_sitemap(sitemap_id)
        if sitemap is None:
            raise NotFoundError(f"Sitemap {sitemap_id} not found")
        urls = self.db.list_url_strings(CatalogFilter(parent_sitemap=sitemap.url))
        return {"text": "\n".join(urls), "count": len(urls)}

    def mark_copied(self, selector: CopySelector) -> int:
        """Flag URLs copied, either an explicit list or every pending URL matching a filter."""
        if isinstance(selector, ByUrls):
            updated = self.db.mark_copied_urls(selector.urls)
        elif isinstance(selector, ByFilter):
            updated = self.db.mark_copied_filter(selector.filter.as_pending())
        else:
            raise ValidationError("Invalid parameters")
        logger.info(f"Marked {updated} URLs as copied")
        return updated

    def delete_url(self, url_id: int) -> None:
        if not self.db.delete_url(url_id):
            raise NotFoundError(f"URL {url_id} not found")

    def delete_sitemap(self, sitemap_id: int) -> int:
        """Delete a sitemap and the URLs it declared. Returns URLs removed."""
        deleted = self.db.delete_sitemap_cascade(sitemap_id)
        if deleted is None:
            raise NotFoundError(f"Sitemap {sitemap_id} not found")
        logger.info(f"Deleted sitemap {sitemap_id} and {deleted} URLs")
        return deleted

    def clear_all(self) -> Dict[str, int]:
        deleted = self.db.clear_all()
        logger.info(f"Cleared database: {deleted}")
        return deleted

    def last_active_domain(self) -> Optional[str]:
        return self.db.last_active_domain()
