"""
Sitemap Harvester Import Pipeline

Resolves a sitemap tree, filters the candidates (URL pattern, then optional
page quality) in bounded concurrent batches, and stores what survives.
Also hosts the deferred quality scans that work through stored URLs a
bounded slice at a time.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from .config import PipelineConfig, get_config
from .db import Database
from .errors import ResolutionEmptyError, ValidationError
from .fetcher import ContentFetcher
from .models import (
    CandidateOutcome,
    CatalogFilter,
    ContentUrl,
    ImportReport,
    QualityScanReport,
    QualityStatus,
    SitemapFile,
    UrlStatusFilter,
)
from .quality_scanner import QualityAssessment, QualityScanner
from .sitemap_resolver import SitemapResolver

logger = logging.getLogger("harvester.pipeline")


def source_domain_for(sitemap_url: str) -> str:
    """
    Origin of ``sitemap_url`` (``scheme://host[:port]``).

    Raises:
        ValidationError: if the URL is empty or not an absolute http(s) URL.
    """
    if not sitemap_url or not sitemap_url.strip():
        raise ValidationError("Sitemap URL is required")
    try:
        parsed = urlparse(sitemap_url.strip())
        # Accessing .port validates it
        parsed.port
    except ValueError as e:
        raise ValidationError(f"Invalid URL provided: {sitemap_url}") from e
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValidationError(f"Invalid URL provided: {sitemap_url}")
    return f"{parsed.scheme}://{parsed.netloc}"


def _validate_limit(limit: Any, maximum: int) -> int:
    """Positive integer limit, capped at ``maximum``."""
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValidationError("limit must be a positive integer")
    return min(limit, maximum)


class ImportPipeline:
    """
    Orchestrates resolution, filtering and persistence for sitemap imports.

    Page fetches fan out in chunks of ``config.batch_size``; store calls run in
    the default executor so they never block the event loop.
    """

    def __init__(
        self,
        db: Database,
        fetcher: Optional[ContentFetcher] = None,
        resolver: Optional[SitemapResolver] = None,
        scanner: Optional[QualityScanner] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.db = db
        self.config = config or get_config().pipeline
        self.fetcher = fetcher or ContentFetcher()
        self.resolver = resolver or SitemapResolver(self.fetcher)
        self.scanner = scanner or QualityScanner(self.fetcher)

    async def _run_db(self, func: Callable, *args):
        """Run a blocking store call in the thread pool."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: func(*args))

    async def aclose(self) -> None:
        await self.fetcher.aclose()

    # ==================== Sitemap import ====================

    async def _classify(
        self,
        url: str,
        pattern: str,
        enable_quality_filter: bool,
    ) -> Tuple[CandidateOutcome, Optional[QualityAssessment]]:
        if pattern and pattern not in url:
            return CandidateOutcome.PATTERN_SKIPPED, None
        if enable_quality_filter:
            assessment = await self.scanner.assess(url)
            if not assessment.passed:
                return CandidateOutcome.QUALITY_SKIPPED, assessment
            return CandidateOutcome.KEEP, assessment
        return CandidateOutcome.KEEP, None

    async def import_sitemap(
        self,
        sitemap_url: str,
        pattern_filter: Optional[str] = None,
        enable_quality_filter: bool = False,
    ) -> ImportReport:
        """
        Import every URL reachable from ``sitemap_url``.

        Args:
            sitemap_url: Root sitemap or sitemap index URL
            pattern_filter: Keep only URLs containing this substring
            enable_quality_filter: Keep only URLs whose page passes the quality check

        Returns:
            ImportReport with found/stored counts and the skip breakdown.

        Raises:
            ValidationError: malformed ``sitemap_url``
            ResolutionEmptyError: the tree contained no URLs and no child sitemaps
        """
        domain = source_domain_for(sitemap_url)
        sitemap_url = sitemap_url.strip()
        pattern = (pattern_filter or "").strip()
        logger.info(
            f"Importing {sitemap_url} (pattern={pattern!r}, quality={enable_quality_filter})"
        )

        resolved = await self.resolver.resolve(sitemap_url)
        if not resolved.urls and len(resolved.sitemaps) <= 1:
            raise ResolutionEmptyError(sitemap_url)

        report = ImportReport(
            domain=domain,
            total_urls_found=len(resolved.urls),
            total_sitemaps_found=len(resolved.sitemaps),
        )

        now = time.time()
        records: List[ContentUrl] = []
        candidates = list(resolved.urls.items())
        batch_size = self.config.batch_size

        for start in range(0, len(candidates), batch_size):
            batch = candidates[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(self._classify(url, pattern, enable_quality_filter) for url, _ in batch)
            )
            for (url, parent), (outcome, assessment) in zip(batch, outcomes):
                if outcome == CandidateOutcome.PATTERN_SKIPPED:
                    report.pattern_skipped += 1
                elif outcome == CandidateOutcome.QUALITY_SKIPPED:
                    report.quality_skipped += 1
                else:
                    record = ContentUrl(
                        url=url,
                        source_domain=domain,
                        parent_sitemap=parent,
                        extracted_at=now,
                    )
                    if assessment is not None:
                        record.quality_status = QualityStatus.APPROVED
                        record.rating = assessment.rating
                        record.review_count = assessment.reviews
                    records.append(record)

        sitemap_records = [
            SitemapFile(url=url, source_domain=domain, found_at=now)
            for url in sorted(resolved.sitemaps)
        ]
        report.new_sitemaps_stored = await self._run_db(self.db.insert_sitemaps, sitemap_records)
        report.new_urls_stored = await self._run_db(self.db.insert_urls, records)

        if report.new_urls_stored < len(records):
            logger.warning(
                f"Encountered duplicate URLs, inserted {report.new_urls_stored} of {len(records)}"
            )
        logger.info(
            f"Import of {sitemap_url} done: found {report.total_urls_found}, "
            f"stored {report.new_urls_stored}, skipped {report.skipped}"
        )
        return report

    # ==================== Deferred quality scans ====================

    async def _assess_and_store(
        self,
        urls: List[str],
        mark_copied: bool = False,
    ) -> Dict[str, QualityAssessment]:
        assessments = await self.scanner.assess_many(urls, self.config.batch_size)
        results = [
            (
                url,
                QualityStatus.APPROVED if a.passed else QualityStatus.REJECTED,
                a.rating,
                a.reviews,
            )
            for url, a in assessments.items()
        ]
        await self._run_db(self.db.update_quality, results, mark_copied)
        return assessments

    async def scan_quality_batch(self, limit: int) -> QualityScanReport:
        """
        Scan up to ``limit`` unchecked URLs and store approved/rejected results.

        Meant to be called repeatedly until ``remaining`` reaches zero; each
        call touches a bounded slice only.
        """
        limit = _validate_limit(limit, self.config.max_scan_limit)
        unchecked = CatalogFilter(status=UrlStatusFilter.UNCHECKED)

        urls = await self._run_db(self.db.list_url_strings, unchecked, limit)
        report = QualityScanReport()
        if urls:
            assessments = await self._assess_and_store(urls)
            report.processed = len(assessments)
            report.approved = sum(1 for a in assessments.values() if a.passed)
            report.rejected = report.processed - report.approved

        report.remaining = await self._run_db(self.db.count_urls, unchecked)
        logger.info(
            f"Quality scan: processed {report.processed}, approved {report.approved}, "
            f"rejected {report.rejected}, remaining {report.remaining}"
        )
        return report

    async def process_sitemap_quality(self, parent_sitemap: str, limit: int) -> Dict[str, Any]:
        """
        Quality-check the next ``limit`` pending URLs of one sitemap.

        Every processed URL is marked copied, passing or not, so the same
        URLs are never handed out twice. Returns the passing URLs as text.
        """
        if not parent_sitemap:
            raise ValidationError("parentSitemap is required")
        limit = _validate_limit(limit, self.config.max_scan_limit)

        scope = CatalogFilter(status=UrlStatusFilter.PENDING, parent_sitemap=parent_sitemap)
        urls = await self._run_db(self.db.list_url_strings, scope, limit)
        if not urls:
            return {"text": "", "count": 0, "urls": [], "processedCount": 0}

        assessments = await self._assess_and_store(urls, mark_copied=True)
        passing = [url for url in urls if assessments[url].passed]
        logger.info(f"Sitemap quality batch for {parent_sitemap}: {len(passing)}/{len(urls)} passed")
        return {
            "text": "\n".join(passing),
            "count": len(passing),
            "urls": passing,
            "processedCount": len(urls),
        }
