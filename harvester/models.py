"""
Shared data models and enums for the Sitemap Harvester.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def parse_timestamp(value: Any) -> float:
    """
    Epoch seconds from a backup timestamp.

    Accepts epoch numbers (or numeric strings) and ISO-8601 strings such as
    "2024-03-12T10:00:00.000Z"; naive ISO values are read as UTC. Anything
    missing or unreadable becomes the current time.
    """
    if isinstance(value, bool) or value is None:
        return time.time()
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return float(text)
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return time.time()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return time.time()


class QualityStatus(str, Enum):
    """Quality classification of a content URL."""
    UNCHECKED = "unchecked"
    APPROVED = "approved"
    REJECTED = "rejected"


class UrlStatusFilter(str, Enum):
    """Status filter accepted by the catalog read path."""
    ALL = "all"
    PENDING = "pending"
    COPIED = "copied"
    UNCHECKED = "unchecked"
    REJECTED = "rejected"


class CandidateOutcome(str, Enum):
    """What the import pipeline decided for one resolved URL."""
    KEEP = "keep"
    PATTERN_SKIPPED = "pattern_skipped"
    QUALITY_SKIPPED = "quality_skipped"


@dataclass
class ContentUrl:
    """A page discovered inside a sitemap."""
    id: Optional[int] = None
    url: str = ""
    source_domain: str = ""
    parent_sitemap: Optional[str] = None
    extracted_at: float = 0.0
    copied: bool = False
    quality_status: QualityStatus = QualityStatus.UNCHECKED
    rating: Optional[float] = None
    review_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire / backup representation."""
        return {
            "id": self.id,
            "url": self.url,
            "sourceDomain": self.source_domain,
            "parentSitemap": self.parent_sitemap,
            "extractedAt": self.extracted_at,
            "copied": self.copied,
            "qualityStatus": self.quality_status.value,
            "rating": self.rating,
            "reviewCount": self.review_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentUrl":
        """
        Build from a wire / backup dict. Identifiers are not carried over.

        A checked record always carries a quality signal; a missing rating or
        review count falls back to the scanner's 0.0 / 0.
        """
        status = QualityStatus(data.get("qualityStatus") or "unchecked")
        rating = data.get("rating")
        reviews = data.get("reviewCount")
        if status != QualityStatus.UNCHECKED:
            rating = 0.0 if rating is None else rating
            reviews = 0 if reviews is None else reviews
        return cls(
            url=data["url"],
            source_domain=data.get("sourceDomain") or "",
            parent_sitemap=data.get("parentSitemap"),
            extracted_at=parse_timestamp(data.get("extractedAt")),
            copied=bool(data.get("copied", False)),
            quality_status=status,
            rating=float(rating) if rating is not None else None,
            review_count=int(reviews) if reviews is not None else None,
        )


@dataclass
class SitemapFile:
    """A sitemap document (leaf or index) visited during resolution."""
    id: Optional[int] = None
    url: str = ""
    source_domain: str = ""
    found_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "sourceDomain": self.source_domain,
            "foundAt": self.found_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SitemapFile":
        return cls(
            url=data["url"],
            source_domain=data.get("sourceDomain") or "",
            found_at=parse_timestamp(data.get("foundAt")),
        )


@dataclass
class CatalogFilter:
    """Filters shared by list, pending-as-text and mark-copied."""
    status: UrlStatusFilter = UrlStatusFilter.ALL
    search: Optional[str] = None
    parent_sitemap: Optional[str] = None
    domain: Optional[str] = None

    def as_pending(self) -> "CatalogFilter":
        """Same scoping, restricted to pending URLs."""
        return CatalogFilter(
            status=UrlStatusFilter.PENDING,
            search=self.search,
            parent_sitemap=self.parent_sitemap,
            domain=self.domain,
        )


@dataclass(frozen=True)
class ByUrls:
    """Mark an explicit list of URLs as copied."""
    urls: List[str]


@dataclass(frozen=True)
class ByFilter:
    """Mark every pending URL matching the filter as copied."""
    filter: CatalogFilter


CopySelector = Union[ByUrls, ByFilter]


@dataclass
class ImportReport:
    """Outcome of importing one sitemap tree."""
    domain: str
    total_urls_found: int = 0
    total_sitemaps_found: int = 0
    new_urls_stored: int = 0
    new_sitemaps_stored: int = 0
    pattern_skipped: int = 0
    quality_skipped: int = 0

    @property
    def skipped(self) -> int:
        return self.pattern_skipped + self.quality_skipped

    @property
    def message(self) -> str:
        return f"Processed. Found {self.total_urls_found}. Stored {self.new_urls_stored}."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "domain": self.domain,
            "totalUrlsFound": self.total_urls_found,
            "totalSitemapsFound": self.total_sitemaps_found,
            "newUrlsStored": self.new_urls_stored,
            "newSitemapsStored": self.new_sitemaps_stored,
            "skipped": self.skipped,
            "details": {
                "patternSkipped": self.pattern_skipped,
                "qualitySkipped": self.quality_skipped,
            },
        }


@dataclass
class QualityScanReport:
    """Outcome of one bounded quality re-scan call."""
    processed: int = 0
    approved: int = 0
    rejected: int = 0
    remaining: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "approved": self.approved,
            "rejected": self.rejected,
            "remaining": self.remaining,
        }


@dataclass
class RestoreReport:
    """Best-effort counts from a backup restore."""
    sitemaps_imported: int = 0
    urls_imported: int = 0
    skipped: int = 0  # entries unusable as records
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sitemapsImported": self.sitemaps_imported,
            "urlsImported": self.urls_imported,
            "skipped": self.skipped,
            "errors": self.errors,
        }
