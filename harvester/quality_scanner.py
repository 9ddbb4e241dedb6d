"""
Sitemap Harvester Quality Scanner

Scrapes a rating / review-count pair from a content page and decides whether
the page clears the quality bar. Failures never raise: an unreachable or
unparseable page is simply a failing assessment.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from bs4 import BeautifulSoup

from .config import QualityConfig, get_config
from .errors import FetchError
from .fetcher import ContentFetcher

logger = logging.getLogger("harvester.quality")

_LEADING_NUMBER = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)")
_NON_DIGITS = re.compile(r"[^0-9]")


@dataclass(frozen=True)
class QualityAssessment:
    """Quality signal for one URL."""
    passed: bool
    rating: float = 0.0
    reviews: int = 0
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: Optional[str] = None) -> "QualityAssessment":
        return cls(passed=False, rating=0.0, reviews=0, error=error)


def parse_rating(text: str) -> Optional[float]:
    """Leading decimal number of ``text`` ("4.5 stars" -> 4.5), or None."""
    match = _LEADING_NUMBER.match(text.strip())
    if not match:
        return None
    return float(match.group(0))


def parse_review_count(text: str) -> Optional[int]:
    """Digits of ``text`` as an int ("1,234 Reviews" -> 1234), or None."""
    digits = _NON_DIGITS.sub("", text)
    if not digits:
        return None
    return int(digits)


class QualityScanner:
    """Per-URL quality classifier. Callers bound concurrency via ``assess_many``."""

    def __init__(
        self,
        fetcher: Optional[ContentFetcher] = None,
        config: Optional[QualityConfig] = None,
    ):
        self.fetcher = fetcher or ContentFetcher()
        self.config = config or get_config().quality

    def evaluate_html(self, html: str) -> QualityAssessment:
        """Classify an already fetched page."""
        soup = BeautifulSoup(html, "html.parser")
        rating_el = soup.select_one(self.config.rating_selector)
        reviews_el = soup.select_one(self.config.reviews_selector)
        if rating_el is None or reviews_el is None:
            return QualityAssessment.failed()

        rating = parse_rating(rating_el.get_text(strip=True))
        reviews = parse_review_count(reviews_el.get_text(strip=True))
        if rating is None or reviews is None:
            return QualityAssessment.failed()

        passed = rating >= self.config.min_rating and reviews >= self.config.min_reviews
        return QualityAssessment(passed=passed, rating=rating, reviews=reviews)

    async def assess(self, url: str) -> QualityAssessment:
        """Fetch ``url`` and classify it."""
        try:
            html = await self.fetcher.fetch(url)
        except FetchError as e:
            logger.debug(f"Quality check fetch failed: {e}")
            return QualityAssessment.failed(str(e))
        return self.evaluate_html(html)

    async def assess_many(self, urls: List[str], batch_size: int) -> Dict[str, QualityAssessment]:
        """
        Assess ``urls`` in fixed-size chunks.

        At most ``batch_size`` fetches are in flight at any time; order inside a
        chunk is irrelevant.
        """
        results: Dict[str, QualityAssessment] = {}
        for start in range(0, len(urls), batch_size):
            chunk = urls[start:start + batch_size]
            assessments = await asyncio.gather(*(self.assess(url) for url in chunk))
            results.update(zip(chunk, assessments))
        return results
