import gzip
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

from harvester.config import PipelineConfig
from harvester.db import Database
from harvester.fetcher import ContentFetcher
from harvester.import_pipeline import ImportPipeline

SM_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"


class FakeSite:
    """In-memory web site served through httpx.MockTransport."""

    def __init__(self):
        self.pages: Dict[str, Tuple[int, bytes, Dict[str, str]]] = {}
        self.requests: List[str] = []

    def add(self, url: str, body, status: int = 200, headers: Optional[Dict[str, str]] = None):
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.pages[url] = (status, body, headers or {})

    def add_urlset(self, url: str, locs: List[str]):
        entries = "".join(f"<url><loc>{loc}</loc></url>" for loc in locs)
        self.add(url, f'<?xml version="1.0" encoding="UTF-8"?><urlset xmlns="{SM_NS}">{entries}</urlset>')

    def add_index(self, url: str, children: List[str]):
        entries = "".join(f"<sitemap><loc>{child}</loc></sitemap>" for child in children)
        self.add(url, f'<?xml version="1.0" encoding="UTF-8"?><sitemapindex xmlns="{SM_NS}">{entries}</sitemapindex>')

    def add_gzip(self, url: str, text: str):
        self.add(url, gzip.compress(text.encode("utf-8")), headers={"content-type": "application/x-gzip"})

    def add_recipe(self, url: str, rating: str, reviews: str):
        self.add(
            url,
            "<html><body><div class='mm-recipes-review-bar'>"
            f"<div class='mm-recipes-review-bar__rating'>{rating}</div>"
            f"<div class='mm-recipes-review-bar__comment-count'>{reviews}</div>"
            "</div></body></html>",
            headers={"content-type": "text/html"},
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url not in self.pages:
            return httpx.Response(404, text="not found")
        status, body, headers = self.pages[url]
        return httpx.Response(status, content=body, headers=headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "harvester.db")


@pytest.fixture
def pipeline(db, site):
    return ImportPipeline(
        db,
        fetcher=ContentFetcher(transport=site.transport),
        config=PipelineConfig(batch_size=5, max_scan_limit=100, max_page_size=500),
    )
