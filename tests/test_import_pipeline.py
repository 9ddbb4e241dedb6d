import asyncio
import time

import httpx
import pytest

from harvester.config import PipelineConfig
from harvester.errors import ResolutionEmptyError, ValidationError
from harvester.fetcher import ContentFetcher
from harvester.import_pipeline import ImportPipeline, source_domain_for
from harvester.models import CatalogFilter, ContentUrl, QualityStatus, UrlStatusFilter

ROOT = "https://example.com/sitemap_index.xml"
LEAF_A = "https://example.com/sitemap-a.xml"
LEAF_B = "https://example.com/sitemap-b.xml"


def _run(pipeline, coro):
    async def go():
        try:
            return await coro
        finally:
            await pipeline.aclose()
    return asyncio.run(go())


def _seed(db, urls, parent=LEAF_A):
    now = time.time()
    db.insert_urls([
        ContentUrl(url=url, source_domain="https://example.com", parent_sitemap=parent, extracted_at=now)
        for url in urls
    ])


def test_source_domain_is_origin():
    assert source_domain_for("https://example.com/sitemap.xml") == "https://example.com"
    assert source_domain_for("http://example.com:8080/a/b.xml") == "http://example.com:8080"


@pytest.mark.parametrize("bad", ["", "   ", "not a url", "ftp://example.com/sitemap.xml", "https://"])
def test_source_domain_rejects_malformed(bad):
    with pytest.raises(ValidationError):
        source_domain_for(bad)


def _two_level_site(site):
    site.add_index(ROOT, [LEAF_A, LEAF_B])
    site.add_urlset(LEAF_A, [f"https://example.com/recipe/{i}" for i in range(3)])
    site.add_urlset(LEAF_B, [f"https://example.com/recipe/{i}" for i in range(2, 7)])


def test_import_stores_everything(site, db, pipeline):
    _two_level_site(site)

    report = _run(pipeline, pipeline.import_sitemap(ROOT))

    assert report.domain == "https://example.com"
    assert report.total_urls_found == 7
    assert report.total_sitemaps_found == 3
    assert report.new_urls_stored == 7
    assert report.new_sitemaps_stored == 3
    assert report.skipped == 0
    assert db.get_url_stats()["unchecked"] == 7
    assert report.to_dict()["message"] == "Processed. Found 7. Stored 7."


def test_import_is_idempotent(site, db, pipeline):
    _two_level_site(site)

    _run(pipeline, pipeline.import_sitemap(ROOT))
    again = _run(pipeline, pipeline.import_sitemap(ROOT))

    assert again.total_urls_found == 7
    assert again.new_urls_stored == 0
    assert again.new_sitemaps_stored == 0
    assert db.count_urls(CatalogFilter()) == 7


def test_pattern_filter(site, db, pipeline):
    site.add_urlset(ROOT, ["https://example.com/recipe/1", "https://example.com/about"])

    report = _run(pipeline, pipeline.import_sitemap(ROOT, pattern_filter="/recipe/"))

    assert report.new_urls_stored == 1
    assert report.pattern_skipped == 1
    assert report.quality_skipped == 0
    assert db.list_url_strings(CatalogFilter()) == ["https://example.com/recipe/1"]


def test_pattern_and_quality_filters_compose(site, db, pipeline):
    site.add_urlset(ROOT, [
        "https://example.com/recipe/good",
        "https://example.com/recipe/bad",
        "https://example.com/about",
    ])
    site.add_recipe("https://example.com/recipe/good", "4.8", "320 Reviews")
    site.add_recipe("https://example.com/recipe/bad", "3.1", "320 Reviews")

    report = _run(
        pipeline,
        pipeline.import_sitemap(ROOT, pattern_filter="/recipe/", enable_quality_filter=True),
    )

    assert report.new_urls_stored == 1
    assert report.pattern_skipped == 1
    assert report.quality_skipped == 1
    assert report.to_dict()["details"] == {"patternSkipped": 1, "qualitySkipped": 1}
    # The page filtered out by pattern is never fetched
    assert "https://example.com/about" not in site.requests

    [stored] = db.list_urls(CatalogFilter(), limit=10)
    assert stored.url == "https://example.com/recipe/good"
    assert stored.quality_status == QualityStatus.APPROVED
    assert stored.rating == 4.8
    assert stored.review_count == 320


def test_unreachable_pages_count_as_quality_skips(site, pipeline):
    site.add_urlset(ROOT, [f"https://example.com/recipe/{i}" for i in range(12)])

    report = _run(pipeline, pipeline.import_sitemap(ROOT, enable_quality_filter=True))

    assert report.quality_skipped == 12
    assert report.new_urls_stored == 0
    assert report.new_sitemaps_stored == 1


def test_malformed_url_rejected(pipeline):
    with pytest.raises(ValidationError):
        _run(pipeline, pipeline.import_sitemap("example.com/sitemap.xml"))


def test_empty_sitemap_raises(site, pipeline):
    site.add_urlset(ROOT, [])
    with pytest.raises(ResolutionEmptyError):
        _run(pipeline, pipeline.import_sitemap(ROOT))


def test_unreachable_root_raises(pipeline):
    with pytest.raises(ResolutionEmptyError):
        _run(pipeline, pipeline.import_sitemap(ROOT))


def test_index_with_empty_children_is_not_an_error(site, db, pipeline):
    site.add_index(ROOT, [LEAF_A])
    site.add_urlset(LEAF_A, [])

    report = _run(pipeline, pipeline.import_sitemap(ROOT))

    assert report.total_urls_found == 0
    assert report.new_sitemaps_stored == 2


def test_scan_drains_unchecked_in_bounded_slices(site, db, pipeline):
    urls = [f"https://example.com/recipe/{i:02d}" for i in range(25)]
    _seed(db, urls)
    for i, url in enumerate(urls):
        if i % 2 == 0:
            site.add_recipe(url, "4.5", "200")

    reports = [_run(pipeline, pipeline.scan_quality_batch(10)) for _ in range(3)]

    assert [r.processed for r in reports] == [10, 10, 5]
    assert [r.remaining for r in reports] == [15, 5, 0]
    assert sum(r.approved + r.rejected for r in reports) == 25
    assert sum(r.approved for r in reports) == 13

    stats = db.get_url_stats()
    assert stats["approved"] == 13
    assert stats["rejected"] == 12
    assert stats["unchecked"] == 0
    # Rejected URLs leave the pending pool
    assert stats["pending"] == 13


def test_scan_with_nothing_unchecked(pipeline):
    report = _run(pipeline, pipeline.scan_quality_batch(10))
    assert report.to_dict() == {"processed": 0, "approved": 0, "rejected": 0, "remaining": 0}


def test_scan_limit_is_capped(site, db, pipeline):
    _seed(db, [f"https://example.com/p/{i:03d}" for i in range(120)])

    report = _run(pipeline, pipeline.scan_quality_batch(1000))

    assert report.processed == 100
    assert report.remaining == 20


@pytest.mark.parametrize("limit", [0, -3, True, "10"])
def test_scan_rejects_invalid_limit(pipeline, limit):
    with pytest.raises(ValidationError):
        _run(pipeline, pipeline.scan_quality_batch(limit))


def test_sitemap_quality_marks_processed_urls_copied(site, db, pipeline):
    _seed(db, ["https://example.com/a1", "https://example.com/a2", "https://example.com/a3"])
    _seed(db, ["https://example.com/b1"], parent=LEAF_B)
    site.add_recipe("https://example.com/a1", "4.9", "75")
    site.add_recipe("https://example.com/a3", "4.2", "51")
    site.add_recipe("https://example.com/a2", "2.0", "10")

    result = _run(pipeline, pipeline.process_sitemap_quality(LEAF_A, 10))

    assert result["processedCount"] == 3
    assert result["count"] == 2
    assert result["urls"] == ["https://example.com/a1", "https://example.com/a3"]
    assert result["text"] == "https://example.com/a1\nhttps://example.com/a3"

    copied = db.list_url_strings(CatalogFilter(status=UrlStatusFilter.COPIED))
    assert copied == ["https://example.com/a1", "https://example.com/a2", "https://example.com/a3"]
    assert db.list_url_strings(CatalogFilter(status=UrlStatusFilter.PENDING)) == ["https://example.com/b1"]

    again = _run(pipeline, pipeline.process_sitemap_quality(LEAF_A, 10))
    assert again == {"text": "", "count": 0, "urls": [], "processedCount": 0}


def test_sitemap_quality_respects_limit(site, db, pipeline):
    _seed(db, [f"https://example.com/a{i}" for i in range(6)])

    result = _run(pipeline, pipeline.process_sitemap_quality(LEAF_A, 4))

    assert result["processedCount"] == 4
    assert result["count"] == 0
    assert db.count_urls(CatalogFilter(status=UrlStatusFilter.PENDING, parent_sitemap=LEAF_A)) == 2


def test_sitemap_quality_requires_parent_sitemap(pipeline):
    with pytest.raises(ValidationError):
        _run(pipeline, pipeline.process_sitemap_quality("", 10))


def test_import_quality_fetches_stay_within_batch_size(db):
    pages = [f"https://example.com/recipe/{i}" for i in range(23)]
    locs = "".join(f"<url><loc>{page}</loc></url>" for page in pages)
    in_flight = 0
    peak = 0

    async def handler(request):
        nonlocal in_flight, peak
        if str(request.url) == ROOT:
            return httpx.Response(200, text=f"<urlset>{locs}</urlset>")
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return httpx.Response(
            200,
            text="<div class='mm-recipes-review-bar__rating'>4.5</div>"
                 "<div class='mm-recipes-review-bar__comment-count'>80</div>",
        )

    pipeline = ImportPipeline(
        db,
        fetcher=ContentFetcher(transport=httpx.MockTransport(handler)),
        config=PipelineConfig(batch_size=4),
    )
    report = _run(pipeline, pipeline.import_sitemap(ROOT, enable_quality_filter=True))

    assert report.new_urls_stored == 23
    assert 1 < peak <= 4
