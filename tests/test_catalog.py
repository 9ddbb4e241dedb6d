import pytest

from harvester.catalog import CatalogQuery
from harvester.config import PipelineConfig
from harvester.errors import NotFoundError, ValidationError
from harvester.models import (
    ByFilter,
    ByUrls,
    CatalogFilter,
    ContentUrl,
    QualityStatus,
    SitemapFile,
    UrlStatusFilter,
)

LEAF_A = "https://example.com/sitemap-a.xml"
LEAF_B = "https://example.com/sitemap-b.xml"
OTHER = "https://other.org/sitemap.xml"


@pytest.fixture
def catalog(db):
    db.insert_sitemaps([
        SitemapFile(url=LEAF_A, source_domain="https://example.com", found_at=1.0),
        SitemapFile(url=LEAF_B, source_domain="https://example.com", found_at=1.0),
        SitemapFile(url=OTHER, source_domain="https://other.org", found_at=2.0),
    ])
    db.insert_urls([
        ContentUrl(url="https://example.com/recipe/apple-pie", source_domain="https://example.com",
                   parent_sitemap=LEAF_A, extracted_at=1.0),
        ContentUrl(url="https://example.com/recipe/banana-bread", source_domain="https://example.com",
                   parent_sitemap=LEAF_A, extracted_at=1.0, quality_status=QualityStatus.APPROVED,
                   rating=4.6, review_count=88),
        ContentUrl(url="https://example.com/recipe/Cherry-Tart", source_domain="https://example.com",
                   parent_sitemap=LEAF_A, extracted_at=1.0, quality_status=QualityStatus.REJECTED,
                   rating=3.0, review_count=4),
        ContentUrl(url="https://example.com/article/dinner", source_domain="https://example.com",
                   parent_sitemap=LEAF_B, extracted_at=1.0, copied=True),
        ContentUrl(url="https://other.org/recipe/eggs", source_domain="https://other.org",
                   parent_sitemap=OTHER, extracted_at=2.0),
    ])
    return CatalogQuery(db, PipelineConfig(max_page_size=500))


def _sitemap_id(db, url):
    return next(s.id for s, _ in db.list_sitemaps_with_stats() if s.url == url)


def test_stats_ignore_filter(catalog):
    everything = catalog.list_urls(CatalogFilter())
    filtered = catalog.list_urls(CatalogFilter(status=UrlStatusFilter.COPIED))

    assert everything["stats"] == filtered["stats"] == {
        "totalUrls": 5,
        "pending": 3,
        "copied": 1,
        "unchecked": 3,
        "approved": 1,
        "rejected": 1,
    }
    assert filtered["pagination"]["total"] == 1


@pytest.mark.parametrize(
    "status,expected",
    [
        (UrlStatusFilter.ALL, 5),
        (UrlStatusFilter.PENDING, 3),
        (UrlStatusFilter.COPIED, 1),
        (UrlStatusFilter.UNCHECKED, 3),
        (UrlStatusFilter.REJECTED, 1),
    ],
)
def test_status_filters(catalog, status, expected):
    assert catalog.list_urls(CatalogFilter(status=status))["pagination"]["total"] == expected


def test_search_is_case_insensitive(catalog):
    result = catalog.list_urls(CatalogFilter(search="cherry"))
    assert [r["url"] for r in result["data"]] == ["https://example.com/recipe/Cherry-Tart"]


def test_filters_combine(catalog):
    result = catalog.list_urls(
        CatalogFilter(status=UrlStatusFilter.PENDING, search="recipe", domain="https://example.com")
    )
    assert [r["url"] for r in result["data"]] == [
        "https://example.com/recipe/apple-pie",
        "https://example.com/recipe/banana-bread",
    ]


def test_pagination_is_stable(catalog):
    pages = [catalog.list_urls(CatalogFilter(), page=p, page_size=2) for p in (1, 2, 3)]

    urls = [r["url"] for page in pages for r in page["data"]]
    assert len(urls) == len(set(urls)) == 5
    assert urls == sorted(urls)
    assert pages[0]["pagination"] == {"total": 5, "page": 1, "limit": 2, "pages": 3}
    assert len(pages[2]["data"]) == 1


def test_page_past_the_end_is_empty(catalog):
    result = catalog.list_urls(CatalogFilter(), page=9, page_size=50)
    assert result["data"] == []
    assert result["pagination"]["pages"] == 1


def test_record_shape(catalog):
    result = catalog.list_urls(CatalogFilter(search="banana"))
    [record] = result["data"]
    assert record["qualityStatus"] == "approved"
    assert record["rating"] == 4.6
    assert record["reviewCount"] == 88
    assert record["parentSitemap"] == LEAF_A
    assert record["copied"] is False
    assert isinstance(record["id"], int)


@pytest.mark.parametrize("page,page_size", [(0, 50), (1, 0), (1, 501)])
def test_invalid_paging(catalog, page, page_size):
    with pytest.raises(ValidationError):
        catalog.list_urls(CatalogFilter(), page=page, page_size=page_size)


def test_pending_text_matches_listing(catalog):
    scope = CatalogFilter(search="recipe")
    pending = catalog.pending_as_text(scope)
    listed = catalog.list_urls(CatalogFilter(status=UrlStatusFilter.PENDING, search="recipe"))

    assert pending["count"] == listed["pagination"]["total"] == 3
    assert pending["text"].split("\n") == pending["urls"]


def test_pending_limit(catalog):
    assert catalog.pending_as_text(CatalogFilter(), limit=2)["count"] == 2
    assert catalog.pending_as_text(CatalogFilter(), limit=0)["count"] == 3


def test_nothing_pending(catalog):
    result = catalog.pending_as_text(CatalogFilter(domain="https://nowhere.net"))
    assert result == {"text": "", "count": 0, "urls": []}


def test_sitemap_urls_as_text(catalog, db):
    result = catalog.sitemap_urls_as_text(_sitemap_id(db, LEAF_A))
    assert result["count"] == 3
    assert "https://example.com/recipe/Cherry-Tart" in result["text"].split("\n")


def test_sitemap_urls_unknown_id(catalog):
    with pytest.raises(NotFoundError):
        catalog.sitemap_urls_as_text(9999)


def test_mark_copied_by_urls(catalog, db):
    updated = catalog.mark_copied(ByUrls(["https://example.com/recipe/apple-pie", "https://nope.com/x"]))

    assert updated == 1
    assert db.get_url_stats()["copied"] == 2


def test_mark_copied_by_filter_only_touches_pending_in_scope(catalog, db):
    updated = catalog.mark_copied(ByFilter(CatalogFilter(domain="https://example.com")))

    # apple-pie and banana-bread; the rejected tart and copied article are not pending
    assert updated == 2
    assert catalog.pending_as_text(CatalogFilter())["urls"] == ["https://other.org/recipe/eggs"]
    tart = db.list_urls(CatalogFilter(search="cherry"), limit=1)[0]
    assert tart.copied is False


def test_pending_then_mark_drains_scope(catalog):
    scope = CatalogFilter(parent_sitemap=LEAF_A)
    pending = catalog.pending_as_text(scope)
    catalog.mark_copied(ByUrls(pending["urls"]))
    assert catalog.pending_as_text(scope)["count"] == 0


def test_mark_copied_rejects_unknown_selector(catalog):
    with pytest.raises(ValidationError):
        catalog.mark_copied(CatalogFilter())


def test_list_sitemaps_with_stats(catalog):
    sitemaps = catalog.list_sitemaps()

    assert [s["url"] for s in sitemaps] == [LEAF_A, LEAF_B, OTHER]
    assert sitemaps[0]["stats"] == {"total": 3, "pending": 2, "copied": 0}
    assert sitemaps[1]["stats"] == {"total": 1, "pending": 0, "copied": 1}


def test_delete_url(catalog, db):
    record = db.list_urls(CatalogFilter(search="eggs"), limit=1)[0]

    catalog.delete_url(record.id)

    assert db.count_urls(CatalogFilter(search="eggs")) == 0
    with pytest.raises(NotFoundError):
        catalog.delete_url(record.id)


def test_delete_sitemap_cascades(catalog, db):
    removed = catalog.delete_sitemap(_sitemap_id(db, LEAF_A))

    assert removed == 3
    assert db.count_urls(CatalogFilter()) == 2
    assert [s["url"] for s in catalog.list_sitemaps()] == [LEAF_B, OTHER]


def test_delete_unknown_sitemap(catalog):
    with pytest.raises(NotFoundError):
        catalog.delete_sitemap(424242)


def test_clear_all(catalog, db):
    assert catalog.clear_all() == {"urls": 5, "sitemaps": 3}
    assert db.get_url_stats()["totalUrls"] == 0
    assert catalog.last_active_domain() is None


def test_last_active_domain(catalog):
    assert catalog.last_active_domain() == "https://other.org"
