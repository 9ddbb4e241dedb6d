"""
Sitemap Harvester Database Layer
SQLite-based storage for content URLs and visited sitemap files.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Iterator, List, Optional, Sequence, Tuple

from .config import get_config
from .models import (
    CatalogFilter,
    ContentUrl,
    QualityStatus,
    SitemapFile,
    UrlStatusFilter,
)

logger = logging.getLogger("harvester.db")

# SQLite caps bound parameters per statement; keep IN (...) lists well below it.
_IN_CHUNK = 500


# SQL Schema
SCHEMA = """
-- Pages declared by sitemaps
CREATE TABLE IF NOT EXISTS content_urls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    source_domain TEXT NOT NULL,
    parent_sitemap TEXT,
    extracted_at REAL NOT NULL,
    copied INTEGER NOT NULL DEFAULT 0,
    quality_status TEXT NOT NULL DEFAULT 'unchecked',
    rating REAL,
    review_count INTEGER
);

CREATE INDEX IF NOT EXISTS idx_content_urls_parent ON content_urls(parent_sitemap);
CREATE INDEX IF NOT EXISTS idx_content_urls_copied ON content_urls(copied);
CREATE INDEX IF NOT EXISTS idx_content_urls_quality ON content_urls(quality_status);
CREATE INDEX IF NOT EXISTS idx_content_urls_domain ON content_urls(source_domain);
CREATE INDEX IF NOT EXISTS idx_content_urls_extracted ON content_urls(extracted_at);

-- Sitemap documents visited during resolution
CREATE TABLE IF NOT EXISTS sitemap_files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    source_domain TEXT NOT NULL,
    found_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sitemap_files_domain ON sitemap_files(source_domain);
"""

PENDING_PREDICATE = "copied = 0 AND quality_status != 'rejected'"


def build_url_filter(catalog_filter: CatalogFilter) -> Tuple[str, List[Any]]:
    """
    Translate a CatalogFilter into a WHERE clause and its parameters.

    This is the only place filters become predicates; listing, pending-as-text
    and mark-copied all go through it.
    """
    clauses: List[str] = []
    params: List[Any] = []

    status = catalog_filter.status
    if status == UrlStatusFilter.PENDING:
        clauses.append(PENDING_PREDICATE)
    elif status == UrlStatusFilter.COPIED:
        clauses.append("copied = 1")
    elif status == UrlStatusFilter.UNCHECKED:
        clauses.append("quality_status = ?")
        params.append(QualityStatus.UNCHECKED.value)
    elif status == UrlStatusFilter.REJECTED:
        clauses.append("quality_status = ?")
        params.append(QualityStatus.REJECTED.value)

    if catalog_filter.search:
        clauses.append("instr(lower(url), lower(?)) > 0")
        params.append(catalog_filter.search)

    if catalog_filter.parent_sitemap:
        clauses.append("parent_sitemap = ?")
        params.append(catalog_filter.parent_sitemap)

    if catalog_filter.domain:
        clauses.append("source_domain = ?")
        params.append(catalog_filter.domain)

    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def _row_to_url(row: sqlite3.Row) -> ContentUrl:
    return ContentUrl(
        id=row["id"],
        url=row["url"],
        source_domain=row["source_domain"],
        parent_sitemap=row["parent_sitemap"],
        extracted_at=row["extracted_at"],
        copied=bool(row["copied"]),
        quality_status=QualityStatus(row["quality_status"]),
        rating=row["rating"],
        review_count=row["review_count"],
    )


def _row_to_sitemap(row: sqlite3.Row) -> SitemapFile:
    return SitemapFile(
        id=row["id"],
        url=row["url"],
        source_domain=row["source_domain"],
        found_at=row["found_at"],
    )


class Database:
    """
    SQLite store for the harvester.

    Every operation opens its own short-lived connection, so one instance can
    be shared between the event loop's executor threads and the API threadpool.
    """

    def __init__(self, db_path: Optional[Path] = None, busy_timeout: Optional[float] = None):
        config = get_config().database
        self.db_path = Path(db_path or config.path)
        self.busy_timeout = busy_timeout if busy_timeout is not None else config.busy_timeout
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
        logger.info(f"Database ready at {self.db_path}")

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ==================== Inserts ====================

    def insert_sitemaps(self, sitemaps: Sequence[SitemapFile]) -> int:
        """Insert sitemap files, ignoring URLs already stored. Returns rows inserted."""
        if not sitemaps:
            return 0
        with self._get_connection() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO sitemap_files (url, source_domain, found_at)
                VALUES (?, ?, ?)
                """,
                [(s.url, s.source_domain, s.found_at) for s in sitemaps],
            )
            return conn.total_changes - before

    def insert_urls(self, urls: Sequence[ContentUrl]) -> int:
        """Insert content URLs, ignoring URLs already stored. Returns rows inserted."""
        if not urls:
            return 0
        with self._get_connection() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO content_urls
                (url, source_domain, parent_sitemap, extracted_at, copied,
                 quality_status, rating, review_count)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        u.url, u.source_domain, u.parent_sitemap, u.extracted_at,
                        int(u.copied), u.quality_status.value, u.rating, u.review_count,
                    )
                    for u in urls
                ],
            )
            return conn.total_changes - before

    # ==================== Content URL reads ====================

    def count_urls(self, catalog_filter: CatalogFilter) -> int:
        where, params = build_url_filter(catalog_filter)
        with self._get_connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS total FROM content_urls{where}", params).fetchone()
            return row["total"]

    def list_urls(
        self,
        catalog_filter: CatalogFilter,
        limit: int,
        offset: int = 0,
    ) -> List[ContentUrl]:
        """List URL records matching the filter, ordered by URL."""
        where, params = build_url_filter(catalog_filter)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM content_urls{where} ORDER BY url ASC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
            return [_row_to_url(row) for row in rows]

    def list_url_strings(
        self,
        catalog_filter: CatalogFilter,
        limit: Optional[int] = None,
    ) -> List[str]:
        """URLs matching the filter, ordered by URL, optionally capped."""
        where, params = build_url_filter(catalog_filter)
        query = f"SELECT url FROM content_urls{where} ORDER BY url ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._get_connection() as conn:
            return [row["url"] for row in conn.execute(query, params).fetchall()]

    def get_url_stats(self) -> Dict[str, int]:
        """Whole-corpus counters, independent of any filter."""
        with self._get_connection() as conn:
            row = conn.execute(
                f"""
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN {PENDING_PREDICATE} THEN 1 ELSE 0 END) AS pending,
                    SUM(CASE WHEN copied = 1 THEN 1 ELSE 0 END) AS copied,
                    SUM(CASE WHEN quality_status = 'unchecked' THEN 1 ELSE 0 END) AS unchecked,
                    SUM(CASE WHEN quality_status = 'approved' THEN 1 ELSE 0 END) AS approved,
                    SUM(CASE WHEN quality_status = 'rejected' THEN 1 ELSE 0 END) AS rejected
                FROM content_urls
                """
            ).fetchone()
            return {
                "totalUrls": row["total"],
                "pending": row["pending"] or 0,
                "copied": row["copied"] or 0,
                "unchecked": row["unchecked"] or 0,
                "approved": row["approved"] or 0,
                "rejected": row["rejected"] or 0,
            }

    def last_active_domain(self) -> Optional[str]:
        """Source domain of the most recently extracted URL."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT source_domain FROM content_urls ORDER BY extracted_at DESC, id DESC LIMIT 1"
            ).fetchone()
            return row["source_domain"] if row else None

    # ==================== Sitemap reads ====================

    def get_sitemap(self, sitemap_id: int) -> Optional[SitemapFile]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM sitemap_files WHERE id = ?", (sitemap_id,)).fetchone()
            return _row_to_sitemap(row) if row else None

    def list_sitemaps_with_stats(self) -> List[Tuple[SitemapFile, Dict[str, int]]]:
        """All sitemap files ordered by URL, each with counts of the URLs it declared."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT s.*,
                    COUNT(c.id) AS total,
                    COALESCE(SUM(CASE WHEN c.copied = 0 AND c.quality_status != 'rejected'
                        THEN 1 ELSE 0 END), 0) AS pending,
                    COALESCE(SUM(CASE WHEN c.copied = 1 THEN 1 ELSE 0 END), 0) AS copied
                FROM sitemap_files s
                LEFT JOIN content_urls c ON c.parent_sitemap = s.url
                GROUP BY s.id
                ORDER BY s.url ASC
                """
            ).fetchall()
            return [
                (
                    _row_to_sitemap(row),
                    {"total": row["total"], "pending": row["pending"], "copied": row["copied"]},
                )
                for row in rows
            ]

    # ==================== Mutations ====================

    def mark_copied_urls(self, urls: Sequence[str]) -> int:
        """Mark an explicit list of URLs copied. Returns rows changed."""
        updated = 0
        with self._get_connection() as conn:
            for start in range(0, len(urls), _IN_CHUNK):
                chunk = list(urls[start:start + _IN_CHUNK])
                placeholders = ", ".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"UPDATE content_urls SET copied = 1 WHERE url IN ({placeholders})",
                    chunk,
                )
                updated += cursor.rowcount
        return updated

    def mark_copied_filter(self, catalog_filter: CatalogFilter) -> int:
        """Mark every URL matching the filter copied. Returns rows changed."""
        where, params = build_url_filter(catalog_filter)
        with self._get_connection() as conn:
            cursor = conn.execute(f"UPDATE content_urls SET copied = 1{where}", params)
            return cursor.rowcount

    def update_quality(
        self,
        results: Sequence[Tuple[str, QualityStatus, float, int]],
        mark_copied: bool = False,
    ) -> int:
        """
        Store quality results ``(url, status, rating, reviews)`` in one transaction.

        With ``mark_copied`` every listed URL is also flagged copied.
        """
        if not results:
            return 0
        copied_sql = ", copied = 1" if mark_copied else ""
        with self._get_connection() as conn:
            before = conn.total_changes
            conn.executemany(
                f"""
                UPDATE content_urls
                SET quality_status = ?, rating = ?, review_count = ?{copied_sql}
                WHERE url = ?
                """,
                [(status.value, rating, reviews, url) for url, status, rating, reviews in results],
            )
            return conn.total_changes - before

    def delete_url(self, url_id: int) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM content_urls WHERE id = ?", (url_id,))
            return cursor.rowcount > 0

    def delete_sitemap_cascade(self, sitemap_id: int) -> Optional[int]:
        """
        Delete a sitemap file and the URLs it declared.

        Returns the number of URLs removed, or None if the sitemap is unknown.
        """
        with self._get_connection() as conn:
            row = conn.execute("SELECT url FROM sitemap_files WHERE id = ?", (sitemap_id,)).fetchone()
            if row is None:
                return None
            cursor = conn.execute("DELETE FROM content_urls WHERE parent_sitemap = ?", (row["url"],))
            conn.execute("DELETE FROM sitemap_files WHERE id = ?", (sitemap_id,))
            return cursor.rowcount

    def clear_all(self) -> Dict[str, int]:
        """Delete every URL and sitemap record."""
        with self._get_connection() as conn:
            urls = conn.execute("DELETE FROM content_urls").rowcount
            sitemaps = conn.execute("DELETE FROM sitemap_files").rowcount
            return {"urls": urls, "sitemaps": sitemaps}

    # ==================== Streaming ====================

    def iter_sitemaps(self, fetch_size: int = 500) -> Iterator[SitemapFile]:
        """Walk every sitemap record with a cursor, ``fetch_size`` rows at a time."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM sitemap_files ORDER BY id ASC")
            while True:
                rows = cursor.fetchmany(fetch_size)
                if not rows:
                    break
                for row in rows:
                    yield _row_to_sitemap(row)

    def iter_urls(self, fetch_size: int = 500) -> Iterator[ContentUrl]:
        """Walk every URL record with a cursor, ``fetch_size`` rows at a time."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM content_urls ORDER BY id ASC")
            while True:
                rows = cursor.fetchmany(fetch_size)
                if not rows:
                    break
                for row in rows:
                    yield _row_to_url(row)
