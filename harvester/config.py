"""
Sitemap Harvester Configuration
Central configuration management for all services.
"""

import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass(frozen=True)
class DatabaseConfig:
    """SQLite store configuration."""
    path: Path
    busy_timeout: float = 30.0  # seconds to wait on a locked database


@dataclass(frozen=True)
class FetchConfig:
    """Outbound HTTP configuration shared by sitemap resolution and quality scans."""
    timeout: float = 10.0
    user_agent: str = "SitemapHarvester/1.0"
    accept: str = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


@dataclass(frozen=True)
class QualityConfig:
    """Selectors and thresholds for the page quality signal."""
    rating_selector: str = ".mm-recipes-review-bar__rating"
    reviews_selector: str = ".mm-recipes-review-bar__comment-count"
    min_rating: float = 4.0
    min_reviews: int = 50


@dataclass(frozen=True)
class PipelineConfig:
    """Import pipeline and catalog limits."""
    batch_size: int = 10  # pages fetched concurrently per chunk
    max_scan_limit: int = 100
    max_page_size: int = 500


@dataclass(frozen=True)
class TransferConfig:
    """Backup / restore configuration."""
    sitemap_batch_size: int = 100
    url_batch_size: int = 1000
    fetch_size: int = 500  # rows pulled per cursor round trip on export
    bulk_timeout_seconds: float = 600.0


@dataclass(frozen=True)
class ServerConfig:
    """Server configuration."""
    host: str = "0.0.0.0"
    port: int = 5000
    debug: bool = False


class Config:
    """
    Main configuration class that loads all settings from the environment.
    """

    def __init__(self):
        # Base paths
        self.base_dir = Path(__file__).parent.parent
        self.data_dir = self.base_dir / "data"

        self.database = DatabaseConfig(
            path=Path(os.getenv("HARVESTER_DB_PATH", str(self.data_dir / "harvester.db"))),
            busy_timeout=float(os.getenv("DB_BUSY_TIMEOUT", "30")),
        )

        self.fetch = FetchConfig(
            timeout=float(os.getenv("FETCH_TIMEOUT", "10")),
            user_agent=os.getenv("FETCH_USER_AGENT", "SitemapHarvester/1.0"),
        )

        self.quality = QualityConfig(
            rating_selector=os.getenv("QUALITY_RATING_SELECTOR", ".mm-recipes-review-bar__rating"),
            reviews_selector=os.getenv("QUALITY_REVIEWS_SELECTOR", ".mm-recipes-review-bar__comment-count"),
            min_rating=float(os.getenv("QUALITY_MIN_RATING", "4.0")),
            min_reviews=int(os.getenv("QUALITY_MIN_REVIEWS", "50")),
        )

        self.pipeline = PipelineConfig(
            batch_size=int(os.getenv("IMPORT_BATCH_SIZE", "10")),
            max_scan_limit=int(os.getenv("MAX_SCAN_LIMIT", "100")),
            max_page_size=int(os.getenv("MAX_PAGE_SIZE", "500")),
        )

        self.transfer = TransferConfig(
            sitemap_batch_size=int(os.getenv("SITEMAP_BATCH_SIZE", "100")),
            url_batch_size=int(os.getenv("URL_BATCH_SIZE", "1000")),
            bulk_timeout_seconds=float(os.getenv("BULK_TIMEOUT_SECONDS", "600")),
        )

        self.server = ServerConfig(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "5000")),
            debug=os.getenv("DEBUG", "").lower() == "true",
        )

        if self.pipeline.batch_size < 1:
            raise EnvironmentError("IMPORT_BATCH_SIZE must be at least 1")


# Singleton instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the singleton configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
