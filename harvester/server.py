"""
Sitemap Harvester Server
REST API endpoints via FastAPI, plus a small FastMCP tool surface.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List, Optional

import httpx
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastmcp import FastMCP
from pydantic import BaseModel, ConfigDict, Field

from .bulk_transfer import BulkTransfer
from .catalog import CatalogQuery
from .config import get_config
from .db import Database
from .errors import NotFoundError, ResolutionEmptyError, ValidationError
from .fetcher import ContentFetcher
from .import_pipeline import ImportPipeline
from .models import ByFilter, ByUrls, CatalogFilter, CopySelector, UrlStatusFilter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("harvester")


# ==================== Services ====================

@dataclass
class Services:
    """Everything a request handler needs, built once per process."""
    db: Database
    fetcher: ContentFetcher
    pipeline: ImportPipeline
    catalog: CatalogQuery
    transfer: BulkTransfer

    async def aclose(self) -> None:
        await self.fetcher.aclose()


def build_services(
    db_path: Optional[Path] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    """Wire the store, fetcher and services together."""
    db = Database(db_path)
    fetcher = ContentFetcher(transport=transport)
    return Services(
        db=db,
        fetcher=fetcher,
        pipeline=ImportPipeline(db, fetcher=fetcher),
        catalog=CatalogQuery(db),
        transfer=BulkTransfer(db),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def _log_abandoned_restore(future: "asyncio.Future") -> None:
    """Report the outcome of a restore whose request already timed out."""
    error = future.exception()
    if error is not None:
        logger.error(f"Background restore failed: {error}")
    else:
        logger.info(f"Background restore finished: {future.result().to_dict()}")


# ==================== Request Models ====================

class ExtractSitemapRequest(BaseModel):
    sitemap_url: Optional[str] = Field(default=None, alias="sitemapUrl")
    filter_pattern: Optional[str] = Field(default=None, alias="filterPattern")
    enable_quality_filter: bool = Field(default=False, alias="enableQualityFilter")
    model_config = ConfigDict(populate_by_name=True)


class ScanQualityRequest(BaseModel):
    limit: int = 10


class ProcessQualityRequest(BaseModel):
    parent_sitemap: str = Field(alias="parentSitemap")
    limit: int = 10
    model_config = ConfigDict(populate_by_name=True)


class MarkCopiedRequest(BaseModel):
    urls: Optional[List[str]] = None
    all_pending: bool = Field(default=False, alias="allPending")
    search: Optional[str] = None
    parent_sitemap: Optional[str] = Field(default=None, alias="parentSitemap")
    domain: Optional[str] = None
    model_config = ConfigDict(populate_by_name=True)

    def to_selector(self) -> CopySelector:
        if self.all_pending:
            return ByFilter(CatalogFilter(
                search=self.search or None,
                parent_sitemap=self.parent_sitemap or None,
                domain=self.domain or None,
            ))
        if self.urls is not None:
            return ByUrls(self.urls)
        raise ValidationError("Invalid parameters")


# ==================== REST API (FastAPI) ====================

def create_api(
    db_path: Optional[Path] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the FastAPI application. The store is opened in the lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("Starting Sitemap Harvester API server")
        app.state.services = build_services(db_path, transport)
        yield
        logger.info("Shutting down Sitemap Harvester API server")
        await app.state.services.aclose()

    app = FastAPI(
        title="Sitemap Harvester API",
        description="Sitemap resolution, quality scanning and URL catalog",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        """API root - returns service info."""
        return {"name": "Sitemap Harvester", "version": "1.0.0", "docs": "/docs"}

    @app.get("/health")
    def health(services: Services = Depends(get_services)):
        """Health check endpoint."""
        try:
            return {"status": "healthy", "urls": services.db.get_url_stats()["totalUrls"]}
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}

    # ---------- Import & quality ----------

    @app.post("/api/extract-sitemap")
    async def extract_sitemap(
        request: ExtractSitemapRequest,
        services: Services = Depends(get_services),
    ):
        """Resolve a sitemap tree and store its URLs."""
        try:
            report = await services.pipeline.import_sitemap(
                request.sitemap_url or "",
                pattern_filter=request.filter_pattern,
                enable_quality_filter=request.enable_quality_filter,
            )
            return report.to_dict()
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ResolutionEmptyError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            logger.exception("Sitemap extraction failed")
            raise HTTPException(status_code=500, detail=f"Failed to process sitemap: {e}")

    @app.post("/api/quality/scan")
    async def scan_quality(
        request: ScanQualityRequest,
        services: Services = Depends(get_services),
    ):
        """Quality-check the next slice of unchecked URLs."""
        try:
            report = await services.pipeline.scan_quality_batch(request.limit)
            return report.to_dict()
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.exception("Quality scan failed")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/sitemaps/process-quality")
    async def process_sitemap_quality(
        request: ProcessQualityRequest,
        services: Services = Depends(get_services),
    ):
        """Quality-check and hand out the next pending URLs of one sitemap."""
        try:
            return await services.pipeline.process_sitemap_quality(
                request.parent_sitemap, request.limit
            )
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.exception("Sitemap quality batch failed")
            raise HTTPException(status_code=500, detail=str(e))

    # ---------- Catalog ----------

    @app.get("/api/urls")
    def list_urls(
        page: int = 1,
        limit: int = 50,
        status: UrlStatusFilter = UrlStatusFilter.ALL,
        search: Optional[str] = None,
        parent_sitemap: Optional[str] = Query(None, alias="parentSitemap"),
        domain: Optional[str] = None,
        services: Services = Depends(get_services),
    ):
        """Paginated, filtered URL listing."""
        catalog_filter = CatalogFilter(
            status=status,
            search=search or None,
            parent_sitemap=parent_sitemap or None,
            domain=domain or None,
        )
        try:
            return services.catalog.list_urls(catalog_filter, page=page, page_size=limit)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.exception("Failed to fetch URLs")
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/api/urls/pending")
    def pending_urls(
        limit: Optional[int] = None,
        search: Optional[str] = None,
        parent_sitemap: Optional[str] = Query(None, alias="parentSitemap"),
        domain: Optional[str] = None,
        services: Services = Depends(get_services),
    ):
        """Pending URLs as newline-joined text."""
        catalog_filter = CatalogFilter(
            search=search or None,
            parent_sitemap=parent_sitemap or None,
            domain=domain or None,
        )
        try:
            return services.catalog.pending_as_text(catalog_filter, limit)
        except Exception as e:
            logger.exception("Failed to fetch pending URLs")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/mark-copied")
    def mark_copied(
        request: MarkCopiedRequest,
        services: Services = Depends(get_services),
    ):
        """Mark URLs as copied, by list or by filter."""
        try:
            updated = services.catalog.mark_copied(request.to_selector())
            return {"success": True, "updated": updated}
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.exception("Failed to update URL status")
            raise HTTPException(status_code=500, detail=str(e))

    @app.delete("/api/urls/{url_id}")
    def delete_url(url_id: int, services: Services = Depends(get_services)):
        try:
            services.catalog.delete_url(url_id)
            return {"success": True}
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            logger.exception("Delete error")
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/api/sitemaps")
    def list_sitemaps(services: Services = Depends(get_services)):
        try:
            return {"data": services.catalog.list_sitemaps()}
        except Exception as e:
            logger.exception("Failed to fetch sitemaps")
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/api/sitemaps/{sitemap_id}/urls")
    def sitemap_urls(sitemap_id: int, services: Services = Depends(get_services)):
        try:
            return services.catalog.sitemap_urls_as_text(sitemap_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            logger.exception("Failed to fetch sitemap URLs")
            raise HTTPException(status_code=500, detail=str(e))

    @app.delete("/api/sitemaps/{sitemap_id}")
    def delete_sitemap(sitemap_id: int, services: Services = Depends(get_services)):
        try:
            deleted_urls = services.catalog.delete_sitemap(sitemap_id)
            return {"success": True, "deletedUrls": deleted_urls}
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            logger.exception("Delete error")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/clear-database")
    def clear_database(services: Services = Depends(get_services)):
        try:
            deleted = services.catalog.clear_all()
            return {"success": True, "message": "Database cleared successfully", "deleted": deleted}
        except Exception as e:
            logger.exception("Clear database error")
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/api/last-active-domain")
    def last_active_domain(services: Services = Depends(get_services)):
        try:
            return {"domain": services.catalog.last_active_domain()}
        except Exception as e:
            logger.exception("Error fetching last domain")
            raise HTTPException(status_code=500, detail=str(e))

    # ---------- Backup / restore ----------

    @app.get("/api/backup")
    def backup(services: Services = Depends(get_services)):
        """Stream the whole corpus as a JSON attachment."""
        filename = f"sitemap-backup-{time.strftime('%Y%m%d-%H%M%S')}.json"
        return StreamingResponse(
            services.transfer.export_backup(),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/restore")
    async def restore(
        file: UploadFile = File(...),
        clear_first: bool = Form(False, alias="clearFirst"),
        services: Services = Depends(get_services),
    ):
        """Restore a backup file; optionally wipe the store first."""
        timeout = services.transfer.config.bulk_timeout_seconds
        loop = asyncio.get_event_loop()
        future = loop.run_in_executor(
            None,
            lambda: services.transfer.restore_backup(file.file, clear_first),
        )
        try:
            # Shielded so the worker keeps its future after a timeout
            report = await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Restore exceeded {timeout}s, leaving it to finish in the background")
            future.add_done_callback(_log_abandoned_restore)
            raise HTTPException(status_code=504, detail="Restore timed out")
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.exception("Restore failed")
            raise HTTPException(status_code=500, detail=str(e))
        finally:
            if future.done():
                await file.close()

        return {
            "success": True,
            "message": (
                f"Restored {report.sitemaps_imported} sitemaps and {report.urls_imported} URLs"
            ),
            **report.to_dict(),
        }

    return app


api = create_api()


# ==================== MCP Server ====================

mcp = FastMCP("SitemapHarvester")


@asynccontextmanager
async def _mcp_services() -> AsyncIterator[Services]:
    services = build_services()
    try:
        yield services
    finally:
        await services.aclose()


@mcp.tool()
async def import_sitemap(
    sitemap_url: str,
    filter_pattern: str = "",
    enable_quality_filter: bool = False,
) -> dict:
    """
    Resolve a sitemap (or sitemap index) and store every URL it declares.

    Args:
        sitemap_url: Root sitemap URL
        filter_pattern: Keep only URLs containing this text
        enable_quality_filter: Keep only pages with rating >= 4.0 and >= 50 reviews

    Returns:
        Import report with found/stored counts and skip breakdown.
    """
    async with _mcp_services() as services:
        try:
            report = await services.pipeline.import_sitemap(
                sitemap_url, filter_pattern, enable_quality_filter
            )
            return report.to_dict()
        except (ValidationError, ResolutionEmptyError) as e:
            return {"error": str(e)}


@mcp.tool()
async def scan_quality_batch(limit: int = 10) -> dict:
    """
    Quality-check up to ``limit`` unchecked URLs.

    Call repeatedly until ``remaining`` is 0.
    """
    async with _mcp_services() as services:
        try:
            report = await services.pipeline.scan_quality_batch(limit)
            return report.to_dict()
        except ValidationError as e:
            return {"error": str(e)}


@mcp.tool()
async def get_pending_urls(search: str = "", parent_sitemap: str = "", limit: int = 100) -> dict:
    """
    Return pending URLs (not copied, not rejected) as newline-joined text.

    Args:
        search: Case-insensitive substring the URL must contain
        parent_sitemap: Restrict to URLs declared by this sitemap
        limit: Maximum number of URLs
    """
    async with _mcp_services() as services:
        catalog_filter = CatalogFilter(
            search=search or None,
            parent_sitemap=parent_sitemap or None,
        )
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None, lambda: services.catalog.pending_as_text(catalog_filter, limit)
        )


# ==================== Entry Points ====================

def run_mcp():
    """Run the MCP server (STDIO transport)."""
    mcp.run()


def run_api():
    """Run the REST API server."""
    import uvicorn
    config = get_config()
    uvicorn.run(
        api,
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if config.server.debug else "info",
    )


if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "api":
        run_api()
    else:
        run_mcp()
