"""
Sitemap Harvester Bulk Transfer

Backup export and restore for corpora larger than memory.

Backup format:
    {"sitemaps": [{...}, ...], "urls": [{...}, ...]}

Export walks both tables with cursors and yields bytes as it goes. Restore
reads the document twice with ijson (sitemaps first, then urls) so neither
pass ever holds the whole payload.
"""

import io
import json
import logging
import sqlite3
from typing import Any, BinaryIO, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

import ijson

from .config import TransferConfig, get_config
from .db import Database
from .errors import ValidationError
from .models import ContentUrl, RestoreReport, SitemapFile

logger = logging.getLogger("harvester.transfer")

# Identifier fields are transport-only; imported records get fresh ones.
IDENTIFIER_FIELDS = ("id", "_id", "__v")


def strip_identifiers(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in item.items() if k not in IDENTIFIER_FIELDS}


class BulkTransfer:
    """Streaming backup / restore over a Database."""

    def __init__(self, db: Database, config: Optional[TransferConfig] = None):
        self.db = db
        self.config = config or get_config().transfer

    # ==================== Export ====================

    def _stream_array(self, records: Iterable[Any], label: str) -> Iterator[bytes]:
        """Yield the JSON array elements of ``records`` in chunks, comma separated."""
        parts: List[str] = []
        first = True
        try:
            for record in records:
                encoded = json.dumps(record.to_dict(), ensure_ascii=False)
                parts.append(encoded if first else "," + encoded)
                first = False
                if len(parts) >= self.config.fetch_size:
                    yield "".join(parts).encode("utf-8")
                    parts = []
        except sqlite3.Error as e:
            # Close the array anyway so the document stays parseable.
            logger.error(f"Export of {label} interrupted: {e}")
        if parts:
            yield "".join(parts).encode("utf-8")

    def export_backup(self) -> Iterator[bytes]:
        """Yield the complete backup document as UTF-8 chunks."""
        logger.info("Starting backup export")
        yield b'{"sitemaps":['
        yield from self._stream_array(self.db.iter_sitemaps(self.config.fetch_size), "sitemaps")
        yield b'],"urls":['
        yield from self._stream_array(self.db.iter_urls(self.config.fetch_size), "urls")
        yield b"]}"
        logger.info("Backup export finished")

    # ==================== Restore ====================

    def _import_items(
        self,
        fileobj: BinaryIO,
        prefix: str,
        build: Callable[[Dict[str, Any]], Any],
        insert: Callable[[Sequence[Any]], int],
        batch_size: int,
        report: RestoreReport,
    ) -> int:
        """Stream ``prefix`` items from ``fileobj`` into ``insert`` in batches."""
        inserted = 0
        batch: List[Any] = []

        def flush() -> int:
            if not batch:
                return 0
            try:
                return insert(batch)
            except sqlite3.Error as e:
                logger.error(f"Batch insert for {prefix} failed: {e}")
                report.errors.append(f"{prefix}: {e}")
                return 0
            finally:
                batch.clear()

        skipped = 0
        try:
            for item in ijson.items(fileobj, prefix, use_float=True):
                if not isinstance(item, dict) or not item.get("url"):
                    skipped += 1
                    continue
                try:
                    batch.append(build(strip_identifiers(item)))
                except (KeyError, TypeError, ValueError) as e:
                    logger.debug(f"Skipping malformed {prefix} entry: {e}")
                    skipped += 1
                    continue
                if len(batch) >= batch_size:
                    inserted += flush()
        except ijson.JSONError as e:
            logger.error(f"Backup document is malformed ({prefix}): {e}")
            report.errors.append(f"{prefix}: malformed JSON ({e})")
        except ValueError as e:
            # Reads on a closed stream, e.g. an upload released after a timeout
            logger.error(f"Backup stream became unreadable ({prefix}): {e}")
            report.errors.append(f"{prefix}: stream closed ({e})")

        if skipped:
            logger.warning(f"Skipped {skipped} unusable {prefix} entries")
            report.skipped += skipped
        inserted += flush()
        return inserted

    def _rewind(self, fileobj: BinaryIO, report: RestoreReport) -> bool:
        """Seek back to the start for the next pass; False if the stream is gone."""
        try:
            fileobj.seek(0)
        except ValueError as e:
            logger.error(f"Cannot rewind backup stream: {e}")
            report.errors.append(f"stream closed before urls pass ({e})")
            return False
        return True

    def restore_backup(self, fileobj: BinaryIO, clear_first: bool = False) -> RestoreReport:
        """
        Import a backup document.

        Args:
            fileobj: Seekable binary file holding the backup JSON
            clear_first: Wipe both collections before importing

        Returns:
            RestoreReport with the number of records actually inserted.
        """
        try:
            fileobj.seek(0)
        except (OSError, io.UnsupportedOperation) as e:
            raise ValidationError("Backup stream must be seekable") from e
        except ValueError as e:
            raise ValidationError("Backup stream is closed") from e

        if clear_first:
            logger.warning("Clearing database before restore")
            self.db.clear_all()

        report = RestoreReport()
        report.sitemaps_imported = self._import_items(
            fileobj,
            "sitemaps.item",
            SitemapFile.from_dict,
            self.db.insert_sitemaps,
            self.config.sitemap_batch_size,
            report,
        )

        if self._rewind(fileobj, report):
            report.urls_imported = self._import_items(
                fileobj,
                "urls.item",
                ContentUrl.from_dict,
                self.db.insert_urls,
                self.config.url_batch_size,
                report,
            )

        logger.info(
            f"Restore finished: {report.sitemaps_imported} sitemaps, {report.urls_imported} URLs, "
            f"{report.skipped} skipped"
        )
        return report
