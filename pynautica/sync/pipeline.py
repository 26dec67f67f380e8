"""Download and extraction of a single catalog item."""

import logging
import os
import shutil
import tempfile
import threading
import time
import zipfile
import zlib
from pathlib import Path
from typing import Callable, Optional

from ..exceptions import (
    CorruptArchiveError,
    DownloadError,
    ExtractionCancelledError,
    NauticaAPIError,
    WriteError,
)
from ..models import CatalogItem
from ..utils import DEFAULT_DOWNLOAD_TIMEOUT, compute_fingerprint, utc_now
from .archive import ArchiveEntry, ArchiveReader
from .state import SyncRecord

logger = logging.getLogger(__name__)

# Staging directory for in-flight downloads, relative to the target directory
STAGING_DIR_NAME = ".staging"


class ExtractionPipeline:
    """Downloads an item archive and extracts it under the target directory.

    Files for item ``X`` are written to ``<target_dir>/X/``. Extraction
    overwrites existing files, so re-processing an item after an interrupted
    run converges to the same result. The pipeline never writes sync state;
    it returns the SyncRecord for the orchestrator to commit.
    """

    def __init__(
        self,
        client,
        target_dir: Path,
        reader: Optional[ArchiveReader] = None,
        staging_dir: Optional[Path] = None,
        timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        clock: Callable = utc_now,
    ):
        """Initialize extraction pipeline.

        Args:
            client: Object with ``download_file(url, output_path, timeout=...)``
            target_dir: Root directory for extracted items
            reader: Archive reader (defaults to ArchiveReader())
            staging_dir: Directory for temporary downloads
                        (defaults to <target_dir>/.staging)
            timeout: Per-download timeout in seconds
            clock: Returns the current aware UTC datetime
        """
        self.client = client
        self.target_dir = target_dir
        self.reader = reader or ArchiveReader()
        self.staging_dir = staging_dir or target_dir / STAGING_DIR_NAME
        self.timeout = timeout
        self.clock = clock

    def item_dir(self, item: CatalogItem) -> Path:
        """Directory an item is extracted into."""
        return self.target_dir / item.id

    def process(
        self,
        item: CatalogItem,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncRecord:
        """Download, extract and fingerprint one item.

        Args:
            item: Catalog item to process
            cancel_event: When set, extraction stops before the next entry

        Returns:
            SyncRecord describing the completed extraction

        Raises:
            DownloadError: Network failure, error status or timeout
            CorruptArchiveError: The archive or an entry cannot be read
            WriteError: An extracted file or directory cannot be written
            ExtractionCancelledError: Cancelled between two entries
        """
        start = time.time()
        try:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
            fd, staging_name = tempfile.mkstemp(
                prefix=f"{item.id}.", suffix=".zip", dir=self.staging_dir
            )
            os.close(fd)
        except OSError as e:
            raise WriteError(f"Cannot create staging file: {e}", item.id) from e

        staging_path = Path(staging_name)
        try:
            self._download(item, staging_path)
            try:
                fingerprint = compute_fingerprint(staging_path)
            except OSError as e:
                raise WriteError(f"Cannot read staged archive: {e}", item.id) from e
            written = self._extract(item, staging_path, cancel_event)
        finally:
            staging_path.unlink(missing_ok=True)

        logger.debug(
            "Extracted %s (%d entries) in %.2fs",
            item.id,
            written,
            time.time() - start,
        )
        return SyncRecord(
            item_id=item.id,
            last_synced_at=self.clock(),
            content_fingerprint=fingerprint,
        )

    def _download(self, item: CatalogItem, staging_path: Path) -> None:
        logger.debug(f"Downloading {item.id} from {item.download_url}")
        try:
            self.client.download_file(
                item.download_url, staging_path, timeout=self.timeout
            )
        except NauticaAPIError as e:
            raise DownloadError(str(e), item.id) from e
        except OSError as e:
            raise WriteError(f"Cannot write staged archive: {e}", item.id) from e

    def _extract(
        self,
        item: CatalogItem,
        archive_path: Path,
        cancel_event: Optional[threading.Event],
    ) -> int:
        dest = self.item_dir(item)
        written = 0
        try:
            handle = self.reader.open(archive_path)
        except CorruptArchiveError as e:
            e.item_id = item.id
            raise

        with handle:
            try:
                dest.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise WriteError(f"Cannot create {dest}: {e}", item.id) from e

            for entry in handle.entries():
                if cancel_event is not None and cancel_event.is_set():
                    raise ExtractionCancelledError(
                        f"Cancelled after {written} entries", item.id
                    )
                self._write_entry(item, entry, dest)
                written += 1
            if handle.rejected:
                logger.warning(
                    f"{item.id}: skipped {len(handle.rejected)} unsafe entry name(s)"
                )
        return written

    def _write_entry(self, item: CatalogItem, entry: ArchiveEntry, dest: Path) -> None:
        target = dest.joinpath(*entry.decoded_name.split("/"))
        try:
            if entry.is_dir:
                target.mkdir(parents=True, exist_ok=True)
                return
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WriteError(f"Cannot create directory for {target}: {e}", item.id) from e

        # RuntimeError: encrypted entry or unsupported compression method
        try:
            source = entry.open()
        except (zipfile.BadZipFile, zlib.error, RuntimeError, EOFError) as e:
            raise CorruptArchiveError(
                f"Cannot read entry {entry.decoded_name!r}: {e}", item.id
            ) from e

        with source:
            try:
                with open(target, "wb") as out:
                    shutil.copyfileobj(source, out)
            except (zipfile.BadZipFile, zlib.error, EOFError) as e:
                raise CorruptArchiveError(
                    f"Cannot read entry {entry.decoded_name!r}: {e}", item.id
                ) from e
            except OSError as e:
                raise WriteError(f"Cannot write {target}: {e}", item.id) from e
