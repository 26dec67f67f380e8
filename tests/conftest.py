"""Shared fixtures and fakes for the pynautica tests."""

import io
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import pytest

from pynautica.exceptions import StoreError
from pynautica.models import CatalogItem
from pynautica.sync.state import SyncRecord

BASE_URL = "https://ksm.test"


def utc(*args: int) -> datetime:
    """Build an aware UTC datetime."""
    return datetime(*args, tzinfo=timezone.utc)


def make_item(item_id: str, updated_at: Optional[datetime] = None) -> CatalogItem:
    """Build a catalog item with a predictable download URL."""
    return CatalogItem(
        id=item_id,
        updated_at=updated_at or utc(2023, 9, 7, 5, 56, 46),
        download_url=f"{BASE_URL}/songs/{item_id}/download",
        display_name=f"Artist - {item_id}",
    )


def build_zip(entries: list[tuple[bytes, bytes]]) -> bytes:
    """Build a ZIP archive whose entry names are stored as the given raw bytes.

    zipfile always writes non-ASCII names as flagged UTF-8, so non-ASCII raw
    names are written as same-length ASCII placeholders and patched into the
    local and central headers afterwards. The UTF-8 flag stays unset.
    """
    buf = io.BytesIO()
    replacements = []
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_STORED) as zf:
        for index, (raw, content) in enumerate(entries):
            if raw.isascii():
                name = raw.decode("ascii")
            else:
                name = chr(ord("A") + index) * len(raw)
                replacements.append((name.encode("ascii"), raw))
            zf.writestr(zipfile.ZipInfo(name), content)

    data = buf.getvalue()
    for placeholder, raw in replacements:
        assert data.count(placeholder) == 2
        data = data.replace(placeholder, raw)
    return data


class InMemoryStateStore:
    """StateStore fake keeping records in a dict."""

    def __init__(self, fail_puts: int = 0):
        self.records: dict[str, SyncRecord] = {}
        self.fail_puts = fail_puts
        self.put_calls = 0

    def get(self, item_id: str) -> Optional[SyncRecord]:
        return self.records.get(item_id)

    def put(self, item_id: str, record: SyncRecord) -> None:
        self.put_calls += 1
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise StoreError("database is locked")
        self.records[item_id] = record

    def iterate(self) -> Iterator[tuple[str, SyncRecord]]:
        yield from sorted(self.records.items())


class FakeCatalogClient:
    """Catalog client fake serving archives from memory.

    ``archives`` maps a download URL to bytes, an exception to raise, or a
    list of those consumed one per download attempt.
    """

    def __init__(self, items=None, archives=None):
        self.base_url = BASE_URL
        self.items = list(items or [])
        self.archives = dict(archives or {})
        self.list_error: Optional[Exception] = None
        self.downloads: list[str] = []
        self.closed = False

    def list_items(self) -> list[CatalogItem]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.items)

    def download_file(self, url, output_path, timeout=60.0, progress_callback=None):
        self.downloads.append(url)
        payload = self.archives[url]
        if isinstance(payload, list):
            payload = payload.pop(0)
        if isinstance(payload, Exception):
            raise payload
        Path(output_path).write_bytes(payload)
        return output_path

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def target_dir(tmp_path):
    """Empty target directory for extraction."""
    path = tmp_path / "target"
    path.mkdir()
    return path


@pytest.fixture
def store():
    """Empty in-memory state store."""
    return InMemoryStateStore()


@pytest.fixture
def pack_archive():
    """A small chart pack with ASCII names and one subdirectory."""
    return build_zip(
        [
            (b"chart.ksh", b"title=Outbreak\n"),
            (b"jacket/", b""),
            (b"jacket/cover.png", b"\x89PNG fake"),
            (b"song.ogg", b"OggS fake audio"),
        ]
    )
