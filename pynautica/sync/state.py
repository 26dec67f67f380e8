"""Durable state tracking for synced catalog items.

One SyncRecord per catalog id records that the item was fully extracted at
a point in time. Records are only written after a complete extraction, so a
missing record always means "fetch this item again".
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol

from ..exceptions import StoreError
from ..utils import format_timestamp, parse_iso_timestamp

logger = logging.getLogger(__name__)

# Name of the state file inside the target directory
STATE_FILE_NAME = "meta.json"


@dataclass(frozen=True)
class SyncRecord:
    """Persisted evidence that an item was fully extracted."""

    item_id: str
    """Catalog id (the store key)"""

    last_synced_at: datetime
    """When the extraction completed (aware, UTC)"""

    content_fingerprint: str
    """Fingerprint of the archive bytes (e.g. 'sha256:...'); empty for legacy records"""

    def to_dict(self) -> dict:
        """Convert record to dictionary for JSON serialization."""
        return {
            "last_synced_at": format_timestamp(self.last_synced_at),
            "content_fingerprint": self.content_fingerprint,
        }

    @classmethod
    def from_dict(cls, item_id: str, data: Any) -> "SyncRecord":
        """Create SyncRecord from a stored value.

        A bare timestamp string is accepted for records written by older
        versions, which stored only the sync time, either plain or itself
        JSON-encoded (``"\"2023-09-07T05:56:46.123456789Z\""``).

        Raises:
            ValueError: If the value has no parseable timestamp
        """
        if isinstance(data, str) and data.startswith('"'):
            data = json.loads(data)
            if not isinstance(data, str):
                raise ValueError(f"Unsupported record value: {data!r}")
        if isinstance(data, str):
            timestamp, fingerprint = data, ""
        elif isinstance(data, dict):
            timestamp = data.get("last_synced_at", "")
            fingerprint = data.get("content_fingerprint", "") or ""
        else:
            raise ValueError(f"Unsupported record value: {data!r}")

        last_synced_at = parse_iso_timestamp(timestamp)
        if last_synced_at is None:
            raise ValueError(f"Invalid timestamp for {item_id}: {timestamp!r}")
        return cls(
            item_id=item_id,
            last_synced_at=last_synced_at,
            content_fingerprint=fingerprint,
        )


def _is_pickledb_dump(data: dict) -> bool:
    """Whether the state was written by the pickledb-based downloader.

    That tool dumps ``{"map": {id: value}, "list_map": {}}`` where each value
    is a JSON-encoded RFC 3339 timestamp.
    """
    records = data.get("map")
    return (
        set(data) <= {"map", "list_map"}
        and isinstance(records, dict)
        and "last_synced_at" not in records
    )


class StateStore(Protocol):
    """Durable mapping from item id to SyncRecord.

    ``put`` must be durable before it returns, and a crash between two
    ``put`` calls must leave earlier records intact.
    """

    def get(self, item_id: str) -> Optional[SyncRecord]: ...

    def put(self, item_id: str, record: SyncRecord) -> None: ...

    def iterate(self) -> Iterator[tuple[str, SyncRecord]]: ...


class JsonStateStore:
    """StateStore backed by a single JSON file with write-through updates.

    Every ``put`` rewrites the file atomically (temporary file, fsync,
    rename), so readers never observe a half-written store.
    """

    def __init__(self, path: Path):
        """Initialize and load the store.

        Args:
            path: Path to the JSON state file (created on first write)
        """
        self.path = path
        self._lock = threading.Lock()
        self._records: dict[str, SyncRecord] = self._load()

    @classmethod
    def for_target(cls, target_dir: Path) -> "JsonStateStore":
        """Open the store kept inside a target directory."""
        return cls(target_dir / STATE_FILE_NAME)

    def _load(self) -> dict[str, SyncRecord]:
        if not self.path.exists():
            logger.debug(f"No sync state found at {self.path}")
            return {}

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to load sync state, starting empty: {e}")
            return {}
        except OSError as e:
            raise StoreError(f"Cannot read sync state {self.path}: {e}") from e

        if not isinstance(data, dict):
            logger.warning(f"Ignoring sync state with unexpected layout: {self.path}")
            return {}

        if _is_pickledb_dump(data):
            logger.info(f"Reading legacy sync state from {self.path}")
            data = data["map"]

        records: dict[str, SyncRecord] = {}
        for item_id, value in data.items():
            try:
                records[item_id] = SyncRecord.from_dict(item_id, value)
            except ValueError as e:
                logger.warning(f"Dropping unreadable sync record: {e}")
        logger.debug(f"Loaded {len(records)} sync record(s) from {self.path}")
        return records

    def _dump(self, records: dict[str, SyncRecord]) -> None:
        payload = {
            item_id: record.to_dict() for item_id, record in sorted(records.items())
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, item_id: str) -> Optional[SyncRecord]:
        """Return the record for an item, or None if it was never synced."""
        return self._records.get(item_id)

    def put(self, item_id: str, record: SyncRecord) -> None:
        """Store a record and persist the store before returning.

        Raises:
            StoreError: If the state file cannot be written
        """
        with self._lock:
            updated = dict(self._records)
            updated[item_id] = record
            try:
                self._dump(updated)
            except OSError as e:
                raise StoreError(f"Failed to save sync state: {e}") from e
            self._records = updated
        logger.debug(f"Committed sync record for {item_id}")

    def delete(self, item_id: str) -> bool:
        """Remove a record.

        Returns:
            True if a record was removed, False if none existed

        Raises:
            StoreError: If the state file cannot be written
        """
        with self._lock:
            if item_id not in self._records:
                return False
            updated = dict(self._records)
            del updated[item_id]
            try:
                self._dump(updated)
            except OSError as e:
                raise StoreError(f"Failed to save sync state: {e}") from e
            self._records = updated
        return True

    def iterate(self) -> Iterator[tuple[str, SyncRecord]]:
        """Iterate over (item_id, record) pairs in id order."""
        for item_id, record in sorted(self._records.items()):
            yield item_id, record

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._records
