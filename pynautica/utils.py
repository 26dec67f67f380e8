"""Utility functions for pynautica."""

import hashlib
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# =============================================================================
# Constants
# =============================================================================

# Default Nautica server
DEFAULT_BASE_URL: str = "https://ksm.dev"

# Per-download timeout (seconds)
DEFAULT_DOWNLOAD_TIMEOUT: float = 60.0

# Retry configuration for transient download errors
DEFAULT_MAX_ATTEMPTS: int = 3
DEFAULT_RETRY_DELAY: float = 1.0  # seconds

# Chunk size for streaming downloads and hashing
DEFAULT_CHUNK_SIZE: int = 64 * 1024

# Timestamp format used by the Nautica catalog ("uploaded_at")
CATALOG_TIMESTAMP_FORMAT: str = "%Y-%m-%d %H:%M:%S"

# Prefix of content fingerprints stored in sync records
FINGERPRINT_ALGORITHM: str = "sha256"


# =============================================================================
# Timestamp utilities
# =============================================================================


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_catalog_timestamp(value: str) -> datetime:
    """Parse a catalog timestamp into an aware UTC datetime.

    The catalog sends naive ``YYYY-MM-DD HH:MM:SS`` strings in UTC. ISO 8601
    strings (with or without ``Z``) are accepted as well.

    Args:
        value: Timestamp string from the catalog

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        ValueError: If the value matches no supported format

    Examples:
        >>> parse_catalog_timestamp("2023-09-07 05:56:46").isoformat()
        '2023-09-07T05:56:46+00:00'
    """
    try:
        dt = datetime.strptime(value, CATALOG_TIMESTAMP_FORMAT)
    except ValueError:
        dt = parse_iso_timestamp(value)
        if dt is None:
            raise ValueError(f"Invalid catalog timestamp: {value!r}") from None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


_FRACTION_RE = re.compile(r"\.(\d+)")


def _microseconds(match: "re.Match[str]") -> str:
    return "." + match.group(1)[:6].ljust(6, "0")


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO format timestamp.

    Args:
        timestamp_str: ISO format timestamp string (e.g., "2025-01-15T10:30:00Z")

    Returns:
        Aware UTC datetime, or None if parsing fails
    """
    if not timestamp_str:
        return None

    # The 'Z' suffix indicates UTC time
    if timestamp_str.endswith("Z"):
        timestamp_str = timestamp_str[:-1] + "+00:00"

    # fromisoformat only takes microseconds; RFC 3339 writers may emit nanoseconds
    timestamp_str = _FRACTION_RE.sub(_microseconds, timestamp_str, count=1)

    try:
        dt = datetime.fromisoformat(timestamp_str)
    except (ValueError, TypeError):
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format an aware datetime as an ISO 8601 string in UTC."""
    return dt.astimezone(timezone.utc).isoformat()


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


# =============================================================================
# Fingerprint utilities
# =============================================================================


def compute_fingerprint(path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Compute the content fingerprint of a downloaded archive.

    Args:
        path: Path to the archive file
        chunk_size: Read size in bytes

    Returns:
        Fingerprint string in the form ``sha256:<hexdigest>``

    Raises:
        OSError: If the file cannot be read
    """
    digest = hashlib.new(FINGERPRINT_ALGORITHM)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return f"{FINGERPRINT_ALGORITHM}:{digest.hexdigest()}"
