"""pynautica - incremental downloader for the Nautica chart catalog."""

from .api import NauticaClient
from .exceptions import (
    CatalogUnavailableError,
    CorruptArchiveError,
    DownloadError,
    EntryRejectedError,
    ExtractError,
    ExtractionCancelledError,
    NauticaAPIError,
    NauticaConfigError,
    NauticaDownloadError,
    NauticaError,
    NauticaInvalidResponseError,
    NauticaNetworkError,
    NauticaNotFoundError,
    NauticaRateLimitError,
    StoreError,
    WriteError,
)
from .models import CatalogItem

__version__ = "0.1.0"

__all__ = [
    "NauticaClient",
    "CatalogItem",
    "NauticaError",
    "NauticaAPIError",
    "NauticaConfigError",
    "NauticaDownloadError",
    "NauticaInvalidResponseError",
    "NauticaNetworkError",
    "NauticaNotFoundError",
    "NauticaRateLimitError",
    "CatalogUnavailableError",
    "ExtractError",
    "DownloadError",
    "CorruptArchiveError",
    "WriteError",
    "ExtractionCancelledError",
    "EntryRejectedError",
    "StoreError",
]
