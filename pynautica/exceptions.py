"""Exceptions raised by pynautica."""


class NauticaError(Exception):
    """Base exception for all pynautica errors."""

    kind = "error"


class NauticaConfigError(NauticaError):
    """Invalid or missing configuration value."""

    kind = "config"


# =============================================================================
# Catalog client errors
# =============================================================================


class NauticaAPIError(NauticaError):
    """Request to the Nautica server failed."""

    kind = "api"


class NauticaNetworkError(NauticaAPIError):
    """Transport-level failure (connection refused, DNS, timeout)."""

    kind = "network"


class NauticaNotFoundError(NauticaAPIError):
    """The requested resource does not exist on the server."""

    kind = "not_found"


class NauticaRateLimitError(NauticaAPIError):
    """The server rejected the request with HTTP 429."""

    kind = "rate_limit"


class NauticaInvalidResponseError(NauticaAPIError):
    """The server answered with a payload that could not be parsed."""

    kind = "invalid_response"


class NauticaDownloadError(NauticaAPIError):
    """An archive download returned a non-success status."""

    kind = "download"


# =============================================================================
# Sync errors
# =============================================================================


class CatalogUnavailableError(NauticaError):
    """The catalog could not be listed, so no sync pass can be planned."""

    kind = "catalog_unavailable"


class ExtractError(NauticaError):
    """Processing of a single catalog item failed.

    Raised by the extraction pipeline. The orchestrator records the item as
    failed for the current pass; no state is committed for it.
    """

    kind = "extract"

    def __init__(self, message: str, item_id: str = ""):
        super().__init__(message)
        self.item_id = item_id


class DownloadError(ExtractError):
    """Fetching the item archive failed (network, HTTP status, timeout)."""

    kind = "download"


class CorruptArchiveError(ExtractError):
    """The archive structure or an entry's content could not be read."""

    kind = "corrupt_archive"


class WriteError(ExtractError):
    """Writing extracted content to the target directory failed."""

    kind = "write"


class ExtractionCancelledError(ExtractError):
    """Extraction stopped between two entries because the pass was cancelled."""

    kind = "cancelled"


class EntryRejectedError(NauticaError):
    """An archive entry name is unsafe or empty after normalization."""

    kind = "entry_rejected"

    def __init__(self, message: str, raw_name: bytes = b""):
        super().__init__(message)
        self.raw_name = raw_name


class StoreError(NauticaError):
    """The state store failed to read or persist a record."""

    kind = "store"
