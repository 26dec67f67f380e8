"""API client for the Nautica song catalog."""

from __future__ import annotations

import logging
import random
import time
from pathlib import Path
from typing import Any, Callable, Iterator

import httpx

from .config import config
from .exceptions import (
    NauticaAPIError,
    NauticaDownloadError,
    NauticaInvalidResponseError,
    NauticaNetworkError,
    NauticaNotFoundError,
    NauticaRateLimitError,
)
from .models import CatalogItem, CatalogPage
from .utils import DEFAULT_CHUNK_SIZE

logger = logging.getLogger(__name__)

CATALOG_ENDPOINT = "/app/songs?sort=uploaded"


class NauticaClient:
    """Client for the Nautica catalog and archive downloads."""

    def __init__(
        self,
        base_url: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
    ):
        """Initialize Nautica API client.

        Args:
            base_url: Optional server URL (uses config if not provided)
            max_retries: Maximum number of retry attempts for catalog requests
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Request timeout in seconds for catalog requests
        """
        self.base_url = (base_url or config.base_url).rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout

        self._client: httpx.Client | None = None

    def __enter__(self) -> NauticaClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                headers={"Accept": "application/json"},
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    def _should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if a request should be retried.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number (0-based)

        Returns:
            True if the request should be retried, False otherwise
        """
        if attempt >= self.max_retries:
            return False

        if isinstance(exception, (NauticaNetworkError, NauticaRateLimitError)):
            return True

        return False

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds
        """
        base_delay = self.retry_delay * (2**attempt)
        # Jitter: +/- 25% of base delay
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    def _handle_http_error(
        self, e: httpx.HTTPStatusError, attempt: int
    ) -> tuple[Exception, bool]:
        """Map an HTTP error to a client exception.

        Args:
            e: The HTTP error exception
            attempt: Current attempt number

        Returns:
            Tuple of (exception to raise, should_retry)
        """
        status_code = e.response.status_code

        if status_code == 404:
            raise NauticaNotFoundError(f"Resource not found: {e.request.url}") from e
        if status_code == 429:
            error: Exception = NauticaRateLimitError(
                "Rate limit exceeded - please try again later"
            )
            return (error, attempt < self.max_retries)

        error = NauticaAPIError(f"API request failed with status {status_code}")
        should_retry = 500 <= status_code < 600 and attempt < self.max_retries
        return (error, should_retry)

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        """Make an API request with retry logic.

        Args:
            method: HTTP method
            url: Absolute URL or endpoint path relative to the base URL
            **kwargs: Additional arguments passed to httpx

        Returns:
            Response JSON data

        Raises:
            NauticaAPIError: If the request fails after all retries
        """
        if not url.startswith(("http://", "https://")):
            url = f"{self.base_url}/{url.lstrip('/')}"
        last_exception: Exception | None = None
        client = self._get_client()

        for attempt in range(self.max_retries + 1):
            try:
                response = client.request(method, url, **kwargs)
                response.raise_for_status()

                content_type = response.headers.get("Content-Type", "")
                if response.content and "json" not in content_type:
                    raise NauticaInvalidResponseError(
                        f"Unexpected response type: {content_type}"
                    )

                if response.content:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise NauticaInvalidResponseError(
                            "Invalid JSON response from server"
                        ) from e
                return {}

            except httpx.HTTPStatusError as e:
                error, should_retry = self._handle_http_error(e, attempt)
                last_exception = error

                if should_retry:
                    # Honour Retry-After for rate limits
                    retry_after = e.response.headers.get("Retry-After")
                    if (
                        isinstance(error, NauticaRateLimitError)
                        and retry_after
                        and retry_after.isdigit()
                    ):
                        delay = float(retry_after)
                    else:
                        delay = self._calculate_retry_delay(attempt)
                    logger.debug(
                        "Request to %s failed (%s), retrying in %.1fs",
                        url,
                        error,
                        delay,
                    )
                    time.sleep(delay)
                    continue
                raise error from e
            except NauticaAPIError:
                raise
            except httpx.RequestError as e:
                error = NauticaNetworkError(f"Network error: {e}")
                last_exception = error
                if self._should_retry(error, attempt):
                    delay = self._calculate_retry_delay(attempt)
                    logger.debug(f"Network error on {url}, retrying in {delay:.1f}s")
                    time.sleep(delay)
                    continue
                raise error from e

        if last_exception:
            raise last_exception
        raise NauticaAPIError("Request failed after all retry attempts")

    # =========================
    # Catalog Operations
    # =========================

    def get_catalog_page(self, url: str = CATALOG_ENDPOINT) -> CatalogPage:
        """Fetch and parse one page of the catalog.

        Args:
            url: Page URL (absolute, as given by ``links.next``, or an endpoint)

        Returns:
            CatalogPage with parsed items and the next page URL
        """
        data = self._request("GET", url)
        if not isinstance(data, dict) or not isinstance(data.get("data"), list):
            raise NauticaInvalidResponseError("Catalog response has no 'data' list")

        items: list[CatalogItem] = []
        skipped = 0
        for row in data["data"]:
            try:
                items.append(CatalogItem.from_api(row, self.base_url))
            except (KeyError, TypeError, ValueError) as e:
                skipped += 1
                logger.warning(f"Skipping malformed catalog row: {e}")

        links = data.get("links") or {}
        next_url = links.get("next") if isinstance(links, dict) else None
        return CatalogPage(items=items, next_url=next_url or None, skipped=skipped)

    def iter_catalog_pages(self) -> Iterator[CatalogPage]:
        """Iterate over all catalog pages by following ``links.next``."""
        url: str | None = CATALOG_ENDPOINT
        seen: set[str] = set()
        while url:
            if url in seen:
                logger.warning(f"Catalog pagination loops back to {url}, stopping")
                return
            seen.add(url)
            page = self.get_catalog_page(url)
            logger.debug(
                "Fetched catalog page with %d item(s), next=%s",
                len(page.items),
                page.next_url,
            )
            yield page
            url = page.next_url

    def list_items(self) -> list[CatalogItem]:
        """List every item in the catalog.

        Returns:
            All catalog items across all pages

        Raises:
            NauticaAPIError: If any page cannot be fetched
        """
        items: list[CatalogItem] = []
        for page in self.iter_catalog_pages():
            items.extend(page.items)
        return items

    # =========================
    # Download Operations
    # =========================

    def download_file(
        self,
        url: str,
        output_path: Path,
        timeout: float = 60.0,
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> Path:
        """Download an item archive to a local file.

        Args:
            url: Archive URL
            output_path: Path where the archive is written (truncated first)
            timeout: Request timeout in seconds (default: 60)
            progress_callback: Optional callback function(bytes_downloaded, total)

        Returns:
            Path where the file was saved

        Raises:
            NauticaDownloadError: If the server answers with an error status
            NauticaNetworkError: On transport errors and timeouts
        """
        client = self._get_client()

        try:
            with client.stream("GET", url, timeout=timeout) as response:
                response.raise_for_status()

                total_size = int(response.headers.get("Content-Length", 0) or 0)
                bytes_downloaded = 0

                with open(output_path, "wb") as f:
                    for chunk in response.iter_bytes(chunk_size=DEFAULT_CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            bytes_downloaded += len(chunk)
                            if progress_callback:
                                progress_callback(bytes_downloaded, total_size)

                return output_path

        except httpx.HTTPStatusError as e:
            raise NauticaDownloadError(
                f"Download failed with status {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise NauticaNetworkError(f"Network error during download: {e}") from e
