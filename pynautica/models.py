"""Data models for the Nautica catalog."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from .utils import format_timestamp, parse_catalog_timestamp


@dataclass(frozen=True)
class CatalogItem:
    """A downloadable item listed by the remote catalog.

    Immutable once fetched for a sync pass.
    """

    id: str
    """Catalog id (also the name of the item's directory under the target)"""

    updated_at: datetime
    """Last upload time of the item (aware, UTC)"""

    download_url: str
    """URL of the item archive"""

    display_name: str
    """Human readable name used in output"""

    title: str = ""
    artist: str = ""
    user_id: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict[str, Any], base_url: str) -> "CatalogItem":
        """Create a CatalogItem from a catalog JSON row.

        Args:
            data: Song object from the ``/app/songs`` listing
            base_url: Server base URL used to build the download URL

        Returns:
            CatalogItem instance

        Raises:
            KeyError: If ``id`` or ``uploaded_at`` is missing
            ValueError: If ``uploaded_at`` cannot be parsed or ``id`` is not
                a plain directory name
        """
        item_id = str(data["id"])
        # The id names the item directory under the target
        if not item_id or item_id.startswith(".") or "/" in item_id or "\\" in item_id:
            raise ValueError(f"Unusable catalog id: {item_id!r}")
        title = data.get("title") or ""
        artist = data.get("artist") or ""
        if title and artist:
            display_name = f"{artist} - {title}"
        else:
            display_name = title or artist or item_id

        user_id = data.get("user_id")
        return cls(
            id=item_id,
            updated_at=parse_catalog_timestamp(data["uploaded_at"]),
            download_url=f"{base_url.rstrip('/')}/songs/{item_id}/download",
            display_name=display_name,
            title=title,
            artist=artist,
            user_id=str(user_id) if user_id is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert item to a JSON-serializable dictionary."""
        return {
            "id": self.id,
            "display_name": self.display_name,
            "updated_at": format_timestamp(self.updated_at),
            "download_url": self.download_url,
        }


@dataclass
class CatalogPage:
    """One page of the paginated catalog listing."""

    items: list[CatalogItem]
    next_url: Optional[str]
    skipped: int = 0
    """Rows that could not be parsed"""
