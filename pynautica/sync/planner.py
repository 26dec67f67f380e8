"""Change detection between the remote catalog and the local sync state."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from ..models import CatalogItem
from .state import StateStore


class ItemStatus(str, Enum):
    """Classification of a catalog item for one sync pass."""

    NEW = "new"
    """No sync record exists"""

    UPDATED = "updated"
    """The catalog has content newer than the last sync"""

    UNCHANGED = "unchanged"
    """Synced at or after the item's last update"""


@dataclass
class ChangeSet:
    """Items to process in one sync pass, in processing order."""

    new: list[CatalogItem] = field(default_factory=list)
    updated: list[CatalogItem] = field(default_factory=list)
    unchanged_count: int = 0

    @property
    def items(self) -> list[CatalogItem]:
        """All items to process: new items first, then updated ones."""
        return self.new + self.updated

    @property
    def is_empty(self) -> bool:
        return not self.new and not self.updated

    def to_dict(self) -> dict:
        """Convert change set to a JSON-serializable dictionary."""
        return {
            "new": [item.to_dict() for item in self.new],
            "updated": [item.to_dict() for item in self.updated],
            "unchanged": self.unchanged_count,
        }


def _order_key(item: CatalogItem) -> tuple:
    return (item.updated_at, item.id)


class SyncPlanner:
    """Compares a catalog snapshot against stored sync records.

    Planning only reads the store, so the same catalog and store contents
    always give the same ChangeSet.
    """

    def classify(self, item: CatalogItem, store: StateStore) -> ItemStatus:
        """Classify a single catalog item.

        Args:
            item: Catalog item
            store: State store to read

        Returns:
            ItemStatus for the item
        """
        record = store.get(item.id)
        if record is None:
            return ItemStatus.NEW
        # A strictly newer remote timestamp signals new content
        if record.last_synced_at < item.updated_at:
            return ItemStatus.UPDATED
        return ItemStatus.UNCHANGED

    def plan(self, catalog: Iterable[CatalogItem], store: StateStore) -> ChangeSet:
        """Compute the change set for a sync pass.

        Args:
            catalog: Catalog snapshot
            store: State store holding the last sync records

        Returns:
            ChangeSet with new and updated items ordered by (updated_at, id)
        """
        # Duplicate ids keep the most recently updated row
        latest: dict[str, CatalogItem] = {}
        for item in catalog:
            current = latest.get(item.id)
            if current is None or _order_key(current) < _order_key(item):
                latest[item.id] = item

        change_set = ChangeSet()
        for item in latest.values():
            status = self.classify(item, store)
            if status == ItemStatus.NEW:
                change_set.new.append(item)
            elif status == ItemStatus.UPDATED:
                change_set.updated.append(item)
            else:
                change_set.unchanged_count += 1

        change_set.new.sort(key=_order_key)
        change_set.updated.sort(key=_order_key)
        return change_set
