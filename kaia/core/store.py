"""Record Store - typed, identity-keyed storage for timeline records.

The store holds Memory and Milestone items keyed by id, plus the media asset
references they point at. It supports point lookups and owner-scoped range
scans ordered by each item's sort key.

Identity rules:
- An id names exactly one item across both variants.
- ``put`` is an upsert; replacing an item with a different variant fails with
  ``KindMismatchError``. Deleted ids keep their kind as a tombstone, so the
  rule holds after deletion too.
- Every mutation is recorded as a tagged operation (insert, replace, delete)
  in an append-only history.

Concurrency:
- Mutations are serialized per owner.
- Scans snapshot the owner's id index and then fetch each id; an id that
  vanishes between the two steps is skipped.

Example:
    >>> store = RecordStore()
    >>> store.put_media(MediaAssetRef(id="a1", kind=MediaKind.PHOTO, created_at=now))
    >>> store.put(memory)
    >>> store.scan_by_owner_since("baby", since=None, limit=10)
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import threading
from collections import defaultdict
from enum import Enum
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from kaia.core.errors import KindMismatchError, NotFoundError
from kaia.core.models import (
    ItemKind,
    MediaAssetRef,
    MemoryItem,
    MilestoneItem,
    TimelineItem,
    utc_now,
)

logger = logging.getLogger(__name__)

_ITEM_ADAPTER: TypeAdapter[MemoryItem | MilestoneItem] = TypeAdapter(TimelineItem)


class OperationType(str, Enum):
    """Tag of a recorded store mutation."""

    INSERT = "insert"
    REPLACE = "replace"
    DELETE = "delete"


class StoreOperation(BaseModel):
    """One entry of the store's mutation history.

    Attributes:
        op: Insert, replace or delete.
        item_id: The affected item.
        kind: The item's variant.
        owner_person_id: The affected item's owner.
        at: When the mutation was applied.
    """

    model_config = ConfigDict(frozen=True)

    op: OperationType
    item_id: str
    kind: ItemKind
    owner_person_id: str
    at: dt.datetime = Field(default_factory=utc_now)


def sort_position(item: MemoryItem | MilestoneItem) -> tuple[dt.datetime, str]:
    """Total ordering key of an item: its sort key, then its id."""
    return (item.sort_key, item.id)


class RecordStore:
    """In-memory record store for timeline items and media asset references.

    Attributes:
        item_count: Number of live (non-deleted) items.
    """

    def __init__(
        self,
        items: Iterable[MemoryItem | MilestoneItem] | None = None,
        media: Iterable[MediaAssetRef] | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._owner_locks: dict[str, threading.RLock] = defaultdict(threading.RLock)
        self._items: dict[str, MemoryItem | MilestoneItem] = {}
        self._tombstones: dict[str, ItemKind] = {}
        self._owner_index: dict[str, set[str]] = defaultdict(set)
        self._media: dict[str, MediaAssetRef] = {}
        self._history: list[StoreOperation] = []

        for asset in media or []:
            self.put_media(asset)
        for item in items or []:
            self.put(item)

    # =========================================================================
    # Items
    # =========================================================================

    def _owner_lock(self, owner_id: str) -> threading.RLock:
        with self._lock:
            return self._owner_locks[owner_id]

    def put(self, item: MemoryItem | MilestoneItem) -> OperationType:
        """Insert or replace an item by id.

        Args:
            item: The Memory or Milestone to store.

        Returns:
            INSERT for a new id, REPLACE when an existing item was overwritten.

        Raises:
            KindMismatchError: If the id already names an item of the other variant,
                live or deleted.
        """
        with self._owner_lock(item.owner_person_id), self._lock:
            existing = self._items.get(item.id)
            known_kind = existing.item_kind if existing is not None else self._tombstones.get(item.id)
            if known_kind is not None and known_kind != item.item_kind:
                raise KindMismatchError(item.id, expected=known_kind, actual=item.item_kind)

            if existing is not None and existing.owner_person_id != item.owner_person_id:
                self._owner_index[existing.owner_person_id].discard(item.id)

            op = OperationType.REPLACE if existing is not None else OperationType.INSERT
            self._items[item.id] = item
            self._tombstones.pop(item.id, None)
            self._owner_index[item.owner_person_id].add(item.id)
            self._record(op, item)

        logger.debug(f"{op.value} {item.item_kind.value} {item.id}")
        return op

    def get(self, item_id: str) -> MemoryItem | MilestoneItem:
        """Look up a live item.

        Raises:
            NotFoundError: If the id is unknown or deleted.
        """
        with self._lock:
            item = self._items.get(item_id)
        if item is None:
            raise NotFoundError(item_id)
        return item

    def delete(self, item_id: str) -> None:
        """Delete an item, leaving a tombstone that remembers its kind.

        Raises:
            NotFoundError: If the id is unknown or already deleted.
        """
        item = self.get(item_id)
        with self._owner_lock(item.owner_person_id), self._lock:
            current = self._items.pop(item_id, None)
            if current is None:
                raise NotFoundError(item_id)
            self._tombstones[item_id] = current.item_kind
            self._owner_index[current.owner_person_id].discard(item_id)
            self._record(OperationType.DELETE, current)

        logger.debug(f"delete {current.item_kind.value} {item_id}")

    def contains(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._items

    def is_deleted(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._tombstones

    def scan_by_owner_since(
        self,
        owner_id: str,
        since: dt.datetime | None = None,
        limit: int | None = None,
    ) -> list[MemoryItem | MilestoneItem]:
        """Scan an owner's live items in ascending sort-key order.

        Args:
            owner_id: Whose items to scan.
            since: Only return items whose sort key is at or after this instant.
            limit: Maximum number of items to return; None for all.

        Returns:
            Items ordered by (sort key, id), without deleted or repeated ids.

        Raises:
            ValueError: If limit is not positive.
        """
        if limit is not None and limit < 1:
            raise ValueError(f"limit must be positive, got {limit}")

        with self._lock:
            item_ids = list(self._owner_index.get(owner_id, ()))

        items = []
        for item_id in item_ids:
            try:
                item = self.get(item_id)
            except NotFoundError:
                # Deleted between index snapshot and fetch
                continue
            if item.owner_person_id != owner_id:
                continue
            items.append(item)

        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=dt.timezone.utc)
            items = [item for item in items if item.sort_key >= since]

        items.sort(key=sort_position)
        return items if limit is None else items[:limit]

    def owners(self) -> list[str]:
        with self._lock:
            return sorted(owner for owner, ids in self._owner_index.items() if ids)

    @property
    def item_count(self) -> int:
        with self._lock:
            return len(self._items)

    def history(self, item_id: str | None = None) -> list[StoreOperation]:
        """Return recorded mutations, optionally only those for one item."""
        with self._lock:
            if item_id is None:
                return list(self._history)
            return [op for op in self._history if op.item_id == item_id]

    def _record(self, op: OperationType, item: MemoryItem | MilestoneItem) -> None:
        self._history.append(
            StoreOperation(
                op=op,
                item_id=item.id,
                kind=item.item_kind,
                owner_person_id=item.owner_person_id,
            )
        )

    # =========================================================================
    # Media
    # =========================================================================

    def put_media(self, asset: MediaAssetRef) -> None:
        with self._lock:
            self._media[asset.id] = asset

    def get_media(self, asset_id: str) -> MediaAssetRef:
        """Look up a media asset reference.

        Raises:
            NotFoundError: If the asset is unknown.
        """
        with self._lock:
            asset = self._media.get(asset_id)
        if asset is None:
            raise NotFoundError(asset_id, what="media asset")
        return asset

    def has_media(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._media

    def unresolved_media(self, item: MemoryItem | MilestoneItem) -> frozenset[str]:
        """Media asset ids of ``item`` that the store does not know."""
        with self._lock:
            return frozenset(a for a in item.media_asset_ids if a not in self._media)

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_json(self, path: Path | None = None) -> str:
        """Export live items and media references to JSON.

        Args:
            path: Optional file path to write to.

        Returns:
            JSON string.
        """
        with self._lock:
            items = sorted(self._items.values(), key=sort_position)
            media = sorted(self._media.values(), key=lambda a: (a.created_at, a.id))

        data = {
            "media": [asset.model_dump(mode="json") for asset in media],
            "items": [item.model_dump(mode="json") for item in items],
        }
        json_str = json.dumps(data, indent=2, default=str)

        if path:
            path.write_text(json_str, encoding="utf-8")

        return json_str

    @classmethod
    def from_json(cls, data: str | Path) -> "RecordStore":
        """Load a store from a JSON string or file written by ``to_json``."""
        if isinstance(data, Path):
            json_data = json.loads(data.read_text(encoding="utf-8"))
        else:
            json_data = json.loads(data)

        media = [MediaAssetRef.model_validate(m) for m in json_data.get("media", [])]
        items = [_ITEM_ADAPTER.validate_python(i) for i in json_data.get("items", [])]
        return cls(items=items, media=media)
