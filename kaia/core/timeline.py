"""Timeline Aggregator - merged, paginated views over one owner's items.

The aggregator merges an owner's Memory and Milestone records into a single
strictly ordered feed and hands it out page by page. It only reads from the
Record Store; it never copies or mutates item data.

Ordering:
- Memories sort by ``created_at``, milestones by ``date`` (00:00 UTC).
- Newest first by default, oldest first for chronological-asc timelines.
- Equal sort keys are broken by id, ascending, in both directions.

Pagination:
- Filters are applied before pagination so page boundaries are stable.
- The cursor is an opaque token holding the last-seen (sort key, id) pair.
  Resumption compares against that boundary value rather than looking the
  row up, so deleting the row a cursor points at does not break paging.
- An exhausted timeline yields an empty page with no next cursor.

Example:
    >>> aggregator = TimelineAggregator(store)
    >>> page = aggregator.page("baby", page_size=10)
    >>> while page.next_cursor:
    ...     page = aggregator.page("baby", cursor=page.next_cursor, page_size=10)
"""

from __future__ import annotations

import base64
import binascii
import datetime as dt
import json
import uuid
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field

from kaia.config import TimelineConfig, get_config
from kaia.core.errors import InvalidCursorError
from kaia.core.models import (
    ItemKind,
    MemoryItem,
    MemoryKind,
    MilestoneItem,
    SortOrder,
    Timeline,
    TimelineItem,
)
from kaia.core.store import RecordStore


# =============================================================================
# Models
# =============================================================================


class TimelineFilter(BaseModel):
    """Predicate applied to a timeline before pagination.

    Every criterion left unset matches everything.

    Attributes:
        kinds: Keep only these item variants.
        memory_kinds: Keep only memories of these content kinds (milestones pass).
        tags: Keep items carrying at least one of these tags.
        start: Earliest calendar date (UTC, inclusive).
        end: Latest calendar date (UTC, inclusive).
    """

    model_config = ConfigDict(frozen=True)

    kinds: frozenset[ItemKind] | None = None
    memory_kinds: frozenset[MemoryKind] | None = None
    tags: frozenset[str] | None = None
    start: dt.date | None = None
    end: dt.date | None = None

    def matches(self, item: MemoryItem | MilestoneItem) -> bool:
        if self.kinds and item.item_kind not in self.kinds:
            return False
        if self.memory_kinds and isinstance(item, MemoryItem):
            if item.kind not in self.memory_kinds:
                return False
        if self.tags and not (item.tags & self.tags):
            return False
        day = item.sort_key.astimezone(dt.timezone.utc).date()
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        return True


class TimelinePage(BaseModel):
    """One page of a timeline.

    Attributes:
        items: Items in timeline order.
        next_cursor: Token for the following page, or None when exhausted.
        invalid_item_ids: Ids of items on this page whose media references
            do not resolve. They are flagged, not dropped.
    """

    model_config = ConfigDict(frozen=True)

    items: tuple[TimelineItem, ...] = ()
    next_cursor: str | None = None
    invalid_item_ids: frozenset[str] = Field(default_factory=frozenset)

    @property
    def ids(self) -> list[str]:
        return [item.id for item in self.items]


# =============================================================================
# Cursor
# =============================================================================


def encode_cursor(sort_key: dt.datetime, item_id: str, order: SortOrder) -> str:
    """Encode a resume boundary as an opaque URL-safe token."""
    payload = {"k": sort_key.isoformat(), "i": item_id, "o": order.value}
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> tuple[dt.datetime, str, SortOrder]:
    """Decode a token produced by ``encode_cursor``.

    Raises:
        InvalidCursorError: If the token is malformed.
    """
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        sort_key = dt.datetime.fromisoformat(payload["k"])
        item_id = payload["i"]
        order = SortOrder(payload["o"])
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as e:
        raise InvalidCursorError(f"Malformed timeline cursor: {cursor!r}") from e

    if not isinstance(item_id, str) or sort_key.tzinfo is None:
        raise InvalidCursorError(f"Malformed timeline cursor: {cursor!r}")
    return sort_key, item_id, order


def _is_after(
    item: MemoryItem | MilestoneItem,
    boundary: tuple[dt.datetime, str],
    order: SortOrder,
) -> bool:
    """True if ``item`` comes strictly after ``boundary`` in ``order``."""
    key, item_id = boundary
    if item.sort_key == key:
        return item.id > item_id
    if order == SortOrder.CHRONOLOGICAL_DESC:
        return item.sort_key < key
    return item.sort_key > key


def merge_order(
    items: Iterable[MemoryItem | MilestoneItem], order: SortOrder
) -> list[MemoryItem | MilestoneItem]:
    """Sort items into timeline order: sort key in ``order``, ties by ascending id."""
    # Two stable passes: id ascending first, then sort key in the requested direction
    ordered = sorted(items, key=lambda item: item.id)
    ordered.sort(key=lambda item: item.sort_key, reverse=order == SortOrder.CHRONOLOGICAL_DESC)
    return ordered


# =============================================================================
# Aggregator
# =============================================================================


class TimelineAggregator:
    """Read-only, paginated merge of an owner's memories and milestones.

    Safe to call concurrently with itself and with store writes.
    """

    def __init__(self, store: RecordStore, config: TimelineConfig | None = None) -> None:
        self._store = store
        self._config = config

    def open_timeline(
        self,
        owner_id: str,
        sort_order: SortOrder = SortOrder.CHRONOLOGICAL_DESC,
    ) -> Timeline:
        """Create a timeline view for ``owner_id``."""
        return Timeline(id=str(uuid.uuid4()), owner_person_id=owner_id, sort_order=sort_order)

    def page_timeline(
        self,
        timeline: Timeline,
        cursor: str | None = None,
        page_size: int | None = None,
        filter: TimelineFilter | None = None,
    ) -> TimelinePage:
        """Page a timeline view in its own sort order."""
        return self.page(
            timeline.owner_person_id,
            cursor=cursor,
            page_size=page_size,
            filter=filter,
            sort_order=timeline.sort_order,
        )

    def page(
        self,
        owner_id: str,
        cursor: str | None = None,
        page_size: int | None = None,
        filter: TimelineFilter | None = None,
        sort_order: SortOrder = SortOrder.CHRONOLOGICAL_DESC,
    ) -> TimelinePage:
        """Return one page of the owner's merged timeline.

        Args:
            owner_id: Whose timeline to page.
            cursor: Token from a previous page's ``next_cursor``; None for the first page.
            page_size: Items per page; defaults to ``timeline.default_page_size``.
            filter: Optional predicate applied before pagination.
            sort_order: Newest first (default) or oldest first.

        Returns:
            The page, with ``next_cursor`` set only if more items follow.

        Raises:
            ValueError: If page_size is outside 1..timeline.max_page_size.
            InvalidCursorError: If the cursor is malformed or was issued for the
                other sort order.
        """
        settings = self._config or get_config().timeline
        if page_size is None:
            page_size = settings.default_page_size
        if not 1 <= page_size <= settings.max_page_size:
            raise ValueError(
                f"page_size must be between 1 and {settings.max_page_size}, got {page_size}"
            )

        boundary: tuple[dt.datetime, str] | None = None
        if cursor is not None:
            key, item_id, cursor_order = decode_cursor(cursor)
            if cursor_order != sort_order:
                raise InvalidCursorError(
                    f"Cursor was issued for {cursor_order.value}, not {sort_order.value}"
                )
            boundary = (key, item_id)

        items = self._store.scan_by_owner_since(owner_id)
        if filter is not None:
            items = [item for item in items if filter.matches(item)]
        ordered = merge_order(items, sort_order)
        if boundary is not None:
            ordered = [item for item in ordered if _is_after(item, boundary, sort_order)]

        page_items = ordered[:page_size]
        next_cursor = None
        if len(ordered) > page_size:
            last = page_items[-1]
            next_cursor = encode_cursor(last.sort_key, last.id, sort_order)

        invalid = frozenset(
            item.id for item in page_items if self._store.unresolved_media(item)
        )
        return TimelinePage(items=tuple(page_items), next_cursor=next_cursor, invalid_item_ids=invalid)
