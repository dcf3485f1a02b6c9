"""Curation Selector - the working selection behind a book export.

The selector tracks an ordered, duplicate-free list of item references for
one owner, plus the layout they should be rendered with. It lives only in
working memory; ``snapshot`` produces the frozen ``Selection`` that an
export job consumes.

Example:
    >>> selector = CurationSelector(store)
    >>> selector.add("baby", ItemRef(kind=ItemKind.MEMORY, id="m1"))
    >>> selector.add("baby", ItemRef(kind=ItemKind.MILESTONE, id="k1"))
    >>> selector.reorder([ItemRef(kind=ItemKind.MILESTONE, id="k1"),
    ...                   ItemRef(kind=ItemKind.MEMORY, id="m1")])
    >>> selection = selector.snapshot()
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable

from kaia.core.errors import (
    DuplicateItemError,
    InvalidPermutationError,
    KindMismatchError,
    NotFoundError,
    OwnerMismatchError,
)
from kaia.core.models import ItemRef, LayoutStyle, Selection
from kaia.core.store import RecordStore

logger = logging.getLogger(__name__)


class CurationSelector:
    """Mutable, order-significant selection of one owner's timeline items.

    All mutations run under the selector's lock, so a selection shared by
    several threads of one session never loses an update.
    """

    def __init__(self, store: RecordStore, layout: LayoutStyle | None = None) -> None:
        self._store = store
        self._lock = threading.RLock()
        self._default_layout = layout or LayoutStyle()
        self._owner_id: str | None = None
        self._refs: list[ItemRef] = []
        self._layout = self._default_layout

    @property
    def owner_person_id(self) -> str | None:
        return self._owner_id

    @property
    def refs(self) -> tuple[ItemRef, ...]:
        with self._lock:
            return tuple(self._refs)

    @property
    def layout(self) -> LayoutStyle:
        return self._layout

    def __len__(self) -> int:
        with self._lock:
            return len(self._refs)

    def __contains__(self, item_ref: object) -> bool:
        with self._lock:
            return item_ref in self._refs

    def add(self, owner_id: str, item_ref: ItemRef) -> None:
        """Append a reference to the end of the selection.

        Args:
            owner_id: Owner of the timeline the item was picked from.
            item_ref: The item to select.

        Raises:
            DuplicateItemError: If the reference is already selected.
            OwnerMismatchError: If the selection or the item belongs to another owner.
            NotFoundError: If the item does not exist in the store.
            KindMismatchError: If the stored item is of the other variant.
        """
        with self._lock:
            if self._owner_id is not None and owner_id != self._owner_id:
                raise OwnerMismatchError(self._owner_id, owner_id)
            if item_ref in self._refs:
                raise DuplicateItemError(item_ref)

            item = self._store.get(item_ref.id)
            if item.item_kind != item_ref.kind:
                raise KindMismatchError(item_ref.id, expected=item.item_kind, actual=item_ref.kind)
            if item.owner_person_id != owner_id:
                raise OwnerMismatchError(owner_id, item.owner_person_id)

            self._owner_id = owner_id
            self._refs.append(item_ref)

    def remove(self, item_ref: ItemRef) -> None:
        """Drop a reference; removing an absent reference does nothing."""
        with self._lock:
            if item_ref in self._refs:
                self._refs.remove(item_ref)
            if not self._refs:
                self._owner_id = None

    def reorder(self, new_order: Iterable[ItemRef]) -> None:
        """Replace the selection order.

        The new order must contain every selected reference exactly once and
        nothing else. Validation completes before anything changes.

        Raises:
            InvalidPermutationError: If ``new_order`` is not a permutation of
                the current selection. The selection is left unchanged.
        """
        proposed = list(new_order)
        with self._lock:
            current = set(self._refs)
            seen: set[ItemRef] = set()
            repeated = set()
            for ref in proposed:
                if ref in seen:
                    repeated.add(ref)
                seen.add(ref)

            missing = frozenset(current - seen)
            extra = frozenset((seen - current) | repeated)
            if missing or extra:
                raise InvalidPermutationError(missing=missing, extra=extra)

            self._refs = proposed

    def set_layout(self, style: LayoutStyle) -> None:
        with self._lock:
            self._layout = style

    def reset(self) -> None:
        """Clear the selection and restore the default layout."""
        with self._lock:
            self._owner_id = None
            self._refs = []
            self._layout = self._default_layout

    def snapshot(self) -> Selection:
        """Take a frozen, deep copy of the selection.

        Item records are copied out of the store at this instant. References
        whose items have since been deleted, or moved to another owner, are
        left out.

        Raises:
            ValueError: If nothing is selected, or every selected item has been deleted.
        """
        with self._lock:
            if not self._refs:
                raise ValueError("Cannot snapshot an empty selection")

            refs = []
            items = []
            for ref in self._refs:
                try:
                    item = self._store.get(ref.id)
                except NotFoundError:
                    logger.debug(f"Skipping deleted item {ref} in snapshot")
                    continue
                if item.owner_person_id != self._owner_id:
                    logger.debug(f"Skipping {ref} in snapshot, it moved to {item.owner_person_id}")
                    continue
                refs.append(ref)
                items.append(item.model_copy(deep=True))

            if not items:
                raise ValueError("Every selected item has been deleted")

            return Selection(
                owner_person_id=self._owner_id,
                ordered_item_refs=tuple(refs),
                layout_style=self._layout.model_copy(deep=True),
                items=tuple(items),
            )
