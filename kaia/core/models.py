"""Core data model for the Kaia timeline engine.

This module defines the records that flow through the engine:

- ``MediaAssetRef``: an opaque pointer to a captured photo, video or audio clip.
- ``MemoryItem`` and ``MilestoneItem``: the two variants of a timeline item.
- ``ItemRef``: a hashable ``(kind, id)`` reference to a timeline item.
- ``Timeline``: an ordered, paginated view over one owner's items.
- ``LayoutStyle`` and ``Selection``: a curated, ordered subset destined for export.
- ``ExportJob``: the lifecycle record of one export.

Every model is frozen. Edits are expressed by building a new record with the
same id and putting it into the store, never by mutating a record in place.
All datetimes are timezone-aware; naive values are interpreted as UTC.

Example:
    >>> from datetime import date, datetime, timezone
    >>> memory = MemoryItem(
    ...     id="m1",
    ...     owner_person_id="baby",
    ...     author_person_id="mom",
    ...     created_at=datetime(2025, 11, 1, 9, 30, tzinfo=timezone.utc),
    ...     kind=MemoryKind.TEXT,
    ...     text="First smile",
    ... )
    >>> milestone = MilestoneItem(
    ...     id="k1", owner_person_id="baby", date=date(2025, 11, 2), title="First steps"
    ... )
    >>> milestone.sort_key > memory.sort_key
    True
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# Enums
# =============================================================================


class ItemKind(str, Enum):
    """The two variants of a timeline item.

    Attributes:
        MEMORY: Free-form journal entry.
        MILESTONE: Dated, titled notable event.
    """

    MEMORY = "memory"
    MILESTONE = "milestone"


class MemoryKind(str, Enum):
    """Content kind of a Memory."""

    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"
    MIXED = "mixed"


class MediaKind(str, Enum):
    """Kind of a captured media asset."""

    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"


class SortOrder(str, Enum):
    """Ordering of a timeline.

    Attributes:
        CHRONOLOGICAL_ASC: Oldest first.
        CHRONOLOGICAL_DESC: Newest first (the default).
    """

    CHRONOLOGICAL_ASC = "chronological-asc"
    CHRONOLOGICAL_DESC = "chronological-desc"


class ExportState(str, Enum):
    """Lifecycle states of an export job.

    ``queued -> rendering -> {succeeded | failed}``. SUCCEEDED and FAILED are
    terminal; a queued job that is cancelled ends in FAILED.
    """

    QUEUED = "queued"
    RENDERING = "rendering"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExportState.SUCCEEDED, ExportState.FAILED)


# =============================================================================
# Helpers
# =============================================================================


def ensure_aware(value: dt.datetime) -> dt.datetime:
    """Return ``value`` with UTC attached if it is naive."""
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# =============================================================================
# Records
# =============================================================================


class MediaAssetRef(_Frozen):
    """Opaque reference to a media blob owned by the media subsystem.

    The engine keeps only the identifier and creation time; it never
    inspects or stores the blob itself.

    Attributes:
        id: Globally unique asset identifier.
        kind: Photo, video or audio.
        created_at: When the asset was captured.
    """

    id: str = Field(min_length=1)
    kind: MediaKind
    created_at: dt.datetime

    @field_validator("created_at")
    @classmethod
    def _aware(cls, v: dt.datetime) -> dt.datetime:
        return ensure_aware(v)


class ItemRef(_Frozen):
    """Hashable reference to a timeline item.

    Attributes:
        kind: Which variant the referenced item is.
        id: The item's identifier.
    """

    kind: ItemKind
    id: str = Field(min_length=1)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"

    @classmethod
    def parse(cls, text: str) -> "ItemRef":
        """Parse ``"memory:m1"`` or ``"milestone:k1"``.

        Raises:
            ValueError: If the text has no ``kind:`` prefix or the kind is unknown.
        """
        kind, sep, item_id = text.partition(":")
        if not sep or not item_id:
            raise ValueError(f"Expected 'kind:id', got {text!r}")
        return cls(kind=ItemKind(kind.strip().lower()), id=item_id.strip())


class MemoryItem(_Frozen):
    """A free-form journal entry.

    Attributes:
        id: Unique across both item variants.
        owner_person_id: Whose timeline the memory belongs to.
        created_at: Capture time; the memory's sort key.
        kind: Content kind.
        text: Optional body text.
        media_asset_ids: Attached media assets.
        author_person_id: Who wrote the entry.
        tags: Free-form labels used by timeline filters.
    """

    item_type: Literal["memory"] = "memory"
    id: str = Field(min_length=1)
    owner_person_id: str = Field(min_length=1)
    created_at: dt.datetime
    kind: MemoryKind = MemoryKind.TEXT
    text: str | None = None
    media_asset_ids: frozenset[str] = frozenset()
    author_person_id: str = Field(min_length=1)
    tags: frozenset[str] = frozenset()

    @field_validator("created_at")
    @classmethod
    def _aware(cls, v: dt.datetime) -> dt.datetime:
        return ensure_aware(v)

    @property
    def item_kind(self) -> ItemKind:
        return ItemKind.MEMORY

    @property
    def sort_key(self) -> dt.datetime:
        return self.created_at

    @property
    def ref(self) -> ItemRef:
        return ItemRef(kind=ItemKind.MEMORY, id=self.id)


class MilestoneItem(_Frozen):
    """A dated, titled notable event.

    A milestone carries a calendar date rather than a timestamp; it sorts at
    00:00 UTC of that date.
    """

    item_type: Literal["milestone"] = "milestone"
    id: str = Field(min_length=1)
    owner_person_id: str = Field(min_length=1)
    date: dt.date
    title: str
    notes: str | None = None
    media_asset_ids: frozenset[str] = frozenset()
    tags: frozenset[str] = frozenset()

    @property
    def item_kind(self) -> ItemKind:
        return ItemKind.MILESTONE

    @property
    def sort_key(self) -> dt.datetime:
        return dt.datetime.combine(self.date, dt.time.min, tzinfo=dt.timezone.utc)

    @property
    def ref(self) -> ItemRef:
        return ItemRef(kind=ItemKind.MILESTONE, id=self.id)


TimelineItem = Annotated[Union[MemoryItem, MilestoneItem], Field(discriminator="item_type")]


class Timeline(_Frozen):
    """A view over one owner's items.

    A timeline never copies item data; it only names whose items to order
    and in which direction.
    """

    id: str = Field(min_length=1)
    owner_person_id: str = Field(min_length=1)
    sort_order: SortOrder = SortOrder.CHRONOLOGICAL_DESC


# =============================================================================
# Curation & Export
# =============================================================================


class LayoutStyle(_Frozen):
    """Layout parameters attached to a selection.

    Structural checks (known template, page capacity) happen at render time,
    so an unusable layout fails the export job instead of the caller.

    Attributes:
        template: Book template name understood by the renderer.
        items_per_page: How many items share one page.
        show_captions: Whether memory text and milestone notes are printed.
        title: Optional book title.
    """

    template: str = "classic"
    items_per_page: int = 1
    show_captions: bool = True
    title: str | None = None


class Selection(_Frozen):
    """An ordered, duplicate-free subset of one owner's timeline.

    Export page order is ``ordered_item_refs`` order, not creation order.
    ``items`` holds the frozen item records captured when the snapshot was
    taken, aligned with ``ordered_item_refs``: ``items[i].ref`` is always
    ``ordered_item_refs[i]`` and every item belongs to ``owner_person_id``.
    """

    owner_person_id: str
    ordered_item_refs: tuple[ItemRef, ...] = ()
    layout_style: LayoutStyle = Field(default_factory=LayoutStyle)
    items: tuple[TimelineItem, ...] = ()

    @model_validator(mode="after")
    def _consistent(self) -> "Selection":
        if len(set(self.ordered_item_refs)) != len(self.ordered_item_refs):
            raise ValueError("ordered_item_refs must not contain duplicates")
        if len(self.items) != len(self.ordered_item_refs):
            raise ValueError(
                f"Selection has {len(self.ordered_item_refs)} refs "
                f"but {len(self.items)} item records"
            )
        for ref, item in zip(self.ordered_item_refs, self.items):
            if item.ref != ref:
                raise ValueError(f"Item record {item.ref} does not match ref {ref}")
            if item.owner_person_id != self.owner_person_id:
                raise ValueError(
                    f"Item {ref} belongs to {item.owner_person_id}, not {self.owner_person_id}"
                )
        return self

    def media_asset_ids(self) -> list[str]:
        """All media asset ids referenced by the snapshot, in selection order."""
        seen: dict[str, None] = {}
        for item in self.items:
            for asset_id in sorted(item.media_asset_ids):
                seen.setdefault(asset_id, None)
        return list(seen)


class ExportErrorDetail(_Frozen):
    """Why an export job failed.

    Attributes:
        code: "UnresolvedReference", "LayoutValidationError", "Canceled",
            "RenderFailed", or a code reported verbatim by the renderer.
        message: Human-readable explanation.
        references: Identifiers the failure concerns.
    """

    code: str
    message: str
    references: tuple[str, ...] = ()


class ExportArtifact(_Frozen):
    """Handle to a rendered export returned by the renderer."""

    job_id: str
    location: str
    page_count: int
    item_count: int


class ExportJob(_Frozen):
    """Lifecycle record of one export.

    ``selection_snapshot`` is a frozen copy taken at submission; later store
    edits or deletions never reach it.
    """

    id: str
    owner_person_id: str
    selection_snapshot: Selection
    state: ExportState = ExportState.QUEUED
    created_at: dt.datetime = Field(default_factory=utc_now)
    started_at: dt.datetime | None = None
    completed_at: dt.datetime | None = None
    error_detail: ExportErrorDetail | None = None
    artifact: ExportArtifact | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal
