"""Core data model and error taxonomy for Kaia.

The engine components live in their own modules:

- ``kaia.core.store``: Record Store
- ``kaia.core.timeline``: Timeline Aggregator
- ``kaia.core.curation``: Curation Selector

Example:
    >>> from kaia.core import ItemKind, ItemRef, MemoryItem, MilestoneItem
"""

from kaia.core.errors import (
    DuplicateItemError,
    InvalidCursorError,
    InvalidPermutationError,
    KaiaError,
    KindMismatchError,
    NotCancelableError,
    NotFoundError,
    OwnerMismatchError,
    RenderFailure,
)
from kaia.core.models import (
    ExportArtifact,
    ExportErrorDetail,
    ExportJob,
    ExportState,
    ItemKind,
    ItemRef,
    LayoutStyle,
    MediaAssetRef,
    MediaKind,
    MemoryItem,
    MemoryKind,
    MilestoneItem,
    Selection,
    SortOrder,
    Timeline,
    TimelineItem,
)

__all__ = [
    # Models
    "ExportArtifact",
    "ExportErrorDetail",
    "ExportJob",
    "ExportState",
    "ItemKind",
    "ItemRef",
    "LayoutStyle",
    "MediaAssetRef",
    "MediaKind",
    "MemoryItem",
    "MemoryKind",
    "MilestoneItem",
    "Selection",
    "SortOrder",
    "Timeline",
    "TimelineItem",
    # Errors
    "DuplicateItemError",
    "InvalidCursorError",
    "InvalidPermutationError",
    "KaiaError",
    "KindMismatchError",
    "NotCancelableError",
    "NotFoundError",
    "OwnerMismatchError",
    "RenderFailure",
]
