"""Kaia - a journaling engine for memories and milestones.

Merges an owner's memories and milestones into one ordered, paginated
timeline, and turns a curated, ordered selection of it into an exported book.

Quick Start:
    >>> from kaia import RecordStore, TimelineAggregator, CurationSelector, ExportJobManager
    >>> store = RecordStore(items=[memory, milestone])
    >>> page = TimelineAggregator(store).page("baby", page_size=10)
    >>> selector = CurationSelector(store)
    >>> for item in page.items:
    ...     selector.add("baby", item.ref)
    >>> with ExportJobManager(store.has_media) as manager:
    ...     job = manager.wait(manager.submit_from(selector))

CLI Usage:
    $ kaia timeline store.json --owner baby
    $ kaia export store.json --owner baby -i milestone:k1 -i memory:m1
"""

__version__ = "0.1.0"

from kaia.core.curation import CurationSelector
from kaia.core.models import (
    ExportJob,
    ExportState,
    ItemKind,
    ItemRef,
    LayoutStyle,
    MediaAssetRef,
    MemoryItem,
    MilestoneItem,
    Selection,
    SortOrder,
)
from kaia.core.store import RecordStore
from kaia.core.timeline import TimelineAggregator, TimelineFilter, TimelinePage
from kaia.export.jobs import ExportJobManager

__all__ = [
    "__version__",
    "CurationSelector",
    "ExportJob",
    "ExportJobManager",
    "ExportState",
    "ItemKind",
    "ItemRef",
    "LayoutStyle",
    "MediaAssetRef",
    "MemoryItem",
    "MilestoneItem",
    "RecordStore",
    "Selection",
    "SortOrder",
    "TimelineAggregator",
    "TimelineFilter",
    "TimelinePage",
]
