"""Export rendering - turns a frozen selection into a book artifact.

Rendering proper belongs to an external collaborator; this module defines
the seam the export job manager calls through (``ExportRenderer``), the
layout checks every renderer shares, and a default renderer that writes the
book as a JSON document.

Example:
    >>> renderer = JsonBookRenderer(Path("./exports"))
    >>> artifact = renderer.render("job-1", selection)
    >>> artifact.location
    'exports/baby/job-1.json'
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol, Sequence

from kaia.core.errors import RenderFailure
from kaia.core.models import (
    ExportArtifact,
    LayoutStyle,
    MemoryItem,
    MilestoneItem,
    Selection,
    utc_now,
)

logger = logging.getLogger(__name__)

UNRESOLVED_REFERENCE = "UnresolvedReference"
LAYOUT_VALIDATION_ERROR = "LayoutValidationError"
RENDER_FAILED = "RenderFailed"
CANCELED = "Canceled"


class ExportRenderer(Protocol):
    """Renders a frozen selection into an artifact.

    Implementations raise ``RenderFailure`` for structured failures; the
    export job manager stores its code, message and references verbatim.
    """

    def render(self, job_id: str, selection: Selection) -> ExportArtifact: ...


def validate_layout(
    layout: LayoutStyle,
    templates: Sequence[str],
    max_items_per_page: int,
) -> None:
    """Check a layout against what the renderer supports.

    Raises:
        RenderFailure: With code ``LayoutValidationError`` on any violation.
    """
    problems = []
    if layout.template not in templates:
        problems.append(
            f"unknown template {layout.template!r} (expected one of {', '.join(templates)})"
        )
    if not 1 <= layout.items_per_page <= max_items_per_page:
        problems.append(
            f"items_per_page must be between 1 and {max_items_per_page}, "
            f"got {layout.items_per_page}"
        )
    if problems:
        raise RenderFailure(LAYOUT_VALIDATION_ERROR, "; ".join(problems), (layout.template,))


def paginate(selection: Selection) -> list[list[MemoryItem | MilestoneItem]]:
    """Split the selection into pages in selection order."""
    per_page = selection.layout_style.items_per_page
    items = list(selection.items)
    return [items[i : i + per_page] for i in range(0, len(items), per_page)]


def _page_entry(item: MemoryItem | MilestoneItem, show_captions: bool) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "kind": item.item_kind.value,
        "id": item.id,
        "date": item.sort_key.isoformat(),
        "media": sorted(item.media_asset_ids),
    }
    if isinstance(item, MilestoneItem):
        entry["title"] = item.title
        if show_captions and item.notes:
            entry["caption"] = item.notes
    else:
        entry["content_kind"] = item.kind.value
        if show_captions and item.text:
            entry["caption"] = item.text
    return entry


class JsonBookRenderer:
    """Default renderer writing ``<output_dir>/<owner>/<job_id>.json``.

    Each owner gets its own artifact namespace; the job manager guarantees at
    most one render per owner at a time.
    """

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir

    def render(self, job_id: str, selection: Selection) -> ExportArtifact:
        pages = paginate(selection)
        layout = selection.layout_style
        book = {
            "job_id": job_id,
            "owner_person_id": selection.owner_person_id,
            "title": layout.title,
            "template": layout.template,
            "rendered_at": utc_now().isoformat(),
            "pages": [
                {
                    "number": number,
                    "items": [_page_entry(item, layout.show_captions) for item in page],
                }
                for number, page in enumerate(pages, start=1)
            ],
        }

        owner_dir = self.output_dir / selection.owner_person_id
        try:
            owner_dir.mkdir(parents=True, exist_ok=True)
            path = owner_dir / f"{job_id}.json"
            path.write_text(json.dumps(book, indent=2), encoding="utf-8")
        except OSError as e:
            raise RenderFailure(RENDER_FAILED, f"Cannot write book: {e}", (job_id,)) from e

        logger.info(f"Rendered {len(selection.items)} items on {len(pages)} pages to {path}")
        return ExportArtifact(
            job_id=job_id,
            location=str(path),
            page_count=len(pages),
            item_count=len(selection.items),
        )
