"""Central Pytest Fixtures for Kaia.

Fixtures included:
- Core data: owner, media_assets, memory, milestone, store
- Export: gated_renderer, recording_renderer, export_config
- Utilities: isolated configuration (autouse)
"""

import logging
import os
import threading
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from kaia.config import ExportConfig, reset_config
from kaia.core.models import (
    ExportArtifact,
    MediaAssetRef,
    MediaKind,
    MemoryItem,
    MemoryKind,
    MilestoneItem,
    Selection,
)
from kaia.core.store import RecordStore

OWNER = "baby"
BASE_TIME = datetime(2025, 11, 1, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# Helper Functions
# =============================================================================


def day(n: int) -> datetime:
    """Datetime of day ``n`` (day 1 is 2025-11-01) at 09:00 UTC."""
    return BASE_TIME + timedelta(days=n - 1)


def make_memory(
    item_id: str,
    created_at: datetime,
    owner: str = OWNER,
    media: tuple[str, ...] = (),
    tags: tuple[str, ...] = (),
    kind: MemoryKind = MemoryKind.TEXT,
    text: str | None = None,
) -> MemoryItem:
    """Build a MemoryItem with sensible defaults."""
    return MemoryItem(
        id=item_id,
        owner_person_id=owner,
        author_person_id="mom",
        created_at=created_at,
        kind=kind,
        text=text if text is not None else f"Memory {item_id}",
        media_asset_ids=frozenset(media),
        tags=frozenset(tags),
    )


def make_milestone(
    item_id: str,
    on: date,
    owner: str = OWNER,
    media: tuple[str, ...] = (),
    tags: tuple[str, ...] = (),
    title: str | None = None,
) -> MilestoneItem:
    """Build a MilestoneItem with sensible defaults."""
    return MilestoneItem(
        id=item_id,
        owner_person_id=owner,
        date=on,
        title=title or f"Milestone {item_id}",
        media_asset_ids=frozenset(media),
        tags=frozenset(tags),
    )


# =============================================================================
# Configuration Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Run every test with default configuration, away from any real config files."""
    for name in [key for key in os.environ if key.upper().startswith("KAIA_")]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_config()
    yield
    reset_config()

    # The CLI installs handlers on the package logger; undo that for caplog
    package_logger = logging.getLogger("kaia")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


# =============================================================================
# Core Data Fixtures
# =============================================================================


@pytest.fixture
def owner() -> str:
    return OWNER


@pytest.fixture
def media_assets() -> list[MediaAssetRef]:
    return [
        MediaAssetRef(id="a1", kind=MediaKind.PHOTO, created_at=day(1)),
        MediaAssetRef(id="a2", kind=MediaKind.VIDEO, created_at=day(2)),
        MediaAssetRef(id="a3", kind=MediaKind.AUDIO, created_at=day(3)),
    ]


@pytest.fixture
def memory() -> MemoryItem:
    """Memory m1 on day 1 with photo a1."""
    return make_memory("m1", day(1), media=("a1",), kind=MemoryKind.PHOTO, text="First smile")


@pytest.fixture
def milestone() -> MilestoneItem:
    """Milestone k1 on day 2 with video a2."""
    return make_milestone("k1", day(2).date(), media=("a2",), title="First steps")


@pytest.fixture
def store(media_assets, memory, milestone) -> RecordStore:
    """Store holding the media assets, m1 and k1."""
    return RecordStore(items=[memory, milestone], media=media_assets)


@pytest.fixture
def export_config(tmp_path: Path) -> ExportConfig:
    return ExportConfig(output_dir=tmp_path / "exports", max_workers=2)


# =============================================================================
# Renderer Fakes
# =============================================================================


class RecordingRenderer:
    """Renderer that succeeds immediately and remembers what it rendered."""

    def __init__(self) -> None:
        self.rendered: list[tuple[str, Selection]] = []
        self._lock = threading.Lock()

    def render(self, job_id: str, selection: Selection) -> ExportArtifact:
        with self._lock:
            self.rendered.append((job_id, selection))
        return ExportArtifact(
            job_id=job_id,
            location=f"memory://{job_id}",
            page_count=len(selection.items),
            item_count=len(selection.items),
        )


class GatedRenderer(RecordingRenderer):
    """Renderer that blocks until released, signalling when a render starts."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def render(self, job_id: str, selection: Selection) -> ExportArtifact:
        self.started.set()
        assert self.release.wait(timeout=10), "renderer was never released"
        return super().render(job_id, selection)


@pytest.fixture
def recording_renderer() -> RecordingRenderer:
    return RecordingRenderer()


@pytest.fixture
def gated_renderer() -> GatedRenderer:
    renderer = GatedRenderer()
    yield renderer
    renderer.release.set()
