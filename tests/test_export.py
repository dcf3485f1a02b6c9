"""Tests for the Export Job Manager and the default JSON book renderer.

Tests cover:
- Successful renders and artifact metadata
- Render-time failures (unresolved media, layout validation, renderer errors)
- Cancellation rules of the state machine
- FIFO rendering per owner, parallel rendering across owners
- Snapshot isolation from later store edits
"""

import json
import threading
from pathlib import Path

import pytest

from conftest import OWNER, day, make_memory
from kaia.core.curation import CurationSelector
from kaia.core.errors import NotCancelableError, NotFoundError, RenderFailure
from kaia.core.models import (
    ExportArtifact,
    ExportState,
    ItemKind,
    ItemRef,
    LayoutStyle,
    Selection,
)
from kaia.export.jobs import ExportJobManager
from kaia.export.renderer import JsonBookRenderer, paginate, validate_layout

WAIT = 5


@pytest.fixture
def make_manager(store, export_config):
    """Factory for managers bound to the test store; shuts them down afterwards."""
    managers: list[ExportJobManager] = []

    def factory(renderer=None, config=None) -> ExportJobManager:
        manager = ExportJobManager(
            media_resolver=store.has_media,
            renderer=renderer,
            config=config or export_config,
        )
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        manager.shutdown(wait=False)


def select(store, *refs: str, layout: LayoutStyle | None = None, owner: str = OWNER) -> Selection:
    selector = CurationSelector(store)
    for text in refs:
        selector.add(owner, ItemRef.parse(text))
    if layout is not None:
        selector.set_layout(layout)
    return selector.snapshot()


class TestSuccessfulExport:
    """Happy path."""

    def test_job_succeeds(self, store, make_manager, recording_renderer):
        manager = make_manager(recording_renderer)
        job_id = manager.submit(select(store, "milestone:k1", "memory:m1"))
        job = manager.wait(job_id, timeout=WAIT)

        assert job.state == ExportState.SUCCEEDED
        assert job.error_detail is None
        assert job.artifact.item_count == 2
        assert job.started_at is not None
        assert job.completed_at >= job.started_at >= job.created_at

        rendered_id, rendered = recording_renderer.rendered[0]
        assert rendered_id == job_id
        assert [item.id for item in rendered.items] == ["k1", "m1"]

    def test_submit_returns_queued_job(self, store, make_manager, gated_renderer):
        manager = make_manager(gated_renderer)
        first = manager.submit(select(store, "memory:m1"))
        assert gated_renderer.started.wait(WAIT)
        second = manager.submit(select(store, "memory:m1"))
        assert manager.status(second).state == ExportState.QUEUED
        assert manager.status(first).state == ExportState.RENDERING

    def test_submit_from_resets_selector(self, store, make_manager, recording_renderer):
        manager = make_manager(recording_renderer)
        selector = CurationSelector(store)
        selector.add(OWNER, ItemRef(kind=ItemKind.MEMORY, id="m1"))

        job_id = manager.submit_from(selector)

        assert len(selector) == 0
        assert manager.wait(job_id, timeout=WAIT).state == ExportState.SUCCEEDED

    def test_jobs_listing(self, store, make_manager, recording_renderer):
        manager = make_manager(recording_renderer)
        ids = [manager.submit(select(store, "memory:m1")) for _ in range(3)]
        for job_id in ids:
            manager.wait(job_id, timeout=WAIT)
        assert [job.id for job in manager.jobs(OWNER)] == ids
        assert manager.jobs("nobody") == []


class TestRenderFailures:
    """Failures are recorded on the job, never raised into submit."""

    def test_unresolved_media_fails_job(self, store, make_manager, recording_renderer):
        store.put(make_memory("m2", day(3), media=("a1", "ghost")))
        manager = make_manager(recording_renderer)

        job_id = manager.submit(select(store, "memory:m2"))
        job = manager.wait(job_id, timeout=WAIT)

        assert job.state == ExportState.FAILED
        assert job.error_detail.code == "UnresolvedReference"
        assert job.error_detail.references == ("ghost",)
        assert recording_renderer.rendered == []

    def test_hand_built_selection_with_unresolved_media_fails(
        self, store, make_manager, recording_renderer
    ):
        ghost = make_memory("m2", day(3), media=("ghost",))
        selection = Selection(
            owner_person_id=OWNER,
            ordered_item_refs=(ghost.ref,),
            items=(ghost,),
        )
        manager = make_manager(recording_renderer)

        job = manager.wait(manager.submit(selection), timeout=WAIT)

        assert job.state == ExportState.FAILED
        assert job.error_detail.code == "UnresolvedReference"
        assert job.error_detail.references == ("ghost",)
        assert recording_renderer.rendered == []

    def test_empty_selection_rejected_at_submit(self, make_manager, recording_renderer):
        manager = make_manager(recording_renderer)
        with pytest.raises(ValueError):
            manager.submit(Selection(owner_person_id=OWNER))
        assert manager.jobs() == []

    def test_unknown_template_fails_job(self, store, make_manager, recording_renderer):
        manager = make_manager(recording_renderer)
        job_id = manager.submit(select(store, "memory:m1", layout=LayoutStyle(template="poster")))
        job = manager.wait(job_id, timeout=WAIT)

        assert job.state == ExportState.FAILED
        assert job.error_detail.code == "LayoutValidationError"
        assert "poster" in job.error_detail.message

    def test_items_per_page_out_of_range_fails_job(self, store, make_manager, recording_renderer):
        manager = make_manager(recording_renderer)
        job_id = manager.submit(select(store, "memory:m1", layout=LayoutStyle(items_per_page=0)))
        assert manager.wait(job_id, timeout=WAIT).error_detail.code == "LayoutValidationError"

    def test_structured_renderer_failure_stored_verbatim(self, store, make_manager):
        class QuotaRenderer:
            def render(self, job_id, selection):
                raise RenderFailure("QuotaExceeded", "Too many books today", ("quota",))

        manager = make_manager(QuotaRenderer())
        job = manager.wait(manager.submit(select(store, "memory:m1")), timeout=WAIT)

        assert job.state == ExportState.FAILED
        assert job.error_detail.code == "QuotaExceeded"
        assert job.error_detail.message == "Too many books today"
        assert job.error_detail.references == ("quota",)

    def test_renderer_crash_becomes_render_failed(self, store, make_manager):
        class CrashingRenderer:
            def render(self, job_id, selection):
                raise OSError("disk full")

        manager = make_manager(CrashingRenderer())
        job = manager.wait(manager.submit(select(store, "memory:m1")), timeout=WAIT)

        assert job.state == ExportState.FAILED
        assert job.error_detail.code == "RenderFailed"
        assert "disk full" in job.error_detail.message

    def test_failed_job_is_not_retried(self, store, make_manager):
        calls = []

        class FlakyRenderer:
            def render(self, job_id, selection):
                calls.append(job_id)
                raise RenderFailure("Flaky", "try again later")

        manager = make_manager(FlakyRenderer())
        job_id = manager.submit(select(store, "memory:m1"))
        manager.wait(job_id, timeout=WAIT)
        assert calls == [job_id]


class TestCancellation:
    """Cancel is legal only while queued."""

    def test_cancel_queued_job(self, store, make_manager, gated_renderer):
        manager = make_manager(gated_renderer)
        first = manager.submit(select(store, "memory:m1"))
        assert gated_renderer.started.wait(WAIT)
        second = manager.submit(select(store, "milestone:k1"))

        cancelled = manager.cancel(second)
        assert cancelled.state == ExportState.FAILED
        assert cancelled.error_detail.code == "Canceled"

        gated_renderer.release.set()
        assert manager.wait(first, timeout=WAIT).state == ExportState.SUCCEEDED
        assert manager.status(second).state == ExportState.FAILED
        assert [job_id for job_id, _ in gated_renderer.rendered] == [first]

    def test_cancel_rendering_job_fails_and_job_completes(self, store, make_manager, gated_renderer):
        manager = make_manager(gated_renderer)
        job_id = manager.submit(select(store, "memory:m1"))
        assert gated_renderer.started.wait(WAIT)

        with pytest.raises(NotCancelableError) as exc_info:
            manager.cancel(job_id)
        assert exc_info.value.state == ExportState.RENDERING

        gated_renderer.release.set()
        assert manager.wait(job_id, timeout=WAIT).state == ExportState.SUCCEEDED

    def test_terminal_states_are_final(self, store, make_manager, recording_renderer):
        manager = make_manager(recording_renderer)
        job_id = manager.submit(select(store, "memory:m1"))
        manager.wait(job_id, timeout=WAIT)

        with pytest.raises(NotCancelableError):
            manager.cancel(job_id)
        assert manager.status(job_id).state == ExportState.SUCCEEDED

    def test_cancelled_job_cannot_be_cancelled_again(self, store, make_manager, gated_renderer):
        manager = make_manager(gated_renderer)
        manager.submit(select(store, "memory:m1"))
        assert gated_renderer.started.wait(WAIT)
        queued = manager.submit(select(store, "memory:m1"))
        manager.cancel(queued)

        with pytest.raises(NotCancelableError):
            manager.cancel(queued)

    def test_unknown_job(self, make_manager, recording_renderer):
        manager = make_manager(recording_renderer)
        with pytest.raises(NotFoundError):
            manager.status("nope")
        with pytest.raises(NotFoundError):
            manager.cancel("nope")
        with pytest.raises(NotFoundError):
            manager.wait("nope", timeout=0)
        with pytest.raises(NotFoundError):
            manager.forget("nope")


class TestLifecycle:
    """Shutdown and cleanup of finished jobs."""

    def test_submit_after_shutdown_leaves_no_job_behind(self, store, make_manager, recording_renderer):
        manager = make_manager(recording_renderer)
        manager.shutdown()

        with pytest.raises(RuntimeError):
            manager.submit(select(store, "memory:m1"))
        assert manager.jobs() == []

    def test_shutdown_waits_for_queued_jobs(self, store, make_manager, recording_renderer):
        manager = make_manager(recording_renderer)
        ids = [manager.submit(select(store, "memory:m1")) for _ in range(3)]
        manager.shutdown(wait=True)
        assert [manager.status(job_id).state for job_id in ids] == [ExportState.SUCCEEDED] * 3

    def test_forget_finished_job(self, store, make_manager, recording_renderer):
        manager = make_manager(recording_renderer)
        job_id = manager.submit(select(store, "memory:m1"))
        manager.wait(job_id, timeout=WAIT)

        forgotten = manager.forget(job_id)

        assert forgotten.state == ExportState.SUCCEEDED
        assert manager.jobs() == []
        with pytest.raises(NotFoundError):
            manager.status(job_id)

    def test_forget_refuses_unfinished_job(self, store, make_manager, gated_renderer):
        manager = make_manager(gated_renderer)
        job_id = manager.submit(select(store, "memory:m1"))
        assert gated_renderer.started.wait(WAIT)

        with pytest.raises(ValueError):
            manager.forget(job_id)
        assert manager.status(job_id).state == ExportState.RENDERING


class TestScheduling:
    """One render per owner at a time, FIFO; owners run in parallel."""

    def test_same_owner_jobs_render_in_submission_order(self, store, make_manager, gated_renderer):
        manager = make_manager(gated_renderer)
        ids = [manager.submit(select(store, "memory:m1"))]
        assert gated_renderer.started.wait(WAIT)
        ids += [manager.submit(select(store, "milestone:k1")) for _ in range(2)]

        assert [manager.status(job_id).state for job_id in ids] == [
            ExportState.RENDERING,
            ExportState.QUEUED,
            ExportState.QUEUED,
        ]

        gated_renderer.release.set()
        for job_id in ids:
            assert manager.wait(job_id, timeout=WAIT).state == ExportState.SUCCEEDED
        assert [job_id for job_id, _ in gated_renderer.rendered] == ids

    def test_different_owners_render_concurrently(self, store, make_manager):
        store.put(make_memory("s1", day(1), owner="sibling"))

        class BarrierRenderer:
            def __init__(self):
                self.barrier = threading.Barrier(2, timeout=WAIT)

            def render(self, job_id, selection):
                self.barrier.wait()
                return ExportArtifact(job_id=job_id, location="-", page_count=1, item_count=1)

        manager = make_manager(BarrierRenderer())
        baby_job = manager.submit(select(store, "memory:m1"))
        sibling_job = manager.submit(select(store, "memory:s1", owner="sibling"))

        assert manager.wait(baby_job, timeout=WAIT).state == ExportState.SUCCEEDED
        assert manager.wait(sibling_job, timeout=WAIT).state == ExportState.SUCCEEDED


class TestSnapshotIsolation:
    """Jobs work from a frozen copy of the selection."""

    def test_store_changes_after_submit_do_not_reach_job(self, store, make_manager, gated_renderer):
        manager = make_manager(gated_renderer)
        job_id = manager.submit(select(store, "memory:m1", "milestone:k1"))
        assert gated_renderer.started.wait(WAIT)

        store.put(make_memory("m1", day(1), text="Rewritten"))
        store.delete("k1")
        gated_renderer.release.set()

        job = manager.wait(job_id, timeout=WAIT)
        assert job.state == ExportState.SUCCEEDED
        assert [item.id for item in job.selection_snapshot.items] == ["m1", "k1"]
        assert job.selection_snapshot.items[0].text == "First smile"
        _, rendered = gated_renderer.rendered[0]
        assert rendered.items[0].text == "First smile"


class TestJsonBookRenderer:
    """Default renderer output."""

    def test_writes_book_per_owner(self, store, make_manager, export_config):
        manager = make_manager()
        layout = LayoutStyle(items_per_page=2, title="Year one")
        job_id = manager.submit(select(store, "milestone:k1", "memory:m1", layout=layout))
        job = manager.wait(job_id, timeout=WAIT)

        assert job.state == ExportState.SUCCEEDED
        path = Path(job.artifact.location)
        assert path == export_config.output_dir / OWNER / f"{job_id}.json"

        book = json.loads(path.read_text(encoding="utf-8"))
        assert book["title"] == "Year one"
        assert len(book["pages"]) == 1
        assert [entry["id"] for entry in book["pages"][0]["items"]] == ["k1", "m1"]
        assert book["pages"][0]["items"][1]["caption"] == "First smile"

    def test_captions_can_be_hidden(self, store, tmp_path):
        selection = select(store, "memory:m1", layout=LayoutStyle(show_captions=False))
        artifact = JsonBookRenderer(tmp_path).render("job-1", selection)
        book = json.loads(Path(artifact.location).read_text(encoding="utf-8"))
        assert "caption" not in book["pages"][0]["items"][0]

    def test_paginate_keeps_selection_order(self, store):
        for i in range(5):
            store.put(make_memory(f"p{i}", day(i + 1)))
        selection = select(
            store,
            *[f"memory:p{i}" for i in (4, 0, 3, 1, 2)],
            layout=LayoutStyle(items_per_page=2),
        )
        pages = paginate(selection)
        assert [[item.id for item in page] for page in pages] == [["p4", "p0"], ["p3", "p1"], ["p2"]]

    def test_validate_layout(self):
        validate_layout(LayoutStyle(), ["classic"], 6)
        with pytest.raises(RenderFailure) as exc_info:
            validate_layout(LayoutStyle(template="x", items_per_page=9), ["classic"], 6)
        assert exc_info.value.code == "LayoutValidationError"
        assert "items_per_page" in exc_info.value.message
