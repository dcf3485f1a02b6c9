"""Export Job Manager - asynchronous rendering of curated selections.

Each submitted selection becomes an ``ExportJob`` that moves through

    queued -> rendering -> succeeded | failed

SUCCEEDED and FAILED are terminal. Jobs render on a background thread pool,
so ``submit`` returns immediately. Jobs of one owner render one at a time in
submission order; jobs of different owners render in parallel.

Failure handling:
- Before rendering, the snapshot's layout is validated and every media asset
  id is checked against the media resolver.
- A structured ``RenderFailure`` is stored verbatim in ``error_detail``; any
  other exception from the renderer becomes a ``RenderFailed`` detail.
- Failures are only observable through ``status``; nothing is retried.
- Only queued jobs can be cancelled; a cancelled job ends FAILED with a
  ``Canceled`` detail. A rendering job always runs to completion.

Example:
    >>> manager = ExportJobManager(media_resolver=store.has_media)
    >>> job_id = manager.submit(selector.snapshot())
    >>> job = manager.wait(job_id, timeout=30)
    >>> job.state
    <ExportState.SUCCEEDED: 'succeeded'>
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict, deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from kaia.config import ExportConfig, get_config
from kaia.core.curation import CurationSelector
from kaia.core.errors import NotCancelableError, NotFoundError, RenderFailure
from kaia.core.models import (
    ExportArtifact,
    ExportErrorDetail,
    ExportJob,
    ExportState,
    Selection,
    utc_now,
)
from kaia.export.renderer import (
    CANCELED,
    RENDER_FAILED,
    UNRESOLVED_REFERENCE,
    ExportRenderer,
    JsonBookRenderer,
    validate_layout,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ExportState, frozenset[ExportState]] = {
    ExportState.QUEUED: frozenset({ExportState.RENDERING, ExportState.FAILED}),
    ExportState.RENDERING: frozenset({ExportState.SUCCEEDED, ExportState.FAILED}),
    ExportState.SUCCEEDED: frozenset(),
    ExportState.FAILED: frozenset(),
}


class ExportJobManager:
    """Queues, renders and tracks export jobs.

    Args:
        media_resolver: Returns True if a media asset id is known to the media
            subsystem, e.g. ``RecordStore.has_media``.
        renderer: Rendering collaborator; defaults to a ``JsonBookRenderer``
            writing under ``export.output_dir``.
        config: Export settings; defaults to the loaded application config.
    """

    def __init__(
        self,
        media_resolver: Callable[[str], bool],
        renderer: ExportRenderer | None = None,
        config: ExportConfig | None = None,
    ) -> None:
        self._config = config or get_config().export
        self._media_resolver = media_resolver
        self._renderer = renderer or JsonBookRenderer(self._config.output_dir)

        self._lock = threading.Lock()
        self._jobs: dict[str, ExportJob] = {}
        self._finished: dict[str, threading.Event] = {}
        self._queues: dict[str, deque[str]] = defaultdict(deque)
        self._active_owners: set[str] = set()
        self._closed = False
        self._executor = ThreadPoolExecutor(
            max_workers=self._config.max_workers,
            thread_name_prefix="kaia-export",
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def submit(self, selection: Selection) -> str:
        """Enqueue a selection for export.

        The selection is deep-copied, so later changes to it or to the store
        never reach the job.

        Returns:
            The new job's id.

        Raises:
            ValueError: If the selection holds no items.
            RuntimeError: If the manager has been shut down.
        """
        if not selection.items:
            raise ValueError("Cannot export an empty selection")

        job = ExportJob(
            id=str(uuid.uuid4()),
            owner_person_id=selection.owner_person_id,
            selection_snapshot=selection.model_copy(deep=True),
        )
        owner = job.owner_person_id

        with self._lock:
            if self._closed:
                raise RuntimeError("Export job manager is shut down")
            self._jobs[job.id] = job
            self._finished[job.id] = threading.Event()
            self._queues[owner].append(job.id)
            if owner not in self._active_owners:
                try:
                    self._executor.submit(self._drain, owner)
                except RuntimeError:
                    self._queues[owner].remove(job.id)
                    del self._jobs[job.id]
                    del self._finished[job.id]
                    raise
                self._active_owners.add(owner)

        logger.info(
            f"Queued export job {job.id} for {owner} "
            f"({len(job.selection_snapshot.items)} items)"
        )
        return job.id

    def submit_from(self, selector: CurationSelector) -> str:
        """Snapshot a selector, submit the snapshot, and reset the selector."""
        job_id = self.submit(selector.snapshot())
        selector.reset()
        return job_id

    def status(self, job_id: str) -> ExportJob:
        """Return the current record of a job.

        Raises:
            NotFoundError: If the job id is unknown.
        """
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(job_id, what="export job")
        return job

    def cancel(self, job_id: str) -> ExportJob:
        """Cancel a queued job.

        Returns:
            The job, now FAILED with a ``Canceled`` error detail.

        Raises:
            NotFoundError: If the job id is unknown.
            NotCancelableError: If the job is rendering or already finished.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(job_id, what="export job")
            if job.state != ExportState.QUEUED:
                raise NotCancelableError(job_id, job.state)

            job = self._transition(
                job_id,
                ExportState.FAILED,
                completed_at=utc_now(),
                error_detail=ExportErrorDetail(
                    code=CANCELED, message="Cancelled before rendering started"
                ),
            )
            queue = self._queues[job.owner_person_id]
            if job_id in queue:
                queue.remove(job_id)
            self._finished[job_id].set()

        logger.info(f"Cancelled export job {job_id}")
        return job

    def wait(self, job_id: str, timeout: float | None = None) -> ExportJob:
        """Block until a job is terminal or ``timeout`` seconds pass.

        Returns:
            The job's latest record, terminal unless the timeout expired.

        Raises:
            NotFoundError: If the job id is unknown.
        """
        with self._lock:
            finished = self._finished.get(job_id)
        if finished is None:
            raise NotFoundError(job_id, what="export job")
        finished.wait(timeout)
        return self.status(job_id)

    def jobs(self, owner_id: str | None = None) -> list[ExportJob]:
        """All jobs, optionally for one owner, oldest first."""
        with self._lock:
            jobs = list(self._jobs.values())
        if owner_id is not None:
            jobs = [job for job in jobs if job.owner_person_id == owner_id]
        return sorted(jobs, key=lambda job: job.created_at)

    def forget(self, job_id: str) -> ExportJob:
        """Drop a finished job from the manager's records.

        Returns:
            The job's final record.

        Raises:
            NotFoundError: If the job id is unknown.
            ValueError: If the job is still queued or rendering.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(job_id, what="export job")
            if not job.is_terminal:
                raise ValueError(f"Export job {job_id} is still {job.state.value}")
            del self._jobs[job_id]
            del self._finished[job_id]
        return job

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs; with ``wait`` block until queued jobs have rendered."""
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "ExportJobManager":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown(wait=True)

    # =========================================================================
    # Worker
    # =========================================================================

    def _transition(self, job_id: str, state: ExportState, **changes: Any) -> ExportJob:
        """Apply a state change. Caller must hold the lock."""
        job = self._jobs[job_id]
        if state not in ALLOWED_TRANSITIONS[job.state]:
            raise RuntimeError(
                f"Illegal export job transition {job.state.value} -> {state.value} for {job_id}"
            )
        updated = job.model_copy(update={"state": state, **changes})
        self._jobs[job_id] = updated
        return updated

    def _next_queued(self, owner: str) -> ExportJob | None:
        """Pop the owner's next queued job and mark it rendering. Caller must hold the lock."""
        queue = self._queues[owner]
        while queue:
            job_id = queue.popleft()
            if self._jobs[job_id].state == ExportState.QUEUED:
                return self._transition(job_id, ExportState.RENDERING, started_at=utc_now())
        return None

    def _drain(self, owner: str) -> None:
        """Render the owner's queued jobs one by one until the queue is empty."""
        while True:
            with self._lock:
                job = self._next_queued(owner)
                if job is None:
                    self._active_owners.discard(owner)
                    return

            logger.info(f"Rendering export job {job.id} for {owner}")
            artifact, error = self._render(job)

            with self._lock:
                if error is None:
                    self._transition(
                        job.id, ExportState.SUCCEEDED, completed_at=utc_now(), artifact=artifact
                    )
                else:
                    self._transition(
                        job.id, ExportState.FAILED, completed_at=utc_now(), error_detail=error
                    )
                self._finished[job.id].set()

            if error is None:
                logger.info(f"Export job {job.id} succeeded")

    def _render(self, job: ExportJob) -> tuple[ExportArtifact | None, ExportErrorDetail | None]:
        selection = job.selection_snapshot
        try:
            validate_layout(
                selection.layout_style,
                self._config.templates,
                self._config.max_items_per_page,
            )

            missing = tuple(
                asset_id
                for asset_id in selection.media_asset_ids()
                if not self._media_resolver(asset_id)
            )
            if missing:
                raise RenderFailure(
                    UNRESOLVED_REFERENCE,
                    f"{len(missing)} media asset(s) could not be resolved",
                    missing,
                )

            return self._renderer.render(job.id, selection), None

        except RenderFailure as e:
            logger.warning(f"Export job {job.id} failed: {e}")
            return None, ExportErrorDetail(code=e.code, message=e.message, references=e.references)
        except Exception as e:
            logger.exception(f"Export job {job.id} crashed in renderer")
            return None, ExportErrorDetail(code=RENDER_FAILED, message=f"{type(e).__name__}: {e}")
