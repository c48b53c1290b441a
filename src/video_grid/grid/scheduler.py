"""PipelineScheduler — runs one grid pipeline per video under a concurrency bound."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import Any

from video_grid.core.datatypes import ExtractedFrame, GridConfig, JobState, RunSummary, VideoJob
from video_grid.core.events import EventBus, JobEvent
from video_grid.core.exceptions import JobCancelled, ToolError, ValidationError, VideoGridError
from video_grid.grid.adapter import VideoAssetAdapter
from video_grid.grid.cache import FrameCache
from video_grid.grid.composer import GridComposer, validate_grid_config
from video_grid.grid.gate import AdmissionGate, CancellationToken, checkpoint
from video_grid.grid.sampling import FrameSampler
from video_grid.grid.selection import DistinctnessSelector

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 2
MAX_CONCURRENT_LIMIT = 10

# Overall progress bands per phase.
LOADING_PROGRESS = 0.1
EXTRACTION_SPAN = 0.7
COMPOSING_PROGRESS = 0.85

_TOOL = "video_grid"


class PipelineScheduler:
    """Own the job table and drive every queued job through its phases.

    Each job moves ``Queued → Loading → Extracting → Selecting →
    Composing → Complete``; a cache hit skips Extracting and Selecting.
    Any non-terminal job can end in ``Cancelled``; an exception ends it in
    ``Failed``.  Jobs are admitted through an ``AdmissionGate`` so at most
    ``max_concurrent`` are past ``Queued`` at once.

    All job-table mutation happens on the event loop thread.

    Args:
        adapter: Video backend shared by sampler and composer.
        cache: Frame cache consulted before extraction.
        max_concurrent: Concurrency bound (1-10).
        event_bus: Receives ``progress``, ``completed``, ``error`` and
                   ``cancelled`` events.
        sampler: Override the default ``FrameSampler``.
        selector: Override the default ``DistinctnessSelector``.
        composer: Override the default ``GridComposer``.
    """

    def __init__(
        self,
        adapter: VideoAssetAdapter,
        cache: FrameCache,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        event_bus: EventBus | None = None,
        sampler: FrameSampler | None = None,
        selector: DistinctnessSelector | None = None,
        composer: GridComposer | None = None,
    ) -> None:
        if not 1 <= max_concurrent <= MAX_CONCURRENT_LIMIT:
            msg = f"Max concurrent jobs must be between 1 and {MAX_CONCURRENT_LIMIT}, got {max_concurrent}"
            raise ValidationError(msg)
        self.adapter = adapter
        self.cache = cache
        self.max_concurrent = max_concurrent
        self.event_bus = event_bus or EventBus()
        self.sampler = sampler or FrameSampler(adapter)
        self.selector = selector or DistinctnessSelector()
        self.composer = composer or GridComposer(adapter)

        self._jobs: dict[int, VideoJob] = {}
        self._order: list[int] = []
        self._next_id = 1
        self._tokens: dict[int, CancellationToken] = {}
        self._run_token: CancellationToken | None = None
        self._gate: AdmissionGate | None = None
        self._running = False

    # ── job table ─────────────────────────────────────────────────────────

    @property
    def jobs(self) -> list[VideoJob]:
        """Return snapshots of all jobs in display order."""
        return [replace(self._jobs[job_id]) for job_id in self._order]

    @property
    def is_running(self) -> bool:
        """Return whether ``run()`` is in progress."""
        return self._running

    @property
    def gate(self) -> AdmissionGate | None:
        """Return the admission gate of the current or most recent run."""
        return self._gate

    def get_job(self, job_id: int) -> VideoJob:
        """Return a snapshot of one job.

        Raises:
            KeyError: If *job_id* is unknown.
        """
        return replace(self._jobs[job_id])

    def add_job(self, source_path: Path) -> int:
        """Queue *source_path* and return its job id.  Ids are never reused."""
        job_id = self._next_id
        self._next_id += 1
        self._jobs[job_id] = VideoJob(id=job_id, source_path=source_path)
        self._order.append(job_id)
        logger.debug("Queued job %d: %s", job_id, source_path)
        return job_id

    def add_jobs(self, source_paths: list[Path]) -> list[int]:
        """Queue several videos in order."""
        return [self.add_job(path) for path in source_paths]

    def clear_completed(self) -> int:
        """Drop every job in a terminal state.

        Returns:
            The number of jobs removed.
        """
        done = [job_id for job_id in self._order if self._jobs[job_id].is_complete]
        for job_id in done:
            del self._jobs[job_id]
            self._tokens.pop(job_id, None)
        self._order = [job_id for job_id in self._order if job_id in self._jobs]
        return len(done)

    def clear_all(self) -> None:
        """Drop every job.

        Raises:
            ToolError: If a run is in progress.
        """
        if self.is_running:
            msg = "Cannot clear jobs while a run is in progress"
            raise ToolError(msg)
        self._jobs.clear()
        self._order.clear()
        self._tokens.clear()

    def _update(self, job_id: int, **changes: Any) -> None:
        """Apply *changes* to a job, keeping progress non-decreasing."""
        job = self._jobs.get(job_id)
        if job is None or job.is_complete:
            return
        if "progress" in changes:
            changes["progress"] = min(1.0, max(job.progress, changes["progress"]))
        for key, value in changes.items():
            setattr(job, key, value)
        self.event_bus.emit(
            JobEvent.PROGRESS,
            tool=_TOOL,
            job_id=job_id,
            progress=job.progress,
            state=job.state,
            message=job.status,
        )

    # ── cancellation ──────────────────────────────────────────────────────

    def _mark_cancelled(self, job_id: int) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.is_complete:
            return
        self._update(job_id, state=JobState.CANCELLED, status="Cancelled")
        self.event_bus.emit(JobEvent.CANCELLED, tool=_TOOL, job_id=job_id, message="Cancelled")

    def cancel(self, job_id: int) -> None:
        """Cancel one job.

        A job still in ``Queued`` is cancelled at once and will never be
        admitted; a job already past the gate stops at its next checkpoint.

        Raises:
            KeyError: If *job_id* is unknown.
        """
        job = self._jobs[job_id]
        if job.is_complete:
            return
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel()
        if job.state is JobState.QUEUED:
            self._mark_cancelled(job_id)

    def cancel_all(self) -> None:
        """Cancel every unfinished job and release every gate waiter."""
        if self._run_token is not None:
            self._run_token.cancel()
        if self._gate is not None:
            self._gate.cancel_all()
        for job_id in self._order:
            if self._jobs[job_id].state is JobState.QUEUED:
                self._mark_cancelled(job_id)

    # ── execution ─────────────────────────────────────────────────────────

    async def run(self, config: GridConfig, output_folder: Path | None = None) -> RunSummary:
        """Process every queued job and wait for all of them to finish.

        Args:
            config: Grid layout shared by all jobs in this run.
            output_folder: Explicit destination for every grid.

        Returns:
            Counts of completed, cancelled and failed jobs of this run.

        Raises:
            ValidationError: If *config* is invalid.
            ToolError: If a run is already in progress.
        """
        validate_grid_config(config)
        if self.is_running:
            msg = "A run is already in progress"
            raise ToolError(msg)

        pending = [job_id for job_id in self._order if self._jobs[job_id].state is JobState.QUEUED]
        self._running = True
        self._run_token = CancellationToken()
        self._gate = AdmissionGate(self.max_concurrent)
        self._tokens = {job_id: CancellationToken(parent=self._run_token) for job_id in pending}
        logger.info("Starting run: %d job(s), at most %d at once", len(pending), self.max_concurrent)

        tasks = [asyncio.create_task(self._run_job(job_id, config, output_folder)) for job_id in pending]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            self.cancel_all()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            self._running = False

        return self._summarize(pending)

    def _summarize(self, job_ids: list[int]) -> RunSummary:
        jobs = [self._jobs[job_id] for job_id in job_ids if job_id in self._jobs]
        summary = RunSummary(
            completed=sum(1 for job in jobs if job.state is JobState.COMPLETE),
            cancelled=sum(1 for job in jobs if job.state is JobState.CANCELLED),
            failed=sum(1 for job in jobs if job.state is JobState.FAILED),
            output_paths=tuple(job.output_path for job in jobs if job.output_path is not None),
        )
        logger.info(
            "Run finished: %d completed, %d cancelled, %d failed",
            summary.completed,
            summary.cancelled,
            summary.failed,
        )
        return summary

    async def _enter(self, job_id: int, token: CancellationToken, state: JobState, status: str) -> None:
        """Cross a phase boundary: checkpoint, then record the new state."""
        await checkpoint(token)
        self._update(job_id, state=state, status=status)

    async def _run_job(self, job_id: int, config: GridConfig, output_folder: Path | None) -> None:
        """Drive one job to a terminal state.  Only ``CancelledError`` escapes."""
        assert self._gate is not None
        token = self._tokens[job_id]
        source_path = self._jobs[job_id].source_path
        acquired = False
        started = time.perf_counter()
        try:
            token.raise_if_cancelled()
            await self._gate.acquire()
            acquired = True

            await self._enter(job_id, token, JobState.LOADING, "Loading...")
            self._update(job_id, progress=LOADING_PROGRESS)
            frames = await self._frames_for(job_id, token, source_path, config.frame_count)

            await self._enter(job_id, token, JobState.COMPOSING, "Compositing...")
            self._update(job_id, progress=COMPOSING_PROGRESS)
            output_path = await asyncio.to_thread(self.composer.compose, frames, source_path, config, output_folder)

            self._update(
                job_id,
                state=JobState.COMPLETE,
                status="Complete",
                progress=1.0,
                output_path=output_path,
            )
            logger.info("Job %d done in %.2fs: %s", job_id, time.perf_counter() - started, output_path)
            self.event_bus.emit(
                JobEvent.COMPLETED,
                tool=_TOOL,
                job_id=job_id,
                output_path=output_path,
                message=f"Saved {output_path.name}",
            )
        except JobCancelled:
            logger.info("Job %d cancelled (%s)", job_id, source_path.name)
            self._mark_cancelled(job_id)
        except asyncio.CancelledError:
            self._mark_cancelled(job_id)
            raise
        except VideoGridError as exc:
            logger.error("Error processing %s: %s", source_path.name, exc)
            self._fail(job_id, exc)
        except Exception as exc:
            logger.exception("Unexpected error processing %s", source_path.name)
            self._fail(job_id, exc)
        finally:
            if acquired:
                self._gate.release()

    def _fail(self, job_id: int, exc: BaseException) -> None:
        message = str(exc) or type(exc).__name__
        self._update(job_id, state=JobState.FAILED, status=f"Error: {message}", error=message)
        self.event_bus.emit(JobEvent.ERROR, tool=_TOOL, job_id=job_id, message=message)

    async def _frames_for(
        self,
        job_id: int,
        token: CancellationToken,
        source_path: Path,
        frame_count: int,
    ) -> list[ExtractedFrame]:
        """Return cached frames, or extract and select fresh ones."""
        entry = await asyncio.to_thread(self.cache.lookup, source_path, frame_count)
        if entry is not None:
            self._update(
                job_id,
                from_cache=True,
                status="Loaded from cache",
                progress=LOADING_PROGRESS + EXTRACTION_SPAN,
            )
            return list(entry.frames)

        def _extract_progress(fraction: float) -> None:
            self._update(job_id, progress=LOADING_PROGRESS + EXTRACTION_SPAN * 0.5 * fraction)

        def _select_progress(fraction: float) -> None:
            self._update(job_id, progress=LOADING_PROGRESS + EXTRACTION_SPAN * (0.5 + 0.5 * fraction))

        await self._enter(job_id, token, JobState.EXTRACTING, "Extracting frames...")
        candidates = await self.sampler.extract(source_path, frame_count, token=token, progress=_extract_progress)

        await self._enter(job_id, token, JobState.SELECTING, "Selecting frames...")
        frames = await self.selector.select(candidates, frame_count, token=token, progress=_select_progress)

        self.cache.store(source_path, frame_count, frames)
        return frames
