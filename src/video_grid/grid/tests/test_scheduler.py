"""Tests for PipelineScheduler: job table, phases, concurrency, cancellation."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from video_grid.core.datatypes import GridConfig, JobState, RunSummary
from video_grid.core.events import EventBus, JobEvent
from video_grid.core.exceptions import ToolError, ValidationError
from video_grid.grid.cache import FrameCache
from video_grid.grid.scheduler import PipelineScheduler

SMALL = GridConfig(rows=2, columns=2, target_width=640)


@pytest.fixture()
def cache(tmp_path: Path) -> Iterator[FrameCache]:
    """Return a frame cache in a temporary directory."""
    frame_cache = FrameCache(tmp_path / "cache")
    yield frame_cache
    frame_cache.close()


@pytest.fixture()
def out_dir(tmp_path: Path) -> Path:
    """Return the folder grids are written to."""
    return tmp_path / "out"


def _run(scheduler: PipelineScheduler, out_dir: Path, config: GridConfig = SMALL) -> RunSummary:
    return asyncio.run(scheduler.run(config, out_dir))


# ── Job table ──────────────────────────────────────────────────────────────


class TestJobTable:
    """Tests for adding, reading and clearing jobs."""

    def test_ids_are_sequential(self, adapter, cache: FrameCache) -> None:
        """Each queued video gets the next integer id."""
        scheduler = PipelineScheduler(adapter, cache)
        assert scheduler.add_jobs([Path("a.mp4"), Path("b.mp4")]) == [1, 2]
        assert [job.id for job in scheduler.jobs] == [1, 2]
        assert all(job.state is JobState.QUEUED for job in scheduler.jobs)

    def test_get_job_returns_snapshot(self, adapter, cache: FrameCache) -> None:
        """Mutating a returned job does not touch the table."""
        scheduler = PipelineScheduler(adapter, cache)
        job_id = scheduler.add_job(Path("a.mp4"))

        snapshot = scheduler.get_job(job_id)
        snapshot.progress = 0.5

        assert scheduler.get_job(job_id).progress == 0.0

    def test_unknown_job(self, adapter, cache: FrameCache) -> None:
        """Looking up a missing id raises ``KeyError``."""
        with pytest.raises(KeyError):
            PipelineScheduler(adapter, cache).get_job(42)

    def test_ids_never_reused(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """Clearing finished jobs does not recycle their ids."""
        scheduler = PipelineScheduler(adapter, cache)
        scheduler.add_jobs([make_video("a.mp4"), make_video("b.mp4")])
        _run(scheduler, out_dir)

        assert scheduler.clear_completed() == 2
        assert scheduler.jobs == []
        assert scheduler.add_job(make_video("c.mp4")) == 3

    def test_clear_all(self, adapter, cache: FrameCache) -> None:
        """``clear_all`` empties the table."""
        scheduler = PipelineScheduler(adapter, cache)
        scheduler.add_jobs([Path("a.mp4"), Path("b.mp4")])
        scheduler.clear_all()
        assert scheduler.jobs == []

    def test_clear_all_refused_during_run(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """The table cannot be emptied while jobs are running."""
        bus = EventBus()
        scheduler = PipelineScheduler(adapter, cache, event_bus=bus)
        scheduler.add_job(make_video("a.mp4"))
        seen: list[tuple[bool, str]] = []

        def _on_progress(**kw: Any) -> None:
            if kw["state"] is JobState.LOADING and not seen:
                try:
                    scheduler.clear_all()
                except ToolError as exc:
                    seen.append((scheduler.is_running, str(exc)))

        bus.subscribe(JobEvent.PROGRESS, _on_progress)
        summary = _run(scheduler, out_dir)

        assert seen == [(True, "Cannot clear jobs while a run is in progress")]
        assert summary.completed == 1
        assert not scheduler.is_running
        assert len(scheduler.jobs) == 1

    @pytest.mark.parametrize("limit", [0, 11])
    def test_concurrency_limit_range(self, adapter, cache: FrameCache, limit: int) -> None:
        """The concurrency bound must be within 1-10."""
        with pytest.raises(ValidationError, match="between 1 and 10"):
            PipelineScheduler(adapter, cache, max_concurrent=limit)


# ── Happy path ─────────────────────────────────────────────────────────────


class TestRun:
    """Tests for successful runs."""

    def test_all_jobs_complete(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """Every job ends Complete with a written grid."""
        scheduler = PipelineScheduler(adapter, cache)
        scheduler.add_jobs([make_video("a.mp4"), make_video("b.mov")])

        summary = _run(scheduler, out_dir)

        assert summary == RunSummary(
            completed=2,
            output_paths=(out_dir / "a_2x2.jpg", out_dir / "b_2x2.jpg"),
        )
        for job in scheduler.jobs:
            assert job.state is JobState.COMPLETE
            assert job.status == "Complete"
            assert job.progress == 1.0
            assert job.output_path is not None and job.output_path.is_file()

    def test_progress_is_monotonic(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """Published progress never decreases and hits each milestone."""
        bus = EventBus()
        progress: dict[int, list[float]] = defaultdict(list)
        bus.subscribe(JobEvent.PROGRESS, lambda **kw: progress[kw["job_id"]].append(kw["progress"]))

        scheduler = PipelineScheduler(adapter, cache, event_bus=bus)
        scheduler.add_jobs([make_video("a.mp4"), make_video("b.mp4")])
        _run(scheduler, out_dir, GridConfig(rows=4, columns=4, target_width=640))

        for values in progress.values():
            assert values == sorted(values)
            assert 0.1 in values
            assert 0.85 in values
            assert values[-1] == 1.0

    def test_completed_events(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """One ``completed`` event is emitted per finished job."""
        bus = EventBus()
        completed: list[dict[str, Any]] = []
        bus.subscribe(JobEvent.COMPLETED, lambda **kw: completed.append(kw))

        scheduler = PipelineScheduler(adapter, cache, event_bus=bus)
        scheduler.add_jobs([make_video("a.mp4")])
        _run(scheduler, out_dir)

        assert len(completed) == 1
        assert completed[0]["job_id"] == 1
        assert completed[0]["output_path"] == out_dir / "a_2x2.jpg"

    def test_sixteen_frame_grid_from_sixty_seconds(
        self,
        adapter,
        cache: FrameCache,
        make_video,
        out_dir: Path,
    ) -> None:
        """A 60 s video in a 4x4 grid gets 16 time-ordered frames from the middle 90 %."""
        scheduler = PipelineScheduler(adapter, cache)
        scheduler.add_job(make_video("movie.mp4"))

        with patch.object(scheduler.composer, "compose", wraps=scheduler.composer.compose) as spy:
            summary = _run(scheduler, out_dir, GridConfig(rows=4, columns=4, target_width=960))

        assert summary.completed == 1
        assert adapter.decode_calls == 24
        frames = spy.call_args.args[0]
        timestamps = [f.timestamp for f in frames]
        assert len(frames) == 16
        assert timestamps == sorted(timestamps)
        assert all(3.0 < t < 57.0 for t in timestamps)

    def test_invalid_config_rejected_up_front(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """An out-of-range grid fails before any job starts."""
        scheduler = PipelineScheduler(adapter, cache)
        scheduler.add_job(make_video("a.mp4"))

        with pytest.raises(ValidationError):
            _run(scheduler, out_dir, GridConfig(rows=0))
        assert scheduler.get_job(1).state is JobState.QUEUED
        assert adapter.decode_calls == 0


# ── Concurrency ────────────────────────────────────────────────────────────


class TestConcurrency:
    """Tests for the in-flight job bound."""

    def test_bound_of_two_with_five_jobs(self, make_adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """No more than two jobs are ever past Queued at once."""
        adapter = make_adapter(decode_delay=0.005)
        bus = EventBus()
        scheduler = PipelineScheduler(adapter, cache, max_concurrent=2, event_bus=bus)
        scheduler.add_jobs([make_video(f"clip{i}.mp4") for i in range(5)])

        active_peak = 0

        def _track(**_kw: Any) -> None:
            nonlocal active_peak
            active = sum(1 for job in scheduler.jobs if job.state not in {JobState.QUEUED} and not job.is_complete)
            active_peak = max(active_peak, active)

        bus.subscribe(JobEvent.PROGRESS, _track)
        summary = _run(scheduler, out_dir)

        assert summary.completed == 5
        assert scheduler.gate is not None
        assert scheduler.gate.peak == 2
        assert scheduler.gate.acquired_total == 5
        assert scheduler.gate.released_total == 5
        assert active_peak == 2

    def test_serial_when_limit_is_one(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """With a bound of one, jobs finish in queue order."""
        bus = EventBus()
        finished: list[int] = []
        bus.subscribe(JobEvent.COMPLETED, lambda **kw: finished.append(kw["job_id"]))

        scheduler = PipelineScheduler(adapter, cache, max_concurrent=1, event_bus=bus)
        scheduler.add_jobs([make_video(f"clip{i}.mp4") for i in range(3)])
        _run(scheduler, out_dir)

        assert finished == [1, 2, 3]
        assert scheduler.gate is not None and scheduler.gate.peak == 1


# ── Failures ───────────────────────────────────────────────────────────────


class TestFailures:
    """Tests for per-job failure isolation."""

    def test_short_video_fails_alone(self, make_adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """A too-short video fails without decoding; siblings still complete."""
        adapter = make_adapter(durations={"short.mp4": 0.0})
        bus = EventBus()
        errors: list[dict[str, Any]] = []
        bus.subscribe(JobEvent.ERROR, lambda **kw: errors.append(kw))

        scheduler = PipelineScheduler(adapter, cache, event_bus=bus)
        scheduler.add_jobs([make_video("a.mp4"), make_video("short.mp4"), make_video("b.mp4")])
        summary = _run(scheduler, out_dir)

        assert (summary.completed, summary.failed) == (2, 1)
        failed = scheduler.get_job(2)
        assert failed.state is JobState.FAILED
        assert failed.status.startswith("Error: ")
        assert failed.error is not None and "too short" in failed.error
        assert adapter.decodes_for("short.mp4") == 0
        assert [e["job_id"] for e in errors] == [2]

    def test_decode_failure_fails_job(self, make_adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """An undecodable candidate fails the job."""
        adapter = make_adapter(fail_after=30.0)
        scheduler = PipelineScheduler(adapter, cache)
        scheduler.add_job(make_video("broken.mp4"))

        summary = _run(scheduler, out_dir)

        assert summary.failed == 1
        assert scheduler.get_job(1).state is JobState.FAILED
        assert not out_dir.exists()

    def test_unexpected_error_fails_job(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """Any exception from composition is recorded, not raised."""
        scheduler = PipelineScheduler(adapter, cache)
        scheduler.add_job(make_video("a.mp4"))

        with patch.object(scheduler.composer, "compose", side_effect=PermissionError("read-only volume")):
            summary = _run(scheduler, out_dir)

        assert summary.failed == 1
        assert scheduler.get_job(1).status == "Error: read-only volume"
        assert scheduler.gate is not None and scheduler.gate.in_use == 0


# ── Cache ──────────────────────────────────────────────────────────────────


class TestCaching:
    """Tests for cache reuse across runs."""

    def test_second_run_hits_cache(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """The same video again is served from cache with identical frames."""
        video = make_video("movie.mp4")
        config = GridConfig(rows=4, columns=4, target_width=640)
        scheduler = PipelineScheduler(adapter, cache)

        with patch.object(scheduler.composer, "compose", wraps=scheduler.composer.compose) as spy:
            scheduler.add_job(video)
            _run(scheduler, out_dir, config)
            cache.flush()
            decodes_after_first = adapter.decode_calls

            scheduler.add_job(video)
            _run(scheduler, out_dir, config)

        first_frames, second_frames = (call.args[0] for call in spy.call_args_list)
        assert [f.timestamp for f in second_frames] == [f.timestamp for f in first_frames]
        assert adapter.decode_calls == decodes_after_first
        assert scheduler.get_job(1).from_cache is False
        assert scheduler.get_job(2).from_cache is True
        assert scheduler.get_job(2).state is JobState.COMPLETE

    def test_disabled_cache_always_extracts(self, adapter, tmp_path: Path, make_video, out_dir: Path) -> None:
        """With caching off every run decodes again."""
        cache = FrameCache(tmp_path / "cache", enabled=False)
        video = make_video("movie.mp4")
        scheduler = PipelineScheduler(adapter, cache)

        scheduler.add_job(video)
        _run(scheduler, out_dir)
        first = adapter.decode_calls
        scheduler.add_job(video)
        _run(scheduler, out_dir)
        cache.close()

        assert adapter.decode_calls == first * 2


# ── Cancellation ───────────────────────────────────────────────────────────


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_all_before_run(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """Jobs cancelled while queued are never admitted."""
        scheduler = PipelineScheduler(adapter, cache)
        scheduler.add_jobs([make_video("a.mp4"), make_video("b.mp4")])
        scheduler.cancel_all()

        summary = _run(scheduler, out_dir)

        assert summary.total == 0
        assert all(job.is_cancelled for job in scheduler.jobs)
        assert adapter.decode_calls == 0

    def test_cancel_all_mid_run(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """Cancelling during extraction stops every job and writes nothing."""
        bus = EventBus()
        scheduler = PipelineScheduler(adapter, cache, max_concurrent=1, event_bus=bus)
        scheduler.add_jobs([make_video(f"clip{i}.mp4") for i in range(3)])

        def _on_progress(**kw: Any) -> None:
            if kw["state"] is JobState.EXTRACTING:
                scheduler.cancel_all()

        bus.subscribe(JobEvent.PROGRESS, _on_progress)
        summary = _run(scheduler, out_dir)

        assert summary == RunSummary(cancelled=3)
        assert all(job.status == "Cancelled" for job in scheduler.jobs)
        assert adapter.decode_calls == 0
        assert scheduler.gate is not None and scheduler.gate.in_use == 0
        assert not out_dir.exists()

    def test_cancel_one_job(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """Cancelling one running job leaves the others untouched."""
        bus = EventBus()
        scheduler = PipelineScheduler(adapter, cache, max_concurrent=1, event_bus=bus)
        scheduler.add_jobs([make_video(f"clip{i}.mp4") for i in range(3)])

        def _on_progress(**kw: Any) -> None:
            if kw["job_id"] == 1 and kw["state"] is JobState.EXTRACTING:
                scheduler.cancel(1)

        bus.subscribe(JobEvent.PROGRESS, _on_progress)
        summary = _run(scheduler, out_dir)

        assert (summary.completed, summary.cancelled) == (2, 1)
        assert scheduler.get_job(1).is_cancelled
        assert adapter.decodes_for("clip0.mp4") == 0

    def test_cancel_queued_job(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """A job cancelled before the run is skipped by it."""
        scheduler = PipelineScheduler(adapter, cache)
        scheduler.add_jobs([make_video("a.mp4"), make_video("b.mp4")])
        scheduler.cancel(2)

        summary = _run(scheduler, out_dir)

        assert summary.completed == 1
        assert scheduler.get_job(2).state is JobState.CANCELLED
        assert adapter.decodes_for("b.mp4") == 0

    def test_cancel_finished_job_is_noop(self, adapter, cache: FrameCache, make_video, out_dir: Path) -> None:
        """Terminal jobs stay as they are."""
        scheduler = PipelineScheduler(adapter, cache)
        scheduler.add_job(make_video("a.mp4"))
        _run(scheduler, out_dir)

        scheduler.cancel(1)
        assert scheduler.get_job(1).state is JobState.COMPLETE
