"""Shared value objects used across the grid pipeline and scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from PIL import Image


class AspectMode(str, Enum):
    """How each frame is placed inside its grid cell."""

    FILL = "Fill"
    FIT = "Fit"
    SOURCE = "Source"


class BackgroundTheme(str, Enum):
    """Canvas colour scheme; text and border colours invert with it."""

    BLACK = "Black"
    WHITE = "White"


class JobState(str, Enum):
    """Lifecycle of a ``VideoJob``."""

    QUEUED = "Queued"
    LOADING = "Loading"
    EXTRACTING = "Extracting"
    SELECTING = "Selecting"
    COMPOSING = "Composing"
    COMPLETE = "Complete"
    CANCELLED = "Cancelled"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        """Return whether no further transition is possible."""
        return self in {JobState.COMPLETE, JobState.CANCELLED, JobState.FAILED}


@dataclass(frozen=True)
class ExtractedFrame:
    """A decoded frame and the time (in seconds) it was taken from."""

    image: Image.Image
    timestamp: float


@dataclass(frozen=True)
class FrameMetrics:
    """Summary statistics of one candidate frame, used only during selection."""

    index: int
    brightness: float
    color_variance: float
    edge_density: float | None = None
    histogram: tuple[float, ...] | None = None


@dataclass(frozen=True)
class GridConfig:
    """Layout options for one composed grid."""

    rows: int = 4
    columns: int = 4
    target_width: int = 1920
    aspect_mode: AspectMode = AspectMode.FILL
    background_theme: BackgroundTheme = BackgroundTheme.BLACK
    show_timestamps: bool = True

    @property
    def frame_count(self) -> int:
        """Return the number of cells in the grid."""
        return self.rows * self.columns


@dataclass(frozen=True)
class CacheEntry:
    """Frames previously selected for a (path, mtime, frame count) fingerprint."""

    fingerprint: str
    frames: tuple[ExtractedFrame, ...]


@dataclass
class VideoJob:
    """One video queued for grid generation.

    Owned by ``PipelineScheduler``; only the scheduler mutates it.
    """

    id: int
    source_path: Path
    progress: float = 0.0
    state: JobState = JobState.QUEUED
    status: str = "Queued"
    output_path: Path | None = None
    error: str | None = None
    from_cache: bool = False

    @property
    def is_complete(self) -> bool:
        """Return whether the job has reached any terminal state."""
        return self.state.is_terminal

    @property
    def is_cancelled(self) -> bool:
        """Return whether the job ended by cancellation."""
        return self.state is JobState.CANCELLED


@dataclass(frozen=True)
class RunSummary:
    """Aggregate outcome of one scheduler run."""

    completed: int = 0
    cancelled: int = 0
    failed: int = 0
    output_paths: tuple[Path, ...] = field(default_factory=tuple)

    @property
    def total(self) -> int:
        """Return the number of jobs that reached a terminal state."""
        return self.completed + self.cancelled + self.failed
