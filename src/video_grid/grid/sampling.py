"""Candidate timestamp planning and frame decoding."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable
from pathlib import Path

from video_grid.core.datatypes import ExtractedFrame
from video_grid.core.exceptions import DecodeFailure, VideoTooShort
from video_grid.grid.adapter import VideoAssetAdapter
from video_grid.grid.gate import CancellationToken, checkpoint

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────

EDGE_SKIP_FRACTION = 0.05
DEFAULT_OVERSAMPLE = 1.5
DEFAULT_MAX_SIZE: tuple[int, int] = (480, 480)
YIELD_EVERY = 5

ProgressCallback = Callable[[float], None]


def _noop(_fraction: float) -> None:
    return None


class FrameSampler:
    """Pick oversampled candidate timestamps and decode them.

    The first and last 5 % of the video are skipped as intro/outro, and
    ``ceil(requested * oversample)`` timestamps are spread evenly across
    what remains.

    Args:
        adapter: Backend used for duration and decoding.
        oversample: Candidate multiplier (>= 1.0).
        max_size: Bounding box for decoded frames.
    """

    def __init__(
        self,
        adapter: VideoAssetAdapter,
        *,
        oversample: float = DEFAULT_OVERSAMPLE,
        max_size: tuple[int, int] = DEFAULT_MAX_SIZE,
    ) -> None:
        if oversample < 1.0:
            msg = f"Oversample factor must be >= 1.0, got {oversample}"
            raise ValueError(msg)
        self.adapter = adapter
        self.oversample = oversample
        self.max_size = max_size

    def plan(self, duration: float, requested_count: int) -> list[float]:
        """Return the candidate timestamps for a video of *duration* seconds.

        Args:
            duration: Total duration in seconds.
            requested_count: Number of frames the grid needs.

        Returns:
            Ascending timestamps strictly inside the usable span.

        Raises:
            VideoTooShort: If nothing is left after trimming both edges.
        """
        skip_start = duration * EDGE_SKIP_FRACTION
        skip_end = duration * EDGE_SKIP_FRACTION
        usable = duration - skip_start - skip_end
        if usable <= 0:
            msg = f"Video too short ({duration:.2f}s) to sample frames from"
            raise VideoTooShort(msg)

        candidate_count = math.ceil(requested_count * self.oversample)
        step = usable / (candidate_count + 1)
        return [skip_start + step * (i + 1) for i in range(candidate_count)]

    async def extract(
        self,
        path: Path,
        requested_count: int,
        *,
        token: CancellationToken | None = None,
        progress: ProgressCallback = _noop,
    ) -> list[ExtractedFrame]:
        """Decode every candidate frame of *path*.

        Args:
            path: Source video.
            requested_count: Number of frames the grid needs.
            token: Cancellation token checked every ``YIELD_EVERY`` decodes.
            progress: Receives the fraction of candidates decoded.

        Returns:
            One ``ExtractedFrame`` per planned timestamp, in time order.

        Raises:
            VideoTooShort: If the video has no usable span.
            DecodeFailure: If any single candidate cannot be decoded.
            JobCancelled: If *token* is cancelled mid-way.
        """
        duration = await asyncio.to_thread(self.adapter.get_duration, path)
        timestamps = self.plan(duration, requested_count)

        started = time.perf_counter()
        frames: list[ExtractedFrame] = []
        for index, timestamp in enumerate(timestamps):
            if index % YIELD_EVERY == 0:
                await checkpoint(token)
            try:
                image = await asyncio.to_thread(self.adapter.decode_frame, path, timestamp, self.max_size)
            except DecodeFailure:
                raise
            except Exception as exc:
                msg = f"Decoding '{path.name}' at {timestamp:.3f}s failed: {exc}"
                raise DecodeFailure(msg) from exc
            frames.append(ExtractedFrame(image=image, timestamp=timestamp))
            progress((index + 1) / len(timestamps))

        progress(1.0)
        logger.info(
            "Decoded %d candidates from %s in %.2fs",
            len(frames),
            path.name,
            time.perf_counter() - started,
        )
        return frames
