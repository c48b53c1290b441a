"""Cheap per-frame statistics computed on a heavily downsampled pixel grid."""

from __future__ import annotations

import logging

import cv2
import numpy as np
from PIL import Image

from video_grid.core.datatypes import ExtractedFrame, FrameMetrics

logger = logging.getLogger(__name__)

GRID_SIZE: tuple[int, int] = (16, 16)
HISTOGRAM_BINS = 16
_LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float64)


class MetricComputer:
    """Compute ``FrameMetrics`` from a 16x16 reduction of a frame.

    Brightness and colour variance are always computed; edge density and
    the luminance histogram are opt-in.

    Args:
        grid_size: Size of the reduced grid.
        with_edges: Also compute Canny edge density.
        with_histogram: Also compute a 16-bin luminance histogram.
    """

    def __init__(
        self,
        *,
        grid_size: tuple[int, int] = GRID_SIZE,
        with_edges: bool = False,
        with_histogram: bool = False,
    ) -> None:
        self.grid_size = grid_size
        self.with_edges = with_edges
        self.with_histogram = with_histogram

    def _rasterize(self, image: Image.Image) -> np.ndarray:
        reduced = image.convert("RGB").resize(self.grid_size, resample=Image.Resampling.BILINEAR)
        return np.asarray(reduced, dtype=np.float64) / 255.0

    def compute(self, frame: ExtractedFrame, index: int) -> FrameMetrics | None:
        """Return the metrics of *frame*, or ``None`` if it cannot be rasterized.

        Args:
            frame: The candidate frame.
            index: Position of the frame in the candidate list.

        Returns:
            A ``FrameMetrics``, or ``None`` for unreadable pixel data.
        """
        try:
            pixels = self._rasterize(frame.image)
        except (OSError, ValueError) as exc:
            logger.warning("Skipping candidate %d at %.2fs: %s", index, frame.timestamp, exc)
            return None

        luma = pixels @ _LUMA
        brightness = float(luma.mean())
        # Population variance per channel, averaged over R, G, B.
        color_variance = float(pixels.reshape(-1, 3).var(axis=0).mean())

        edge_density: float | None = None
        if self.with_edges:
            gray = (luma * 255.0).round().astype(np.uint8)
            edges = cv2.Canny(gray, 50, 150)
            edge_density = float(np.count_nonzero(edges)) / edges.size

        histogram: tuple[float, ...] | None = None
        if self.with_histogram:
            counts, _ = np.histogram(np.clip(luma, 0.0, 1.0), bins=HISTOGRAM_BINS, range=(0.0, 1.0))
            histogram = tuple(float(c) for c in counts / counts.sum())

        return FrameMetrics(
            index=index,
            brightness=brightness,
            color_variance=color_variance,
            edge_density=edge_density,
            histogram=histogram,
        )

    def compute_all(self, frames: list[ExtractedFrame]) -> list[FrameMetrics]:
        """Compute metrics for every frame, dropping unreadable ones.

        Args:
            frames: Candidate frames in time order.

        Returns:
            Metrics for the readable frames, ordered by index.
        """
        results = [self.compute(frame, index) for index, frame in enumerate(frames)]
        return [m for m in results if m is not None]
