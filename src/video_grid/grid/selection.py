"""Pick the most visually distinct subset of candidate frames."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from video_grid.core.datatypes import ExtractedFrame, FrameMetrics
from video_grid.grid.gate import CancellationToken, checkpoint
from video_grid.grid.metrics import MetricComputer

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────

FAST_PATH_MAX = 12
MIN_BRIGHTNESS = 0.15
MAX_BRIGHTNESS = 0.85
MIN_COLOR_VARIANCE = 0.008
BRIGHTNESS_WEIGHT = 0.6
VARIANCE_WEIGHT = 0.4
MAX_COMPARISONS = 5
YIELD_EVERY = 10

ProgressCallback = Callable[[float], None]


def _noop(_fraction: float) -> None:
    return None


def evenly_spaced_indices(total: int, count: int) -> list[int]:
    """Return ``floor(i * total / count)`` for ``i`` in ``range(count)``.

    Args:
        total: Number of items to choose from.
        count: Number of indices wanted (``count <= total``).

    Returns:
        Ascending indices into a sequence of length *total*.
    """
    return [min(i * total // count, total - 1) for i in range(count)]


def comparison_indices(index: int, total: int) -> list[int]:
    """Return the reference positions *index* is scored against.

    The immediate neighbours come first, then the quarter, half and
    three-quarter points; self and duplicates are skipped and the list is
    capped at ``MAX_COMPARISONS``.

    Args:
        index: Position of the scored item.
        total: Number of items being scored.

    Returns:
        Up to five positions, never including *index*.
    """
    indices: list[int] = []
    if index > 0:
        indices.append(index - 1)
    if index < total - 1:
        indices.append(index + 1)

    for distant in (total // 4, total // 2, (total * 3) // 4):
        if len(indices) >= MAX_COMPARISONS:
            break
        if distant != index and distant not in indices and distant < total:
            indices.append(distant)
    return indices


def quality_filter(metrics: list[FrameMetrics]) -> list[FrameMetrics]:
    """Drop fades (too dark or too bright) and flat frames (too little variance).

    Args:
        metrics: Metrics of the readable candidates.

    Returns:
        The metrics that pass both thresholds, order preserved.
    """
    return [
        m
        for m in metrics
        if MIN_BRIGHTNESS < m.brightness < MAX_BRIGHTNESS and m.color_variance > MIN_COLOR_VARIANCE
    ]


def distinctness_score(metric: FrameMetrics, others: list[FrameMetrics]) -> float:
    """Average weighted brightness/variance difference against *others*.

    Args:
        metric: The scored frame.
        others: Its comparison partners.

    Returns:
        The mean composite difference, ``0.0`` when *others* is empty.
    """
    if not others:
        return 0.0
    total = 0.0
    for other in others:
        bright_diff = abs(metric.brightness - other.brightness)
        variance_diff = abs(metric.color_variance - other.color_variance)
        total += bright_diff * BRIGHTNESS_WEIGHT + variance_diff * VARIANCE_WEIGHT
    return total / len(others)


class DistinctnessSelector:
    """Choose ``requested_count`` frames that differ most from their peers.

    Args:
        metric_computer: Computes the per-frame statistics.
        fast_path_max: Grids this small skip scoring entirely.
    """

    def __init__(
        self,
        metric_computer: MetricComputer | None = None,
        *,
        fast_path_max: int = FAST_PATH_MAX,
    ) -> None:
        self.metric_computer = metric_computer or MetricComputer()
        self.fast_path_max = fast_path_max

    async def select(
        self,
        candidates: list[ExtractedFrame],
        requested_count: int,
        *,
        token: CancellationToken | None = None,
        progress: ProgressCallback = _noop,
    ) -> list[ExtractedFrame]:
        """Return at most *requested_count* frames in chronological order.

        Args:
            candidates: Decoded candidates in time order.
            requested_count: Number of frames the grid needs.
            token: Cancellation token checked every ``YIELD_EVERY`` scores.
            progress: Receives coarse milestones in ``[0, 1]``.

        Returns:
            ``min(requested_count, usable candidates)`` frames, time-ordered.

        Raises:
            JobCancelled: If *token* is cancelled mid-way.
        """
        if len(candidates) <= requested_count:
            progress(1.0)
            return list(candidates)

        if requested_count <= self.fast_path_max:
            progress(1.0)
            return [candidates[i] for i in evenly_spaced_indices(len(candidates), requested_count)]

        logger.debug("Scoring %d candidates for %d slots", len(candidates), requested_count)
        progress(0.1)

        metrics = await asyncio.to_thread(self.metric_computer.compute_all, candidates)
        progress(0.3)

        if len(metrics) <= requested_count:
            logger.warning(
                "Only %d readable candidates for %d slots, using all of them",
                len(metrics),
                requested_count,
            )
            progress(1.0)
            return [candidates[m.index] for m in metrics]

        filtered = quality_filter(metrics)
        if len(filtered) < requested_count:
            logger.info(
                "Quality filter too aggressive (%d < %d), scoring all %d candidates",
                len(filtered),
                requested_count,
                len(metrics),
            )
            to_score = metrics
        else:
            logger.debug("Quality filter: %d -> %d candidates", len(metrics), len(filtered))
            to_score = filtered
        progress(0.5)

        scores: list[tuple[int, float]] = []
        total = len(to_score)
        for position, metric in enumerate(to_score):
            if position % YIELD_EVERY == 0:
                await checkpoint(token)
                progress(0.5 + (position / total) * 0.4)
            partners = [to_score[i] for i in comparison_indices(position, total)]
            scores.append((metric.index, distinctness_score(metric, partners)))

        scores.sort(key=lambda item: item[1], reverse=True)
        chosen = sorted(index for index, _score in scores[:requested_count])
        progress(1.0)
        return [candidates[i] for i in chosen]
