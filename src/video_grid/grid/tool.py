"""GridGeneratorTool — BaseTool wrapper around the grid pipeline scheduler."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from video_grid.core.base_tool import BaseTool, ToolParameter
from video_grid.core.config import DEFAULT_CACHE_DIR
from video_grid.core.datatypes import AspectMode, BackgroundTheme, GridConfig, RunSummary, VideoJob
from video_grid.core.events import EventBus
from video_grid.grid.adapter import OpenCVVideoAdapter, VideoAssetAdapter, collect_video_paths
from video_grid.grid.cache import FrameCache
from video_grid.grid.composer import MAX_GRID_SIDE, MAX_TARGET_WIDTH, MIN_TARGET_WIDTH
from video_grid.grid.scheduler import DEFAULT_MAX_CONCURRENT, MAX_CONCURRENT_LIMIT, PipelineScheduler

logger = logging.getLogger(__name__)


class GridGeneratorTool(BaseTool):
    """Build one contact-sheet grid per input video."""

    name = "grid_generator"
    display_name = "Video Grid"
    description = "Compose a grid of distinct frames for each video"
    version = "0.1.0"

    def __init__(self, event_bus: EventBus | None = None, adapter: VideoAssetAdapter | None = None) -> None:
        """Initialise the grid generator tool.

        Args:
            event_bus: Shared event bus for progress reporting.
            adapter: Video backend.  Defaults to ``OpenCVVideoAdapter``.
        """
        super().__init__(event_bus=event_bus)
        self.adapter = adapter or OpenCVVideoAdapter()
        self._jobs: list[VideoJob] = []

    @property
    def jobs(self) -> list[VideoJob]:
        """Return the final job snapshots of the most recent run."""
        return list(self._jobs)

    def define_parameters(self) -> list[ToolParameter]:
        """Return the parameter schema for grid generation."""
        return [
            ToolParameter(
                name="inputs",
                label="Videos",
                type=list,
                required=True,
                help="Video files and/or directories to scan.",
            ),
            ToolParameter(
                name="rows",
                label="Rows",
                type=int,
                default=4,
                min_value=1,
                max_value=MAX_GRID_SIDE,
                help="Number of grid rows.",
            ),
            ToolParameter(
                name="columns",
                label="Columns",
                type=int,
                default=4,
                min_value=1,
                max_value=MAX_GRID_SIDE,
                help="Number of grid columns.",
            ),
            ToolParameter(
                name="target_width",
                label="Width (px)",
                type=int,
                default=1920,
                min_value=MIN_TARGET_WIDTH,
                max_value=MAX_TARGET_WIDTH,
                help="Width of the output image.",
            ),
            ToolParameter(
                name="aspect_mode",
                label="Aspect mode",
                type=str,
                default=AspectMode.FILL.value,
                choices=[mode.value for mode in AspectMode],
                help="How frames are fitted into their cells.",
            ),
            ToolParameter(
                name="background_theme",
                label="Background",
                type=str,
                default=BackgroundTheme.BLACK.value,
                choices=[theme.value for theme in BackgroundTheme],
                help="Canvas colour.",
            ),
            ToolParameter(
                name="show_timestamps",
                label="Timestamps",
                type=bool,
                default=True,
                help="Overlay each frame's timestamp.",
            ),
            ToolParameter(
                name="max_concurrent",
                label="Parallel jobs",
                type=int,
                default=DEFAULT_MAX_CONCURRENT,
                min_value=1,
                max_value=MAX_CONCURRENT_LIMIT,
                help="How many videos are processed at once.",
            ),
            ToolParameter(
                name="output_dir",
                label="Output directory",
                type=Path,
                help="Where grids are written (default: next to each video).",
            ),
            ToolParameter(
                name="cache_dir",
                label="Cache directory",
                type=Path,
                help="Where selected frames are cached.",
            ),
            ToolParameter(
                name="use_cache",
                label="Use cache",
                type=bool,
                default=True,
                help="Reuse frames selected by earlier runs.",
            ),
        ]

    def _resolve(self, params: dict[str, Any]) -> dict[str, Any]:
        """Fill unset parameters with their schema defaults."""
        values = {param.name: param.default for param in self.define_parameters()}
        values.update({key: value for key, value in params.items() if value is not None})
        return values

    def _do_execute(self, params: dict[str, Any]) -> RunSummary:
        """Queue every video found in the inputs and run the scheduler.

        Args:
            params: Validated parameter dictionary.

        Returns:
            A ``RunSummary`` with per-state counts and the written grids.
        """
        values = self._resolve(params)
        videos = collect_video_paths([Path(p) for p in values["inputs"]])
        config = GridConfig(
            rows=values["rows"],
            columns=values["columns"],
            target_width=values["target_width"],
            aspect_mode=AspectMode(values["aspect_mode"]),
            background_theme=BackgroundTheme(values["background_theme"]),
            show_timestamps=bool(values["show_timestamps"]),
        )

        cache = FrameCache(values["cache_dir"] or DEFAULT_CACHE_DIR, enabled=bool(values["use_cache"]))
        scheduler = PipelineScheduler(
            self.adapter,
            cache,
            max_concurrent=values["max_concurrent"],
            event_bus=self.event_bus,
        )
        scheduler.add_jobs(videos)
        logger.info("Generating %dx%d grids for %d video(s)", config.rows, config.columns, len(videos))

        try:
            summary = asyncio.run(scheduler.run(config, values["output_dir"]))
        finally:
            cache.close()
            self._jobs = scheduler.jobs
        return summary
