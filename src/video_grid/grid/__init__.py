"""Grid generator — samples, selects, caches and composes video frames into a grid."""

from video_grid.grid.scheduler import PipelineScheduler
from video_grid.grid.tool import GridGeneratorTool

__all__ = ["GridGeneratorTool", "PipelineScheduler"]
