"""Exception hierarchy for the video-grid framework."""


class VideoGridError(Exception):
    """Base exception for all video-grid errors."""


class ToolError(VideoGridError):
    """Raised when a tool encounters an error during execution."""


class ValidationError(VideoGridError):
    """Raised when parameter validation fails."""


class VideoTooShort(ToolError):
    """Raised when nothing is left of a video after trimming intro and outro."""


class DecodeFailure(ToolError):
    """Raised when the video adapter cannot produce a frame at a timestamp."""


class CacheCorrupt(ToolError):
    """Raised when a frame cache entry cannot be parsed.

    Never escapes ``FrameCache``: a corrupt entry is treated as a miss.
    """


class CompositionFailure(ToolError):
    """Raised when the grid image cannot be encoded."""


class JobCancelled(Exception):  # noqa: N818
    """Control-flow signal raised at a checkpoint once a job is cancelled.

    Not a ``VideoGridError``: cancellation is a terminal state, not a failure.
    """
