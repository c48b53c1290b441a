"""Video asset access — the boundary between the pipeline and a decoding backend."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path

import cv2
from PIL import Image

from video_grid.core.exceptions import DecodeFailure, ToolError

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS: frozenset[str] = frozenset({".mp4", ".m4v", ".mov"})


class VideoAssetAdapter(ABC):
    """Read-only view of a video file: duration, frames, display size.

    Implementations are called from worker threads and must not share
    mutable decoder state between calls.
    """

    @abstractmethod
    def get_duration(self, path: Path) -> float:
        """Return the duration of *path* in seconds.

        Raises:
            ToolError: If the video cannot be opened.
        """
        ...

    @abstractmethod
    def decode_frame(self, path: Path, timestamp: float, max_size: tuple[int, int]) -> Image.Image:
        """Decode the frame nearest *timestamp*, scaled to fit within *max_size*.

        Raises:
            DecodeFailure: If no frame can be produced.
        """
        ...

    def get_native_display_size(self, path: Path) -> tuple[int, int] | None:
        """Return the display size (rotation applied), or ``None`` if unknown."""
        return None


class OpenCVVideoAdapter(VideoAssetAdapter):
    """``VideoAssetAdapter`` backed by ``cv2.VideoCapture``.

    Each call opens its own capture, so concurrent calls from different
    worker threads never share a decoder.
    """

    def _open(self, path: Path) -> cv2.VideoCapture:
        cap = cv2.VideoCapture(str(path))
        if not cap.isOpened():
            cap.release()
            msg = f"Video '{path}' could not be opened"
            raise ToolError(msg)
        return cap

    def get_duration(self, path: Path) -> float:
        """Return the duration in seconds derived from frame count and fps.

        Args:
            path: Path to the video file.

        Returns:
            Duration in seconds, ``0.0`` when the fps metadata is missing.

        Raises:
            ToolError: If the video cannot be opened.
        """
        cap = self._open(path)
        try:
            fps = float(cap.get(cv2.CAP_PROP_FPS))
            total_frames = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
        finally:
            cap.release()
        return total_frames / fps if fps > 0 else 0.0

    def decode_frame(self, path: Path, timestamp: float, max_size: tuple[int, int]) -> Image.Image:
        """Seek to *timestamp* and decode one RGB frame.

        Args:
            path: Path to the video file.
            timestamp: Position in seconds.
            max_size: Bounding box ``(width, height)`` for the returned image.

        Returns:
            An RGB ``Image`` no larger than *max_size*, aspect preserved.

        Raises:
            DecodeFailure: If the video cannot be opened or read at *timestamp*.
        """
        try:
            cap = self._open(path)
        except ToolError as exc:
            raise DecodeFailure(str(exc)) from exc
        try:
            cap.set(cv2.CAP_PROP_POS_MSEC, timestamp * 1000.0)
            ret, frame = cap.read()
        finally:
            cap.release()

        if not ret or frame is None:
            msg = f"Could not decode a frame at {timestamp:.3f}s from '{path.name}'"
            raise DecodeFailure(msg)

        image = Image.fromarray(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))
        image.thumbnail(max_size, resample=Image.Resampling.BILINEAR)
        return image

    def get_native_display_size(self, path: Path) -> tuple[int, int] | None:
        """Return the track size with 90°/270° rotation metadata applied.

        Args:
            path: Path to the video file.

        Returns:
            ``(width, height)`` as displayed, or ``None`` if unavailable.
        """
        try:
            cap = self._open(path)
        except ToolError:
            return None
        try:
            width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
            height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
            rotation = int(cap.get(cv2.CAP_PROP_ORIENTATION_META))
        finally:
            cap.release()

        if width <= 0 or height <= 0:
            return None
        if rotation % 180 == 90:
            width, height = height, width
        return width, height


def collect_video_paths(inputs: list[Path]) -> list[Path]:
    """Collect video file paths from a mix of files and directories.

    Individual files are included if they have a supported extension.
    Directories are scanned recursively; hidden files and directories are
    skipped.  Input order is preserved and duplicates are dropped.

    Args:
        inputs: A list of file and/or directory paths.

    Returns:
        The video file paths, in discovery order.

    Raises:
        ToolError: If no video files are found after scanning all inputs.
    """
    found: list[Path] = []
    seen: set[Path] = set()

    def _add(candidate: Path) -> None:
        if candidate.suffix.lower() in VIDEO_EXTENSIONS and candidate not in seen:
            seen.add(candidate)
            found.append(candidate)

    for entry in inputs:
        entry = entry.resolve()
        if entry.is_file():
            _add(entry)
        elif entry.is_dir():
            for child in sorted(entry.rglob("*")):
                relative = child.relative_to(entry)
                if any(part.startswith(".") for part in relative.parts):
                    continue
                if child.is_file():
                    _add(child)

    if not found:
        msg = "No video files (.mp4, .m4v, .mov) found in the provided inputs"
        raise ToolError(msg)

    logger.info("Collected %d video file(s)", len(found))
    return found
