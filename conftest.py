"""Shared fixtures: a synthetic video backend and helpers for frames and files."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest
from PIL import Image, ImageDraw

from video_grid.core.datatypes import ExtractedFrame
from video_grid.core.exceptions import DecodeFailure
from video_grid.grid.adapter import VideoAssetAdapter


def synthetic_image(timestamp: float, size: tuple[int, int] = (64, 36)) -> Image.Image:
    """Return a deterministic two-tone frame whose colours depend on *timestamp*."""
    level = int(40 + (timestamp * 37) % 170)
    image = Image.new("RGB", size, (level, 255 - level, (level * 3) % 256))
    ImageDraw.Draw(image).rectangle((0, 0, size[0] // 2, size[1] // 2), fill=(255 - level, level, 128))
    return image


class FakeAdapter(VideoAssetAdapter):
    """In-memory ``VideoAssetAdapter`` that paints frames instead of decoding them.

    Args:
        duration: Duration reported for every video.
        durations: Per-file overrides keyed by file name.
        size: Size of the painted frames before scaling.
        native_size: Value returned by ``get_native_display_size``.
        fail_after: Decoding any timestamp at or beyond this raises ``DecodeFailure``.
        decode_delay: Seconds each decode sleeps (simulates real work).
    """

    def __init__(
        self,
        duration: float = 60.0,
        *,
        durations: dict[str, float] | None = None,
        size: tuple[int, int] = (64, 36),
        native_size: tuple[int, int] | None = None,
        fail_after: float | None = None,
        decode_delay: float = 0.0,
    ) -> None:
        self.duration = duration
        self.durations = durations or {}
        self.size = size
        self.native_size = native_size
        self.fail_after = fail_after
        self.decode_delay = decode_delay
        self.decoded: list[tuple[str, float]] = []
        self._lock = threading.Lock()

    @property
    def decode_calls(self) -> int:
        """Return how many frames have been decoded so far."""
        return len(self.decoded)

    def decodes_for(self, name: str) -> int:
        """Return how many frames of the file called *name* were decoded."""
        return sum(1 for decoded_name, _ts in self.decoded if decoded_name == name)

    def get_duration(self, path: Path) -> float:
        return self.durations.get(path.name, self.duration)

    def decode_frame(self, path: Path, timestamp: float, max_size: tuple[int, int]) -> Image.Image:
        with self._lock:
            self.decoded.append((path.name, timestamp))
        if self.fail_after is not None and timestamp >= self.fail_after:
            msg = f"Synthetic decode failure at {timestamp:.2f}s"
            raise DecodeFailure(msg)
        if self.decode_delay:
            time.sleep(self.decode_delay)
        image = synthetic_image(timestamp, self.size)
        image.thumbnail(max_size)
        return image

    def get_native_display_size(self, path: Path) -> tuple[int, int] | None:
        return self.native_size


@pytest.fixture()
def adapter() -> FakeAdapter:
    """Return a fake adapter for a 60 s video."""
    return FakeAdapter()


@pytest.fixture()
def make_adapter() -> Callable[..., FakeAdapter]:
    """Return the ``FakeAdapter`` class for tests that need custom settings."""
    return FakeAdapter


@pytest.fixture()
def make_frames() -> Callable[..., list[ExtractedFrame]]:
    """Return a factory producing *count* synthetic frames one second apart."""

    def _make(count: int, *, start: float = 1.0, size: tuple[int, int] = (64, 36)) -> list[ExtractedFrame]:
        return [
            ExtractedFrame(image=synthetic_image(start + i, size), timestamp=start + i) for i in range(count)
        ]

    return _make


@pytest.fixture()
def make_video(tmp_path: Path) -> Callable[[str], Path]:
    """Return a factory creating placeholder video files in ``tmp_path/videos``."""
    folder = tmp_path / "videos"
    folder.mkdir()

    def _make(name: str) -> Path:
        path = folder / name
        path.write_bytes(b"\x00")
        return path

    return _make
