"""Content-addressed on-disk cache of selected frames.

One file per fingerprint, ``<sha256>.cache``.  Layout (little-endian)::

    Offset  Size  Field
    0       4     Magic: ``VGFC``
    4       2     Format version (1)
    6       4     Record count N
    10      ...   N records:
                    8   Timestamp in seconds (float64)
                    4   Image length L
                    L   PNG-encoded image bytes
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import struct
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path

from PIL import Image

from video_grid.core.datatypes import CacheEntry, ExtractedFrame
from video_grid.core.exceptions import CacheCorrupt

logger = logging.getLogger(__name__)

_MAGIC = b"VGFC"
_VERSION = 1
_HEADER = struct.Struct("<4sHI")
_RECORD = struct.Struct("<dI")
_SUFFIX = ".cache"


def encode_entry(frames: list[ExtractedFrame]) -> bytes:
    """Serialise *frames* into the cache file format.

    Args:
        frames: Frames in display order.

    Returns:
        The complete file contents.
    """
    buf = io.BytesIO()
    buf.write(_HEADER.pack(_MAGIC, _VERSION, len(frames)))
    for frame in frames:
        png = io.BytesIO()
        frame.image.save(png, format="PNG")
        payload = png.getvalue()
        buf.write(_RECORD.pack(frame.timestamp, len(payload)))
        buf.write(payload)
    return buf.getvalue()


def decode_entry(data: bytes) -> list[ExtractedFrame]:
    """Parse cache file contents back into frames.

    Args:
        data: Raw file bytes.

    Returns:
        The stored frames, in stored order.

    Raises:
        CacheCorrupt: If the header, a record, or an image is malformed or
            the data is truncated.
    """
    if len(data) < _HEADER.size:
        msg = f"Cache data too short ({len(data)} bytes)"
        raise CacheCorrupt(msg)
    magic, version, count = _HEADER.unpack_from(data, 0)
    if magic != _MAGIC:
        msg = f"Not a frame cache, magic bytes: {magic!r}"
        raise CacheCorrupt(msg)
    if version != _VERSION:
        msg = f"Unsupported cache version {version}"
        raise CacheCorrupt(msg)

    frames: list[ExtractedFrame] = []
    offset = _HEADER.size
    for index in range(count):
        if offset + _RECORD.size > len(data):
            msg = f"Cache truncated in record header {index}"
            raise CacheCorrupt(msg)
        timestamp, length = _RECORD.unpack_from(data, offset)
        offset += _RECORD.size
        if offset + length > len(data):
            msg = f"Cache truncated in image {index}"
            raise CacheCorrupt(msg)
        try:
            image = Image.open(io.BytesIO(data[offset : offset + length]))
            image.load()
        except (OSError, ValueError) as exc:
            msg = f"Cache image {index} is unreadable: {exc}"
            raise CacheCorrupt(msg) from exc
        offset += length
        frames.append(ExtractedFrame(image=image.convert("RGB"), timestamp=timestamp))

    if offset != len(data):
        msg = f"Cache has {len(data) - offset} trailing bytes"
        raise CacheCorrupt(msg)
    return frames


class FrameCache:
    """Persist selected frames keyed by (path, mtime, frame count).

    Lookups are synchronous; stores run on a single background thread and
    publish the file with an atomic rename, so a reader sees either the
    old entry, the new one, or none.

    Args:
        cache_dir: Directory holding the ``.cache`` files (created lazily).
        enabled: When ``False`` every lookup misses and stores are dropped.
    """

    def __init__(self, cache_dir: Path, *, enabled: bool = True) -> None:
        self.cache_dir = cache_dir
        self.enabled = enabled
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="frame-cache")
        self._pending: set[Future[Path | None]] = set()
        self._lock = threading.Lock()

    # ── keys ──────────────────────────────────────────────────────────────

    @staticmethod
    def fingerprint(source_path: Path, frame_count: int) -> str:
        """Return the cache key for *source_path* at *frame_count*.

        Falls back to a path-only key when the modification time cannot be
        read.

        Args:
            source_path: The source video.
            frame_count: Number of frames requested.

        Returns:
            A hex SHA-256 digest.
        """
        resolved = source_path.resolve()
        try:
            mtime = resolved.stat().st_mtime
        except OSError:
            logger.debug("No mtime for %s, using path-only cache key", resolved)
            return hashlib.sha256(str(resolved).encode("utf-8")).hexdigest()
        key = f"{resolved}_{mtime}_{frame_count}"
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def entry_path(self, source_path: Path, frame_count: int) -> Path:
        """Return the file that would hold the entry for this key."""
        return self.cache_dir / f"{self.fingerprint(source_path, frame_count)}{_SUFFIX}"

    # ── read ──────────────────────────────────────────────────────────────

    def lookup(self, source_path: Path, frame_count: int) -> CacheEntry | None:
        """Return the cached frames, or ``None`` on a miss.

        Corrupt or unreadable entries count as misses.

        Args:
            source_path: The source video.
            frame_count: Number of frames requested.

        Returns:
            A ``CacheEntry`` on a hit, ``None`` otherwise.
        """
        if not self.enabled:
            return None
        fingerprint = self.fingerprint(source_path, frame_count)
        path = self.cache_dir / f"{fingerprint}{_SUFFIX}"
        if not path.is_file():
            return None

        try:
            frames = decode_entry(path.read_bytes())
        except (CacheCorrupt, OSError) as exc:
            logger.warning("Cache entry for %s is corrupt, extracting fresh frames: %s", source_path.name, exc)
            return None
        if not frames:
            return None

        logger.info("Cache hit for %s (%d frames)", source_path.name, len(frames))
        return CacheEntry(fingerprint=fingerprint, frames=tuple(frames))

    # ── write ─────────────────────────────────────────────────────────────

    def _write(self, target: Path, frames: list[ExtractedFrame]) -> Path:
        data = encode_entry(frames)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-", suffix=_SUFFIX)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Cached %d frames at %s", len(frames), target)
        return target

    def _on_done(self, future: Future[Path | None]) -> None:
        with self._lock:
            self._pending.discard(future)
        exc = future.exception()
        if exc is not None:
            logger.warning("Failed to write frame cache: %s", exc)

    def store(self, source_path: Path, frame_count: int, frames: list[ExtractedFrame]) -> Future[Path | None]:
        """Schedule *frames* to be written in the background.

        Never raises for I/O problems; they are logged when the write
        finishes.

        Args:
            source_path: The source video.
            frame_count: Number of frames requested.
            frames: The selected frames.

        Returns:
            A future resolving to the written path (``None`` when disabled).
        """
        if not self.enabled or not frames:
            done: Future[Path | None] = Future()
            done.set_result(None)
            return done
        # Key reflects the source mtime at schedule time.
        target = self.entry_path(source_path, frame_count)
        future: Future[Path | None] = self._executor.submit(self._write, target, list(frames))
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return future

    def flush(self) -> None:
        """Block until every pending write has finished."""
        with self._lock:
            pending = list(self._pending)
        wait(pending)

    def close(self) -> None:
        """Finish pending writes and stop the background thread."""
        self._executor.shutdown(wait=True)

    # ── housekeeping ──────────────────────────────────────────────────────

    def remove(self, source_path: Path, frame_count: int) -> bool:
        """Delete the entry for this key.

        Returns:
            Whether an entry was removed.
        """
        path = self.entry_path(source_path, frame_count)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def clear(self) -> int:
        """Delete every cache entry.

        Returns:
            The number of files removed.
        """
        if not self.cache_dir.is_dir():
            return 0
        removed = 0
        for path in self.cache_dir.glob(f"*{_SUFFIX}"):
            path.unlink(missing_ok=True)
            removed += 1
        logger.info("Removed %d cache entries from %s", removed, self.cache_dir)
        return removed
