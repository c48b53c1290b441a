"""Grid composition — lays selected frames out on one JPEG contact sheet."""

from __future__ import annotations

import io
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageDraw, ImageFilter, ImageFont, ImageOps

from video_grid.core.datatypes import AspectMode, BackgroundTheme, ExtractedFrame, GridConfig
from video_grid.core.exceptions import CompositionFailure, ToolError, ValidationError
from video_grid.grid.adapter import VideoAssetAdapter

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────

BORDER_WIDTH = 2
FRAME_PADDING = 8
TITLE_HEIGHT = 90
TITLE_MARGIN = 20
BOTTOM_PADDING = 20
CORNER_RADIUS = 3
TITLE_FONT_SIZE = 20
TIMESTAMP_FONT_SIZE = 18
TIMESTAMP_INSET = 10
SHADOW_BLUR = 4
JPEG_QUALITY = 92
DEFAULT_ASPECT = 16.0 / 9.0

MAX_GRID_SIDE = 20
MIN_TARGET_WIDTH = 320
MAX_TARGET_WIDTH = 10000
MAX_NAME_ATTEMPTS = 10000

_RGB = tuple[int, int, int]
_RGBA = tuple[int, int, int, int]


# ── Validation ────────────────────────────────────────────────────────────


def validate_grid_config(config: GridConfig) -> None:
    """Validate grid layout options before any work is done.

    Args:
        config: The layout to check.

    Raises:
        ValidationError: If rows, columns or width are out of range.
    """
    for name, value in (("rows", config.rows), ("columns", config.columns)):
        if not 1 <= value <= MAX_GRID_SIDE:
            msg = f"{name.capitalize()} must be between 1 and {MAX_GRID_SIDE}, got {value}"
            raise ValidationError(msg)

    if not MIN_TARGET_WIDTH <= config.target_width <= MAX_TARGET_WIDTH:
        msg = f"Target width must be between {MIN_TARGET_WIDTH} and {MAX_TARGET_WIDTH}, got {config.target_width}"
        raise ValidationError(msg)


# ── Formatting ────────────────────────────────────────────────────────────


def format_timestamp(seconds: float) -> str:
    """Format a frame position as ``H:MM:SS`` (one hour or more) or ``M:SS``."""
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_duration(seconds: float) -> str:
    """Format a video length as ``Xh Ym``, ``Xm Ys`` or ``Xs``."""
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


# ── Layout ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GridLayout:
    """Pixel geometry of a composed grid."""

    columns: int
    rows: int
    thumb_width: int
    thumb_height: int
    canvas_width: int
    canvas_height: int

    def cell_origin(self, index: int) -> tuple[int, int]:
        """Return the top-left corner of the bordered cell at *index*.

        Cells fill left-to-right, then top-to-bottom.
        """
        col = index % self.columns
        row = index // self.columns
        x = FRAME_PADDING + col * (self.thumb_width + BORDER_WIDTH * 2 + FRAME_PADDING)
        y = TITLE_HEIGHT + FRAME_PADDING + row * (self.thumb_height + BORDER_WIDTH * 2 + FRAME_PADDING)
        return x, y


def compute_layout(config: GridConfig, aspect_ratio: float) -> GridLayout:
    """Derive thumbnail and canvas sizes from the target width.

    Args:
        config: Grid layout options.
        aspect_ratio: Width / height of one thumbnail.

    Returns:
        The grid geometry.

    Raises:
        CompositionFailure: If the target width leaves no room for thumbnails.
    """
    total_padding = FRAME_PADDING * (config.columns + 1) + BORDER_WIDTH * 2 * config.columns
    thumb_width = (config.target_width - total_padding) // config.columns
    thumb_height = int(thumb_width / aspect_ratio) if aspect_ratio > 0 else 0
    if thumb_width < 1 or thumb_height < 1:
        msg = f"Target width {config.target_width}px is too small for {config.columns} columns"
        raise CompositionFailure(msg)

    canvas_width = (thumb_width + BORDER_WIDTH * 2) * config.columns + FRAME_PADDING * (config.columns + 1)
    canvas_height = (
        (thumb_height + BORDER_WIDTH * 2) * config.rows
        + FRAME_PADDING * (config.rows + 1)
        + TITLE_HEIGHT
        + BOTTOM_PADDING
    )
    return GridLayout(
        columns=config.columns,
        rows=config.rows,
        thumb_width=thumb_width,
        thumb_height=thumb_height,
        canvas_width=canvas_width,
        canvas_height=canvas_height,
    )


# ── Output path resolution ────────────────────────────────────────────────


def _is_writable(directory: Path) -> bool:
    """Probe *directory* by writing and deleting a throwaway file."""
    probe = directory / f".test_write_{uuid.uuid4().hex}"
    try:
        probe.write_text("test", encoding="utf-8")
    except OSError:
        return False
    probe.unlink(missing_ok=True)
    return True


def _free_path(folder: Path, base_name: str) -> Path:
    """Return ``folder/base_name.jpg`` or the first free ``_N`` variant."""
    candidate = folder / f"{base_name}.jpg"
    counter = 1
    while candidate.exists():
        if counter > MAX_NAME_ATTEMPTS:
            msg = f"No free output filename for '{base_name}' in '{folder}'"
            raise ToolError(msg)
        candidate = folder / f"{base_name}_{counter}.jpg"
        counter += 1
    return candidate


def resolve_output_dir(
    source_path: Path,
    output_folder: Path | None = None,
    downloads_dir: Path | None = None,
) -> Path:
    """Choose where the grid image goes.

    Priority: *output_folder*, then the source's directory when writable,
    then the Downloads directory.

    Args:
        source_path: The source video.
        output_folder: Explicit destination chosen by the user.
        downloads_dir: Last-resort directory (defaults to ``~/Downloads``).

    Returns:
        An existing directory.
    """
    if output_folder is not None:
        output_folder.mkdir(parents=True, exist_ok=True)
        return output_folder

    source_dir = source_path.resolve().parent
    if _is_writable(source_dir):
        return source_dir

    fallback = downloads_dir or Path.home() / "Downloads"
    logger.warning("Cannot write next to %s, saving to %s instead", source_path.name, fallback)
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


def resolve_output_path(
    source_path: Path,
    rows: int,
    columns: int,
    output_folder: Path | None = None,
    downloads_dir: Path | None = None,
) -> Path:
    """Return a collision-free ``{stem}_{rows}x{columns}.jpg`` path.

    Args:
        source_path: The source video.
        rows: Grid rows.
        columns: Grid columns.
        output_folder: Explicit destination chosen by the user.
        downloads_dir: Last-resort directory.

    Returns:
        A path that did not exist at the time of the check.
    """
    folder = resolve_output_dir(source_path, output_folder, downloads_dir)
    return _free_path(folder, f"{source_path.stem}_{rows}x{columns}")


# ── Rendering ─────────────────────────────────────────────────────────────


def _theme_colors(theme: BackgroundTheme) -> tuple[_RGB, _RGB, _RGBA]:
    """Return ``(background, foreground, shadow)`` colours for *theme*."""
    if theme is BackgroundTheme.WHITE:
        return (255, 255, 255), (0, 0, 0), (255, 255, 255, 230)
    return (0, 0, 0), (255, 255, 255), (0, 0, 0, 230)


def _load_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    try:
        return ImageFont.truetype("DejaVuSans-Bold.ttf", size)
    except OSError:
        return ImageFont.load_default(size=size)


def _fit_image(image: Image.Image, width: int, height: int, background: _RGB) -> Image.Image:
    """Scale *image* to fit inside ``width x height``, centred on *background*."""
    scale = min(width / image.width, height / image.height)
    new_size = (max(1, round(image.width * scale)), max(1, round(image.height * scale)))
    scaled = image.resize(new_size, resample=Image.Resampling.LANCZOS)
    cell = Image.new("RGB", (width, height), background)
    cell.paste(scaled, ((width - new_size[0]) // 2, (height - new_size[1]) // 2))
    return cell


def _cell_image(image: Image.Image, layout: GridLayout, mode: AspectMode, background: _RGB) -> Image.Image:
    rgb = image.convert("RGB")
    if mode is AspectMode.FILL:
        return ImageOps.fit(rgb, (layout.thumb_width, layout.thumb_height), method=Image.Resampling.LANCZOS)
    return _fit_image(rgb, layout.thumb_width, layout.thumb_height, background)


class GridComposer:
    """Render selected frames into a grid and save it as JPEG.

    Args:
        adapter: Used for the title duration and, in Source mode, the
                 native display size.
        jpeg_quality: JPEG quality (1-100).
        downloads_dir: Last-resort output directory.
    """

    def __init__(
        self,
        adapter: VideoAssetAdapter,
        *,
        jpeg_quality: int = JPEG_QUALITY,
        downloads_dir: Path | None = None,
    ) -> None:
        self.adapter = adapter
        self.jpeg_quality = jpeg_quality
        self.downloads_dir = downloads_dir

    def determine_aspect_ratio(self, source_path: Path, frames: list[ExtractedFrame], config: GridConfig) -> float:
        """Return the thumbnail aspect ratio for *config*.

        Fill and Fit always use 16:9.  Source mode asks the adapter for the
        rotation-corrected display size, then falls back to the first
        frame's size, then to 16:9.
        """
        if config.aspect_mode is not AspectMode.SOURCE:
            return DEFAULT_ASPECT

        try:
            native = self.adapter.get_native_display_size(source_path)
        except (ToolError, OSError) as exc:
            logger.debug("Native size unavailable for %s: %s", source_path.name, exc)
            native = None
        if native is not None and native[0] > 0 and native[1] > 0:
            return native[0] / native[1]

        if frames and frames[0].image.height > 0:
            return frames[0].image.width / frames[0].image.height

        return DEFAULT_ASPECT

    def _title_text(self, source_path: Path, config: GridConfig) -> str:
        try:
            duration = format_duration(self.adapter.get_duration(source_path))
        except (ToolError, OSError) as exc:
            logger.debug("Duration unavailable for %s: %s", source_path.name, exc)
            duration = ""
        return f"{source_path.name}  •  {config.rows}×{config.columns}  •  {duration}"

    def render(self, frames: list[ExtractedFrame], source_path: Path, config: GridConfig) -> Image.Image:
        """Draw the grid in memory.

        Args:
            frames: Frames in chronological order; extras beyond
                    ``rows * columns`` are ignored.
            source_path: The source video (title and aspect ratio).
            config: Grid layout options.

        Returns:
            The composed RGB image.

        Raises:
            CompositionFailure: If there are no frames or no room for them.
        """
        if not frames:
            msg = f"No frames to compose for '{source_path.name}'"
            raise CompositionFailure(msg)

        frames = frames[: config.frame_count]
        layout = compute_layout(config, self.determine_aspect_ratio(source_path, frames, config))
        background, foreground, shadow = _theme_colors(config.background_theme)

        canvas = Image.new("RGBA", (layout.canvas_width, layout.canvas_height), background + (255,))
        draw = ImageDraw.Draw(canvas)

        title_font = _load_font(TITLE_FONT_SIZE)
        title = self._title_text(source_path, config)
        _left, top, _right, bottom = draw.textbbox((0, 0), title, font=title_font)
        draw.text(
            (TITLE_MARGIN, (TITLE_HEIGHT - (bottom - top)) // 2 - top),
            title,
            fill=foreground,
            font=title_font,
        )

        mask = Image.new("L", (layout.thumb_width, layout.thumb_height), 0)
        ImageDraw.Draw(mask).rounded_rectangle(
            (0, 0, layout.thumb_width - 1, layout.thumb_height - 1),
            radius=CORNER_RADIUS - 1,
            fill=255,
        )

        label_font = _load_font(TIMESTAMP_FONT_SIZE)
        labels: list[tuple[tuple[int, int], str]] = []

        for index, frame in enumerate(frames):
            x, y = layout.cell_origin(index)
            draw.rounded_rectangle(
                (
                    x,
                    y,
                    x + layout.thumb_width + BORDER_WIDTH * 2 - 1,
                    y + layout.thumb_height + BORDER_WIDTH * 2 - 1,
                ),
                radius=CORNER_RADIUS,
                fill=foreground,
            )
            cell = _cell_image(frame.image, layout, config.aspect_mode, background)
            canvas.paste(cell, (x + BORDER_WIDTH, y + BORDER_WIDTH), mask)

            if config.show_timestamps:
                text = format_timestamp(frame.timestamp)
                _l, t, _r, b = draw.textbbox((0, 0), text, font=label_font)
                text_x = x + BORDER_WIDTH + TIMESTAMP_INSET
                text_y = y + BORDER_WIDTH + layout.thumb_height - TIMESTAMP_INSET - (b - t) - t
                labels.append(((text_x, text_y), text))

        if labels:
            shadow_layer = Image.new("RGBA", canvas.size, shadow[:3] + (0,))
            shadow_draw = ImageDraw.Draw(shadow_layer)
            for (text_x, text_y), text in labels:
                shadow_draw.text((text_x + 1, text_y + 1), text, fill=shadow, font=label_font)
            canvas.alpha_composite(shadow_layer.filter(ImageFilter.GaussianBlur(SHADOW_BLUR / 2)))
            draw = ImageDraw.Draw(canvas)
            for position, text in labels:
                draw.text(position, text, fill=foreground, font=label_font)

        logger.debug("Composed %dx%d grid image", layout.canvas_width, layout.canvas_height)
        return canvas.convert("RGB")

    def encode(self, image: Image.Image) -> bytes:
        """Encode *image* as JPEG.

        Raises:
            CompositionFailure: If encoding fails or produces no bytes.
        """
        buf = io.BytesIO()
        try:
            image.save(buf, format="JPEG", quality=self.jpeg_quality)
        except (OSError, ValueError) as exc:
            msg = f"Failed to encode grid image: {exc}"
            raise CompositionFailure(msg) from exc
        data = buf.getvalue()
        if not data:
            msg = "JPEG encoder produced no data"
            raise CompositionFailure(msg)
        return data

    def compose(
        self,
        frames: list[ExtractedFrame],
        source_path: Path,
        config: GridConfig,
        output_folder: Path | None = None,
    ) -> Path:
        """Render, encode and save the grid for *source_path*.

        Args:
            frames: Selected frames in chronological order.
            source_path: The source video.
            config: Grid layout options.
            output_folder: Explicit destination; see ``resolve_output_dir``.

        Returns:
            The path of the written JPEG.

        Raises:
            CompositionFailure: If rendering or encoding fails.
            OSError: If the file cannot be written.  A partially written
                file is removed first.
        """
        data = self.encode(self.render(frames, source_path, config))

        for _attempt in range(MAX_NAME_ATTEMPTS):
            output_path = resolve_output_path(
                source_path, config.rows, config.columns, output_folder, self.downloads_dir
            )
            try:
                with output_path.open("xb") as fh:
                    fh.write(data)
            except FileExistsError:
                continue
            except OSError:
                output_path.unlink(missing_ok=True)
                raise
            logger.info("Wrote %s (%d bytes)", output_path, len(data))
            return output_path

        msg = f"No free output filename for '{source_path.stem}_{config.rows}x{config.columns}'"
        raise ToolError(msg)
