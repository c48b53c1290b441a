"""CLI entry point — click group with the ``generate`` and ``cache-clear`` commands."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import click

from video_grid.core.config import Settings
from video_grid.core.datatypes import AspectMode, BackgroundTheme, JobState
from video_grid.core.exceptions import ToolError, ValidationError


def _configure_logging(verbose: int) -> None:
    """Send log records to stderr; ``-v`` for INFO, ``-vv`` for DEBUG."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load_settings(config_path: str | None) -> Settings:
    """Load settings from *config_path* or the default location."""
    settings = Settings()
    try:
        settings.load(Path(config_path) if config_path else None)
    except ValidationError as exc:
        raise click.BadParameter(str(exc), param_hint="--config") from exc
    return settings


@click.group()
@click.version_option(package_name="video-grid")
@click.option("-v", "--verbose", count=True, help="Log more detail (repeat for debug output).")
def cli(verbose: int) -> None:
    """Video Grid: contact sheets of the most distinct frames of your videos."""
    _configure_logging(verbose)


@cli.command(name="generate")
@click.argument("inputs", nargs=-1, required=True, type=click.Path(exists=True, resolve_path=True))
@click.option("-r", "--rows", type=int, default=None, help="Grid rows, 1-20 (default: 4).")
@click.option("-c", "--columns", type=int, default=None, help="Grid columns, 1-20 (default: 4).")
@click.option("-w", "--width", "target_width", type=int, default=None, help="Output width in pixels (default: 1920).")
@click.option(
    "-a",
    "--aspect",
    "aspect_mode",
    default=None,
    type=click.Choice([mode.value for mode in AspectMode], case_sensitive=False),
    help="How frames fill their cells (default: Fill).",
)
@click.option(
    "-b",
    "--background",
    "background_theme",
    default=None,
    type=click.Choice([theme.value for theme in BackgroundTheme], case_sensitive=False),
    help="Canvas colour (default: Black).",
)
@click.option("--timestamps/--no-timestamps", "show_timestamps", default=None, help="Overlay frame timestamps.")
@click.option("-j", "--jobs", "max_concurrent", type=int, default=None, help="Videos processed at once, 1-10.")
@click.option(
    "-o",
    "--output",
    "output_dir",
    type=click.Path(file_okay=False, resolve_path=True),
    default=None,
    help="Output directory (default: next to each video).",
)
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, resolve_path=True),
    default=None,
    help="Frame cache directory.",
)
@click.option("--no-cache", is_flag=True, default=False, help="Neither read nor write the frame cache.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
    default=None,
    help="Settings file (default: ~/.config/video-grid/config.toml).",
)
def generate_cmd(
    inputs: tuple[str, ...],
    rows: int | None,
    columns: int | None,
    target_width: int | None,
    aspect_mode: str | None,
    background_theme: str | None,
    show_timestamps: bool | None,
    max_concurrent: int | None,
    output_dir: str | None,
    cache_dir: str | None,
    no_cache: bool,
    config_path: str | None,
) -> None:
    """Generate one frame grid per video.

    INPUTS can be video files (.mp4, .m4v, .mov), directories, or a mix of
    both.  Directories are scanned recursively.
    """
    settings = _load_settings(config_path)
    overrides: dict[str, Any] = {
        "rows": rows,
        "columns": columns,
        "target_width": target_width,
        "aspect_mode": aspect_mode,
        "background_theme": background_theme,
        "show_timestamps": show_timestamps,
        "max_concurrent": max_concurrent,
        "output_dir": output_dir,
        "cache_dir": cache_dir,
    }
    for key, value in overrides.items():
        settings.set(key, value)

    from video_grid.core.events import EventBus, JobEvent
    from video_grid.grid import GridGeneratorTool

    bus = EventBus()
    last_state: dict[int, JobState] = {}

    def _on_progress(**kw: Any) -> None:
        if kw["state"].is_terminal or last_state.get(kw["job_id"]) is kw["state"]:
            return
        last_state[kw["job_id"]] = kw["state"]
        click.echo(f"  [{kw['job_id']:3d}] {kw['progress']:4.0%} {kw['message']}")

    bus.subscribe(JobEvent.PROGRESS, _on_progress)
    bus.subscribe(JobEvent.COMPLETED, lambda **kw: click.echo(f"  [{kw['job_id']:3d}] {kw['message']}"))
    bus.subscribe(JobEvent.CANCELLED, lambda **kw: click.echo(f"  [{kw['job_id']:3d}] Cancelled"))
    bus.subscribe(JobEvent.ERROR, lambda **kw: click.echo(f"  [{kw['job_id']:3d}] Error: {kw['message']}", err=True))

    tool = GridGeneratorTool(event_bus=bus)
    try:
        config = settings.grid_config()
        summary = tool.run(
            params={
                "inputs": [Path(p) for p in inputs],
                "rows": config.rows,
                "columns": config.columns,
                "target_width": config.target_width,
                "aspect_mode": config.aspect_mode.value,
                "background_theme": config.background_theme.value,
                "show_timestamps": config.show_timestamps,
                "max_concurrent": settings.get("max_concurrent"),
                "output_dir": settings.get("output_dir"),
                "cache_dir": settings.cache_dir(),
                "use_cache": not no_cache,
            },
        )
    except ValidationError as exc:
        raise click.UsageError(str(exc)) from exc
    except ToolError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(
        f"Generated {summary.completed} grid(s) "
        f"({summary.cancelled} cancelled, {summary.failed} failed)"
    )
    for path in summary.output_paths:
        click.echo(f"  → {path}")
    if summary.failed:
        sys.exit(1)


@cli.command(name="cache-clear")
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, resolve_path=True),
    default=None,
    help="Frame cache directory.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
    default=None,
    help="Settings file (default: ~/.config/video-grid/config.toml).",
)
def cache_clear_cmd(cache_dir: str | None, config_path: str | None) -> None:
    """Delete every cached frame set."""
    settings = _load_settings(config_path)
    settings.set("cache_dir", cache_dir)

    from video_grid.grid.cache import FrameCache

    cache = FrameCache(settings.cache_dir())
    try:
        removed = cache.clear()
    finally:
        cache.close()
    click.echo(f"Removed {removed} cache entries from {cache.cache_dir}")
