"""Settings — grid defaults and runtime knobs backed by a TOML file."""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

from video_grid.core.datatypes import AspectMode, BackgroundTheme, GridConfig
from video_grid.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG_DIR = Path.home() / ".config" / "video-grid"
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "video-grid" / "frames"

DEFAULT_SETTINGS: dict[str, Any] = {
    "rows": 4,
    "columns": 4,
    "target_width": 1920,
    "aspect_mode": AspectMode.FILL.value,
    "background_theme": BackgroundTheme.BLACK.value,
    "show_timestamps": True,
    "max_concurrent": 2,
    "output_dir": None,
    "cache_dir": None,
}

_INT_KEYS: frozenset[str] = frozenset({"rows", "columns", "target_width", "max_concurrent"})
_PATH_KEYS: frozenset[str] = frozenset({"output_dir", "cache_dir"})


class Settings:
    """Layered configuration: built-in defaults, then ``config.toml``, then overrides.

    Only the keys in ``DEFAULT_SETTINGS`` are recognised; unknown keys in
    the file are logged and ignored.

    Args:
        config_dir: Directory holding ``config.toml``.
                    Defaults to ``~/.config/video-grid/``.
    """

    def __init__(self, config_dir: Path | None = None) -> None:
        """Initialise settings with the built-in defaults.

        Args:
            config_dir: Custom configuration directory.  Uses the
                        platform default if ``None``.
        """
        self._config_dir = config_dir or _DEFAULT_CONFIG_DIR
        self._values: dict[str, Any] = dict(DEFAULT_SETTINGS)

    @property
    def config_dir(self) -> Path:
        """Return the configuration directory path."""
        return self._config_dir

    def load(self, path: Path | None = None) -> None:
        """Load values from a TOML file.

        Missing files are silently skipped.

        Args:
            path: Explicit file to read.  Defaults to ``config_dir/config.toml``.

        Raises:
            ValidationError: If the file is not valid TOML or a value has
                the wrong type.
        """
        config_file = path or self._config_dir / "config.toml"
        if not config_file.is_file():
            return

        try:
            data = self._read_toml(config_file)
        except tomllib.TOMLDecodeError as exc:
            msg = f"Invalid TOML in '{config_file}': {exc}"
            raise ValidationError(msg) from exc

        for key, value in data.items():
            if key not in DEFAULT_SETTINGS:
                logger.warning("Ignoring unknown setting '%s' in %s", key, config_file)
                continue
            self.set(key, value)
        logger.info("Loaded settings from %s", config_file)

    def get(self, key: str, default: Any = None) -> Any:
        """Retrieve a setting.

        Args:
            key: The setting name.
            default: Fallback value when the setting is unset (``None``).

        Returns:
            The setting value, or *default*.
        """
        value = self._values.get(key)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        """Set a value in memory, coercing paths and checking integer keys.

        ``None`` values are ignored, so unset CLI options never mask
        values loaded from the file.

        Args:
            key: The setting name.
            value: The value to store.

        Raises:
            ValidationError: If an integer setting receives a non-integer.
        """
        if value is None:
            return
        if key in _INT_KEYS and (isinstance(value, bool) or not isinstance(value, int)):
            msg = f"Setting '{key}' must be an integer, got {value!r}"
            raise ValidationError(msg)
        if key in _PATH_KEYS:
            value = Path(value).expanduser()
        self._values[key] = value

    def cache_dir(self) -> Path:
        """Return the frame cache directory."""
        return self.get("cache_dir", DEFAULT_CACHE_DIR)

    def grid_config(self) -> GridConfig:
        """Build a ``GridConfig`` from the current values.

        Raises:
            ValidationError: If the aspect mode or theme is not recognised.
        """
        try:
            aspect_mode = AspectMode(self._values["aspect_mode"])
            theme = BackgroundTheme(self._values["background_theme"])
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        return GridConfig(
            rows=self._values["rows"],
            columns=self._values["columns"],
            target_width=self._values["target_width"],
            aspect_mode=aspect_mode,
            background_theme=theme,
            show_timestamps=bool(self._values["show_timestamps"]),
        )

    @staticmethod
    def _read_toml(path: Path) -> dict[str, Any]:
        """Read and parse a TOML file.

        Args:
            path: Path to the TOML file.

        Returns:
            Parsed dictionary.
        """
        with path.open("rb") as fh:
            return tomllib.load(fh)
