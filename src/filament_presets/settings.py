"""User settings for the preset engine.

Settings live in a small TOML file in the platform config folder:
    - Windows: %LOCALAPPDATA%/filament-presets/settings.toml
    - macOS: ~/Library/Application Support/filament-presets/settings.toml
    - Linux: ~/.config/filament-presets/settings.toml

Example:
    appdata_path = "D:/portable/BambuStudio"
    preset_folder = "1881310893"
    max_inheritance_depth = 10
    target_printer = "Bambu Lab H2D 0.4 nozzle"
    host_process_names = ["bambustudio", "bambu-studio"]

Every key is optional. The FILAMENT_PRESETS_APPDATA environment variable overrides
appdata_path.
"""
import logging
import os
import tomllib
from pathlib import Path
from typing import Any, NamedTuple, Self

import platformdirs

from .errors import PresetParseError
from .inheritance import MAX_INHERITANCE_DEPTH
from .process import HOST_PROCESS_NAMES

logger = logging.getLogger(__name__)

APP_NAME = "filament-presets"
SETTINGS_FILE = "settings.toml"
APPDATA_ENV = "FILAMENT_PRESETS_APPDATA"


class EngineSettings(NamedTuple):
    """Engine configuration. Defaults work for a standard Bambu Studio install."""

    # Bambu Studio config folder. None means detect.
    appdata_path: Path | None = None
    # User preset folder (installation id). None means read BambuStudio.conf.
    preset_folder: str | None = None
    max_inheritance_depth: int = MAX_INHERITANCE_DEPTH
    # Appended to generated preset names as " @<printer>".
    target_printer: str | None = None
    host_process_names: tuple[str, ...] = HOST_PROCESS_NAMES

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: Path | None = None) -> Self:
        """Build settings from a parsed TOML table, validating types."""
        unknown = set(data) - set(cls._fields)
        if unknown:
            logger.warning("Ignoring unknown settings: %s", ", ".join(sorted(unknown)))

        values: dict[str, Any] = {}
        for key in ("appdata_path", "preset_folder", "target_printer"):
            if key in data:
                if not isinstance(data[key], str):
                    raise PresetParseError(f"'{key}' must be a string", source)
                values[key] = Path(data[key]) if key == "appdata_path" else data[key]

        if "max_inheritance_depth" in data:
            depth = data["max_inheritance_depth"]
            if not isinstance(depth, int) or isinstance(depth, bool) or depth < 1:
                raise PresetParseError("'max_inheritance_depth' must be a positive integer", source)
            values["max_inheritance_depth"] = depth

        if "host_process_names" in data:
            names = data["host_process_names"]
            if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
                raise PresetParseError("'host_process_names' must be a list of strings", source)
            values["host_process_names"] = tuple(names)

        return cls(**values)


def default_settings_path() -> Path:
    return Path(platformdirs.user_config_dir(APP_NAME, appauthor=False)) / SETTINGS_FILE


def load_settings(path: Path | None = None) -> EngineSettings:
    """Load settings from path (default: the platform config folder).

    A missing file gives the defaults. A file that isn't valid TOML, or has values of
    the wrong type, raises PresetParseError.
    """
    path = path or default_settings_path()
    settings = EngineSettings()

    if path.is_file():
        try:
            with open(path, "rb") as fp:
                data = tomllib.load(fp)
        except tomllib.TOMLDecodeError as err:
            raise PresetParseError(f"invalid TOML ({err})", path) from err
        settings = EngineSettings.from_dict(data, source=path)
        logger.debug("Loaded settings from %s", path)
    else:
        logger.debug("No settings file at %s, using defaults", path)

    env_appdata = os.environ.get(APPDATA_ENV)
    if env_appdata:
        settings = settings._replace(appdata_path=Path(env_appdata))

    return settings
