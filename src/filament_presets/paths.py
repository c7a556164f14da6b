# cspell:ignore Bambu appdata
r"""Locate the Bambu Studio configuration folder and its preset sub-folders.

The folder structure we care about is:
    <config root>                  (e.g. c:\users\<username>\appdata\Roaming\BambuStudio)
        BambuStudio.conf           (json, names the active preset folder)
        system
            BBL
                filament           (system presets, read only for us)
        user
            default                (created by BS, never used for real presets)
            <preset folder>        (numeric id of the logged in user/installation)
                filament
                    base           (user filament presets live here)

Everything in this module is read only probing. Nothing is created or cached - the
caller resolves the paths once per session and passes the result around.
"""
import json
import logging
import sys
from pathlib import Path
from typing import NamedTuple

import platformdirs

from .errors import HostNotFoundError

logger = logging.getLogger(__name__)

APP_NAME = "BambuStudio"
CONF_FILE = "BambuStudio.conf"
PRESET_FOLDER = "preset_folder"
DEFAULT_USER_FOLDER = "default"
DEFAULT_ENCODING = "utf-8"

# Well known locations relative to the home folder, used if the platform convention
# comes up empty.
FALLBACK_ROOTS = {
    "win32": "AppData/Roaming/" + APP_NAME,
    "darwin": "Library/Application Support/" + APP_NAME,
    "linux": ".config/" + APP_NAME,
}


class StudioPaths(NamedTuple):
    """Resolved Bambu Studio folders."""

    config_root: Path
    # System filament presets (config_root/system/BBL/filament).
    system_dir: Path
    # Root of all user preset folders (config_root/user).
    user_root: Path
    # Active preset folder name from BambuStudio.conf, e.g. "1881310893".
    preset_folder: str | None = None


def _platform_key(platform: str) -> str:
    if platform.startswith("linux"):
        return "linux"
    return platform


def candidate_roots(platform: str | None = None, home: Path | None = None) -> list[Path]:
    """Return possible config roots in priority order.

    The platform conventional location only applies when probing the real machine,
    so it is skipped if a platform or home override is supplied.
    """
    platform = _platform_key(platform or sys.platform)
    candidates: list[Path] = []

    if home is None and _platform_key(sys.platform) == platform:
        candidates.append(
            Path(platformdirs.user_data_dir(APP_NAME, appauthor=False, roaming=True))
        )

    fallback = FALLBACK_ROOTS.get(platform)
    if fallback is not None:
        path = (home or Path.home()) / fallback
        if path not in candidates:
            candidates.append(path)

    return candidates


def find_config_root(platform: str | None = None, home: Path | None = None) -> Path:
    """Return the first candidate root that exists."""
    candidates = candidate_roots(platform, home)
    for path in candidates:
        if path.is_dir():
            logger.debug("Found Bambu Studio config at %s", path)
            return path

    raise HostNotFoundError(candidates)


def read_preset_folder(config_root: Path) -> str | None:
    """Read the active preset folder name from BambuStudio.conf.

    Returns None (with a warning) if the file is missing or unreadable, or doesn't
    name a preset folder.
    """
    conf_path = config_root / CONF_FILE
    try:
        with open(conf_path, encoding=DEFAULT_ENCODING) as fp:
            # BS tacks a checksum comment onto the json. Strip comment lines.
            raw_json = "".join(line for line in fp if not line.startswith("#"))
    except OSError as err:
        logger.warning("Could not read %s: %s", conf_path, err)
        return None

    try:
        data = json.loads(raw_json)
    except json.JSONDecodeError as err:
        logger.warning("Could not parse %s as json: %s", conf_path, err)
        return None

    if not isinstance(data, dict):
        logger.warning("Unexpected content in %s", conf_path)
        return None

    # Current releases nest it under "app", older ones had it at the top level.
    app = data.get("app")
    folder = app.get(PRESET_FOLDER) if isinstance(app, dict) else None
    if folder is None:
        folder = data.get(PRESET_FOLDER)

    if isinstance(folder, (str, int)) and str(folder):
        return str(folder)

    logger.warning("No '%s' value in %s", PRESET_FOLDER, conf_path)
    return None


def detect(
    appdata_path: Path | None = None,
    preset_folder: str | None = None,
    platform: str | None = None,
    home: Path | None = None,
) -> StudioPaths:
    """Resolve Bambu Studio paths.

    appdata_path and preset_folder override the detected values. appdata_path must
    exist. If preset_folder is not supplied it is read from BambuStudio.conf.
    """
    if appdata_path is not None:
        if not appdata_path.is_dir():
            raise HostNotFoundError([appdata_path])
        config_root = appdata_path
    else:
        config_root = find_config_root(platform, home)

    if preset_folder is None:
        preset_folder = read_preset_folder(config_root)
        if preset_folder:
            logger.debug("Detected preset folder: %s", preset_folder)

    return StudioPaths(
        config_root=config_root,
        system_dir=config_root / "system" / "BBL" / "filament",
        user_root=config_root / "user",
        preset_folder=preset_folder,
    )


def _filament_base(folder: Path) -> Path:
    return folder / "filament" / "base"


def user_filament_dir(paths: StudioPaths) -> Path | None:
    """Return the active user filament preset folder.

    Tries user/<preset folder>/filament/base first. Otherwise scans the user folders
    (ignoring "default", which BS creates but doesn't use) for the first one with a
    filament/base sub-folder. None if nothing plausible exists.
    """
    if paths.preset_folder:
        path = _filament_base(paths.user_root / paths.preset_folder)
        if path.is_dir():
            logger.debug("Found user filament folder via preset folder: %s", path)
            return path

    if paths.user_root.is_dir():
        for entry in sorted(paths.user_root.iterdir()):
            if entry.name == DEFAULT_USER_FOLDER or not entry.is_dir():
                continue
            path = _filament_base(entry)
            if path.is_dir():
                logger.debug("Found user filament folder via scan: %s", path)
                return path

    logger.warning("No user filament folder found under %s", paths.user_root)
    return None
